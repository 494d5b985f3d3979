from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


TERMINAL_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.FAILED.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp():
    return Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class Payment(SQLModel, table=True):
    # the correlation id ("crc") sent to the gateway
    id: str = Field(primary_key=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = "PLN"
    description: str
    email: str
    payer_name: Optional[str] = None
    user_id: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=PaymentStatus.PENDING.value, index=True)  # pending, paid, failed
    invoice_id: Optional[str] = None
    tpay_id: Optional[str] = None
    tpay_amount: Optional[str] = None  # as reported by the gateway, e.g. "4.00"
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class Invoice(SQLModel, table=True):
    id: str = Field(primary_key=True)
    number: str = Field(index=True)  # YYYY/MM/NNN
    payment_id: str = Field(index=True)
    amount_gross: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = "PLN"
    description: str = ""
    status: str = "paid"
    issue_date: date
    paid_at: Optional[date] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf_url: Optional[str] = None
    created_at: datetime = _timestamp()


class InvoiceCounter(SQLModel, table=True):
    id: str = Field(default="invoice", primary_key=True)
    prefix: str  # YYYY/MM
    seq: int = 0


class Document(SQLModel, table=True):
    """Loosely shaped school records (users, classes, groups, lessons)."""

    collection: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
