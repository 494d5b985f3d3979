from datetime import date, datetime, timezone
from typing import Dict, Optional, Union
from pydantic import BaseModel, Field

from .models import Invoice, Payment, PaymentStatus


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands timestamps back without their zone; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentRequest(BaseModel):
    # amount is checked by the initiator so bad input surfaces as InvalidRequestError
    amount: Optional[Union[float, str]] = Field(None, description="Amount in PLN, e.g. 150 or '150.00'")
    description: Optional[str] = None
    email: Optional[str] = None
    payer_name: Optional[str] = Field(None, alias="payerName")
    correlation_id: Optional[str] = Field(None, alias="correlationId")  # usually an invoice id
    success_url: Optional[str] = Field(None, alias="successUrl")
    failure_url: Optional[str] = Field(None, alias="failureUrl")
    user_id: Optional[str] = Field(None, alias="userId")

    class Config:
        populate_by_name = True


class PaymentForm(BaseModel):
    gateway_url: str = Field(..., alias="gatewayUrl")
    form: Dict[str, str]
    payment_id: str = Field(..., alias="paymentId")

    class Config:
        populate_by_name = True


class PaymentOut(BaseModel):
    id: str
    status: PaymentStatus
    invoice_id: Optional[str] = Field(None, alias="invoiceId")
    tpay_id: Optional[str] = Field(None, alias="tpayId")
    tpay_amount: Optional[str] = Field(None, alias="tpayAmount")
    description: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True
        use_enum_values = True

    @classmethod
    def from_record(cls, p: Payment) -> "PaymentOut":
        return cls(
            id=p.id,
            status=p.status,
            invoice_id=p.invoice_id,
            tpay_id=p.tpay_id,
            tpay_amount=p.tpay_amount,
            description=p.description,
            email=p.email,
            created_at=_as_utc(p.created_at),
            updated_at=_as_utc(p.updated_at),
        )


class InvoiceOut(BaseModel):
    id: str
    number: str
    amount_gross: float = Field(..., alias="amountGross")
    currency: Optional[str] = "PLN"
    status: Optional[str] = None
    issue_date: Optional[date] = Field(None, alias="issueDate")
    paid_at: Optional[date] = Field(None, alias="paidAt")
    description: Optional[str] = None
    payment_id: Optional[str] = Field(None, alias="paymentId")
    pdf_url: Optional[str] = Field(None, alias="pdfUrl")

    class Config:
        populate_by_name = True

    @classmethod
    def from_record(cls, inv: Invoice) -> "InvoiceOut":
        return cls(
            id=inv.id,
            number=inv.number,
            amount_gross=float(inv.amount_gross),
            currency=inv.currency,
            status=inv.status,
            issue_date=inv.issue_date,
            paid_at=inv.paid_at,
            description=inv.description,
            payment_id=inv.payment_id,
            pdf_url=inv.pdf_url,
        )


class TpayNotification(BaseModel):
    """Result notification posted by the gateway (form-encoded)."""

    id: str = ""
    tr_id: str = ""
    tr_date: Optional[str] = None
    tr_crc: str = ""
    tr_amount: str = ""
    tr_paid: Optional[str] = None
    tr_status: str = ""
    tr_error: Optional[str] = None
    tr_email: Optional[str] = None
    md5sum: str = ""


class CleanupOut(BaseModel):
    entity_id: str = Field(..., alias="entityId")
    updated: Dict[str, int]

    class Config:
        populate_by_name = True
