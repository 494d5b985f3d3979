"""
Payment record store.

Status only ever moves pending -> paid or pending -> failed; anything else
is refused and logged so late or duplicated gateway notifications are harmless.
The transition is a single conditional UPDATE, so concurrent notifications
for the same payment cannot both win.
"""
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import Invoice, Payment, PaymentStatus, TERMINAL_STATUSES, utcnow

logger = structlog.get_logger(component="payment_store")


async def get_payment(session: AsyncSession, payment_id: str) -> Optional[Payment]:
    # status moves through a bulk UPDATE, so never trust the identity map here
    return await session.get(Payment, payment_id, populate_existing=True)


async def get_invoice(session: AsyncSession, invoice_id: str) -> Optional[Invoice]:
    return await session.get(Invoice, invoice_id)


async def create_pending(session: AsyncSession, payment_id: str, amount: str, description: str,
                         email: str, payer_name: Optional[str] = None,
                         user_id: Optional[str] = None) -> Payment:
    payment = Payment(
        id=payment_id,
        amount=Decimal(amount),
        description=description,
        email=email,
        payer_name=payer_name,
        user_id=user_id,
        status=PaymentStatus.PENDING.value,
    )
    session.add(payment)
    await session.commit()
    await session.refresh(payment)
    logger.info("payment created", payment_id=payment_id, amount=amount)
    return payment


async def set_status(session: AsyncSession, payment_id: str, status: PaymentStatus,
                     tpay_id: Optional[str] = None, tpay_amount: Optional[str] = None) -> bool:
    """Apply a terminal status once. Returns True if this call changed the record."""
    if status.value not in TERMINAL_STATUSES:
        raise ValueError(f"not a terminal status: {status.value}")

    values = {"status": status.value, "updated_at": utcnow()}
    if tpay_id:
        values["tpay_id"] = tpay_id
    if tpay_amount:
        values["tpay_amount"] = tpay_amount
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
        .values(**values)
    )
    conn = await session.connection()
    result = await conn.execute(stmt)
    await session.commit()

    if result.rowcount == 1:
        logger.info("payment status changed", payment_id=payment_id, status=status.value, tpay_id=tpay_id)
        return True

    payment = await get_payment(session, payment_id)
    if payment is None:
        logger.warning("status update for unknown payment", payment_id=payment_id, status=status.value)
    else:
        logger.info("payment already settled", payment_id=payment_id,
                    current=payment.status, requested=status.value)
    return False


def attach_invoice(session: AsyncSession, payment: Payment, invoice_id: str) -> None:
    """Stage the invoice link; the caller commits it with the invoice row."""
    payment.invoice_id = invoice_id
    payment.updated_at = utcnow()
    session.add(payment)
