from decimal import Decimal
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
import structlog

from ..config import settings
from ..db import get_session
from ..errors import ConfigurationError, InvalidRequestError
from ..models import Payment, TERMINAL_STATUSES
from ..schemas import PaymentForm, PaymentOut, PaymentRequest
from ..services import store
from ..services.tpay import initiate_payment

router = APIRouter(prefix="/payments", tags=["payments"])
logger = structlog.get_logger(component="payments_router")


def _same_order(payment: Payment, form: Dict[str, str]) -> bool:
    return (
        payment.amount == Decimal(form["amount"])
        and payment.description == form["description"]
        and payment.email == form["email"]
    )


@router.post("/initiate", response_model=PaymentForm)
async def create_payment(payload: PaymentRequest, session: AsyncSession = Depends(get_session)):
    """Build the signed TPay form and record the pending payment under its crc."""
    try:
        payment_form = initiate_payment(settings, payload, user_id=payload.user_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))

    crc = payment_form.payment_id
    existing = await store.get_payment(session, crc)
    if existing is not None:
        if existing.status in TERMINAL_STATUSES:
            raise HTTPException(status_code=409, detail=f"Payment {crc} already {existing.status}")
        if not _same_order(existing, payment_form.form):
            # the record's amount is what the invoice bills, it must match the signed form
            logger.warning("re-initiation with different terms", payment_id=crc,
                           stored_amount=str(existing.amount), requested_amount=payment_form.form["amount"])
            raise HTTPException(status_code=409, detail=f"Payment {crc} is pending with different terms")
        # same correlation id still pending: hand back a fresh form, keep the record
        logger.info("payment re-initiated", payment_id=crc)
        return payment_form

    await store.create_pending(
        session,
        crc,
        amount=payment_form.form["amount"],
        description=payment_form.form["description"],
        email=payment_form.form["email"],
        payer_name=payload.payer_name,
        user_id=payload.user_id,
    )
    return payment_form


@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(payment_id: str, session: AsyncSession = Depends(get_session)):
    """Payment status by correlation id, plus the invoice id once generated."""
    payment = await store.get_payment(session, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    return PaymentOut.from_record(payment)
