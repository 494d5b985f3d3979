from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
import structlog

from ..config import settings
from ..db import async_session
from ..errors import ConfigurationError
from ..models import PaymentStatus
from ..schemas import TpayNotification
from ..services import store
from ..services.invoices import create_invoice_for_payment
from ..services.tpay import resolve_gateway, verify_notification
from ..utils import require_service_api_key

router = APIRouter(prefix="/tpay", tags=["tpay"])
logger = structlog.get_logger(component="tpay_webhook")

# the gateway expects HTTP 200 in every case, the body carries the verdict
ACCEPTED = "TRUE"
REJECTED = "ERROR"


@router.post("/webhook", response_class=PlainTextResponse)
async def webhook(request: Request, background_tasks: BackgroundTasks):
    """
    TPay posts the transaction result (form-encoded) to the result_url.
    We verify the signature, acknowledge immediately and apply the
    outcome in the background.
    """
    try:
        config = resolve_gateway(settings)
    except ConfigurationError:
        logger.error("notification received but gateway is not configured")
        return PlainTextResponse(REJECTED)

    form = await request.form()
    note = TpayNotification(**{k: str(v) for k, v in form.items() if k in TpayNotification.model_fields})

    if not verify_notification(config, note.id, note.tr_id, note.tr_amount, note.tr_crc, note.md5sum):
        return PlainTextResponse(REJECTED)

    logger.info("notification accepted", tr_id=note.tr_id, tr_crc=note.tr_crc, tr_status=note.tr_status)
    background_tasks.add_task(apply_notification, note)
    return PlainTextResponse(ACCEPTED)


def _amount_matches(payment, tr_amount: str) -> bool:
    try:
        return payment.amount == Decimal(tr_amount)
    except InvalidOperation:
        return False


async def apply_notification(note: TpayNotification):
    try:
        async with async_session() as session:
            if note.tr_status == "TRUE":
                payment = await store.get_payment(session, note.tr_crc)
                if payment is not None and not _amount_matches(payment, note.tr_amount):
                    logger.warning("paid amount differs from the order", tr_crc=note.tr_crc,
                                   tr_amount=note.tr_amount, order_amount=str(payment.amount))
                changed = await store.set_status(session, note.tr_crc, PaymentStatus.PAID,
                                                 tpay_id=note.tr_id, tpay_amount=note.tr_amount)
                if changed:
                    await create_invoice_for_payment(session, note.tr_crc, settings)
            elif note.tr_status == "FALSE":
                await store.set_status(session, note.tr_crc, PaymentStatus.FAILED, tpay_id=note.tr_id)
            else:
                logger.warning("unhandled transaction status", tr_status=note.tr_status, tr_crc=note.tr_crc)
    except Exception:
        logger.exception("post-ack processing failed", tr_crc=note.tr_crc)


@router.get("/debug", dependencies=[Depends(require_service_api_key)])
async def debug():
    """Which merchant/gateway is in use, without revealing the secret."""
    try:
        config = resolve_gateway(settings)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "idUsed": config.merchant_id,
        "env": config.env,
        "gateway": config.gateway_url,
        "resultUrl": config.result_url,
        "secretLen": len(config.secret),
        "signatureSeparator": config.separator,
    }
