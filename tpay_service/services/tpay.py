"""
TPay (secure.tpay.com) request building and signature checks.

Nothing in here performs I/O: the HTTP layer persists the pending payment
record and the browser posts the returned form to the gateway.
"""
import hashlib
import math
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from ..config import Settings
from ..errors import ConfigurationError, InvalidRequestError
from ..schemas import PaymentForm, PaymentRequest

logger = structlog.get_logger(component="tpay")

PRODUCTION_GATEWAY = "https://secure.tpay.com"
SANDBOX_GATEWAY = "https://secure.sandbox.tpay.com"
DESCRIPTION_LIMIT = 255
DEFAULT_PAYER_NAME = "Klient"


@dataclass(frozen=True)
class TpayConfig:
    merchant_id: str
    secret: str
    env: str
    gateway_url: str
    result_url: str
    language: str = "pl"
    separator: str = ""
    return_url: str = ""
    error_url: str = ""


def resolve_gateway(settings: Settings) -> TpayConfig:
    """Read merchant credentials; raise ConfigurationError when they are unset."""
    merchant_id = (settings.tpay_merchant_id or "").strip()
    secret = (settings.tpay_secret or "").strip()
    if not merchant_id or not secret:
        raise ConfigurationError("Tpay not configured")

    env = (settings.tpay_env or "production").lower()
    gateway = SANDBOX_GATEWAY if env == "sandbox" else PRODUCTION_GATEWAY
    result_url = settings.tpay_result_url or f"{settings.public_base_url.rstrip('/')}/tpay/webhook"
    return TpayConfig(
        merchant_id=merchant_id,
        secret=secret,
        env=env,
        gateway_url=gateway,
        result_url=result_url,
        language=settings.tpay_language,
        separator=settings.tpay_signature_separator,
        return_url=settings.frontend_return_url,
        error_url=settings.frontend_error_url,
    )


def _to_number(amount: Union[float, int, str, Decimal, None]) -> float:
    if amount is None or (isinstance(amount, str) and not amount.strip()):
        raise InvalidRequestError("Missing required fields")
    if isinstance(amount, bool):
        raise InvalidRequestError("Amount is not a number")
    try:
        n = float(amount)
    except (TypeError, ValueError):
        raise InvalidRequestError("Amount is not a number")
    if not math.isfinite(n):
        raise InvalidRequestError("Amount is not a number")
    return n


def format_amount(amount: Union[float, int, str, Decimal]) -> str:
    """Round to the nearest grosz (half up) and render as e.g. '150.00'.

    The gateway signs this exact string, so it is reused verbatim in the form.
    """
    n = _to_number(amount)
    if n < 0:
        raise InvalidRequestError("Amount must not be negative")
    cents = int(math.floor(n * 100 + 0.5))
    return f"{cents // 100}.{cents % 100:02d}"


def compute_signature(merchant_id: str, amount: str, crc: str, secret: str, separator: str = "") -> str:
    # md5(id + amount + crc + secret); order and formatting must match the gateway byte for byte
    raw = separator.join([str(merchant_id), amount, crc, secret])
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def notification_signature(merchant_id: str, tr_id: str, tr_amount: str, tr_crc: str, secret: str) -> str:
    raw = f"{merchant_id}{tr_id}{tr_amount}{tr_crc}{secret}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def verify_notification(config: TpayConfig, merchant_id: str, tr_id: str, tr_amount: str,
                        tr_crc: str, md5sum: str) -> bool:
    if str(merchant_id) != config.merchant_id:
        logger.error("merchant mismatch", got=merchant_id, want=config.merchant_id)
        return False
    expected = notification_signature(config.merchant_id, tr_id, tr_amount, tr_crc, config.secret)
    if md5sum != expected:
        logger.error("md5 mismatch", got8=str(md5sum)[:8], exp8=expected[:8],
                     tr_id=tr_id, tr_amount=tr_amount, tr_crc=tr_crc)
        return False
    return True


def make_correlation_id(user_id: Optional[str] = None, clock: Callable[[], float] = time.time) -> str:
    return f"{user_id or 'anon'}:{int(clock() * 1000)}"


def append_query_param(url: str, key: str, value: str) -> str:
    if not url:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_payment_form(config: TpayConfig, request: PaymentRequest,
                       user_id: Optional[str] = None,
                       clock: Callable[[], float] = time.time) -> PaymentForm:
    """Build the signed form the browser auto-posts to the gateway."""
    if request.amount is None or not request.description or not request.email:
        raise InvalidRequestError("Missing required fields")
    amount_str = format_amount(request.amount)
    if Decimal(amount_str) <= 0:
        raise InvalidRequestError("Invalid amount")

    crc = str(request.correlation_id or make_correlation_id(user_id or request.user_id, clock))
    md5sum = compute_signature(config.merchant_id, amount_str, crc, config.secret, config.separator)

    return_url = append_query_param(request.success_url or config.return_url, "paymentId", crc)
    error_url = append_query_param(request.failure_url or config.error_url, "paymentId", crc)

    form = {
        "id": config.merchant_id,
        "amount": amount_str,
        "description": str(request.description)[:DESCRIPTION_LIMIT],
        "crc": crc,
        "email": str(request.email),
        "name": str(request.payer_name or DEFAULT_PAYER_NAME),
        "language": config.language,
        "return_url": return_url,
        "return_error_url": error_url,
        "result_url": config.result_url,
        "md5sum": md5sum,
    }

    logger.info("payment form built", crc=crc, amount=amount_str, md5_first8=md5sum[:8],
                gateway=config.gateway_url)
    return PaymentForm(gateway_url=config.gateway_url, form=form, payment_id=crc)


def initiate_payment(settings: Settings, request: PaymentRequest,
                     user_id: Optional[str] = None) -> PaymentForm:
    return build_payment_form(resolve_gateway(settings), request, user_id=user_id)
