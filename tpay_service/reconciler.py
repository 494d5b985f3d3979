"""
Confirmation reconciler.

Runs after the customer comes back from the gateway. The gateway's
notification flips the payment to paid and an invoice is generated shortly
after; this module polls the read API until it sees that, or gives up.

States: checking -> success | failed. The loop lives in an asyncio.Task
exposed through a PollHandle so the owner can cancel it on teardown. Only
one attempt is ever in flight, and attempt N+1 is scheduled only after
attempt N has finished.

The reconciler only reads; it never writes payment status.
"""
import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlsplit

import httpx
import structlog
from pydantic import BaseModel, Field

from .errors import NotYetAvailable, ReconciliationTimeout
from .schemas import InvoiceOut, PaymentOut

logger = structlog.get_logger(component="reconciler")

POLL_INTERVAL_SECONDS = 1.5
MAX_ATTEMPTS = 20  # about 30 seconds

REASON_NOT_COMPLETED = "Payment was not completed."
REASON_MISSING_ID = "The payment or invoice identifier is missing."
REASON_TIMEOUT = (
    "We could not confirm your payment. If the funds were deducted, "
    "refresh this page in a moment or contact us."
)
REASON_NOT_VERIFIED = "The payment could not be verified yet. Please try again shortly."


class Step(str, Enum):
    CHECKING = "checking"
    SUCCESS = "success"
    FAILED = "failed"


class ConfirmationState(BaseModel):
    step: Step
    reason: Optional[str] = None
    error: Optional[str] = None  # error kind behind a failed state
    payment_id: Optional[str] = Field(None, alias="paymentId")
    tpay_id: Optional[str] = Field(None, alias="tpayId")
    amount: Optional[str] = None
    invoice_id: Optional[str] = Field(None, alias="invoiceId")
    invoice_number: Optional[str] = Field(None, alias="invoiceNumber")
    pdf_url: Optional[str] = Field(None, alias="pdfUrl")

    class Config:
        populate_by_name = True

    @property
    def terminal(self) -> bool:
        return self.step != Step.CHECKING

    @classmethod
    def checking(cls) -> "ConfirmationState":
        return cls(step=Step.CHECKING)

    @classmethod
    def failed(cls, reason: str, error: Optional[str] = None) -> "ConfirmationState":
        return cls(step=Step.FAILED, reason=reason, error=error)


class ReturnParams(BaseModel):
    """Query parameters the gateway sends the customer back with."""

    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "ReturnParams":
        return cls(
            invoice_id=query.get("invoiceId") or None,
            payment_id=query.get("paymentId") or None,
            status=query.get("status") or None,
        )

    @classmethod
    def from_url(cls, url: str) -> "ReturnParams":
        return cls.from_query(dict(parse_qsl(urlsplit(url).query)))

    @property
    def has_identifier(self) -> bool:
        return bool(self.invoice_id or self.payment_id)


class PaymentsApiClient:
    """Read side of the payments backend. Non-2xx means "not available yet"."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    async def _get_json(self, path: str) -> Optional[dict]:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            resp = await self._client.get(url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url)
        if not resp.is_success:
            return None
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected payload from {path}")
        return data

    async def get_payment(self, payment_id: str) -> Optional[PaymentOut]:
        data = await self._get_json(f"/payments/{quote(payment_id, safe='')}")
        if data is None:
            return None
        data.setdefault("id", payment_id)
        return PaymentOut.model_validate(data)

    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceOut]:
        data = await self._get_json(f"/invoices/{quote(invoice_id, safe='')}")
        if data is None:
            return None
        data.setdefault("id", invoice_id)
        return InvoiceOut.model_validate(data)


class PollHandle:
    """Cancellable handle on a running poll loop."""

    def __init__(self, task: "asyncio.Task[ConfirmationState]"):
        self._task = task

    def cancel(self) -> bool:
        return self._task.cancel()

    def cancelled(self) -> bool:
        return self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Optional[ConfirmationState]:
        """Wait for the loop to finish; None if it was cancelled."""
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return None
        return self._task.result()


def _money(value: float) -> str:
    return f"{value:.2f}"


def _success_from_invoice(inv: InvoiceOut) -> ConfirmationState:
    return ConfirmationState(
        step=Step.SUCCESS,
        payment_id=inv.payment_id,
        amount=_money(inv.amount_gross),
        invoice_id=inv.id,
        invoice_number=inv.number,
        pdf_url=inv.pdf_url,
    )


def _success_from_payment(payment: PaymentOut, inv: InvoiceOut) -> ConfirmationState:
    return ConfirmationState(
        step=Step.SUCCESS,
        payment_id=payment.id,
        tpay_id=payment.tpay_id,
        amount=payment.tpay_amount or _money(inv.amount_gross),
        invoice_id=inv.id,
        invoice_number=inv.number,
        pdf_url=inv.pdf_url,
    )


class ConfirmationReconciler:
    def __init__(self, api: PaymentsApiClient, params: ReturnParams,
                 interval: float = POLL_INTERVAL_SECONDS,
                 max_attempts: int = MAX_ATTEMPTS,
                 on_change: Optional[Callable[[ConfirmationState], None]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.api = api
        self.params = params
        self.interval = interval
        self.max_attempts = max_attempts
        self.on_change = on_change
        self._sleep = sleep
        self._handle: Optional[PollHandle] = None
        self.attempts = 0
        self.state = self._entry_state(params)

    @staticmethod
    def _entry_state(params: ReturnParams) -> ConfirmationState:
        if params.status == "failed":
            return ConfirmationState.failed(REASON_NOT_COMPLETED)
        if not params.has_identifier:
            return ConfirmationState.failed(REASON_MISSING_ID)
        return ConfirmationState.checking()

    def _set(self, state: ConfirmationState) -> None:
        self.state = state
        logger.info("confirmation state", step=state.step.value, reason=state.reason,
                    payment_id=state.payment_id or self.params.payment_id,
                    invoice_id=state.invoice_id or self.params.invoice_id)
        if self.on_change is not None:
            self.on_change(state)

    async def _via_payment(self, payment_id: str) -> Optional[ConfirmationState]:
        payment = await self.api.get_payment(payment_id)
        if payment is None or payment.status != "paid":
            return None
        if not payment.invoice_id:
            # paid, the invoice is generated a little later
            return None
        inv = await self.api.get_invoice(payment.invoice_id)
        if inv is None:
            return None
        return _success_from_payment(payment, inv)

    async def _guarded(self, probe: Awaitable[Optional[ConfirmationState]]) -> Optional[ConfirmationState]:
        try:
            return await probe
        except (httpx.HTTPError, ValueError) as e:
            # network, JSON or schema errors only cost an attempt
            logger.debug("verification attempt failed", error=repr(e))
            return None

    async def _invoice_only(self, invoice_id: str) -> Optional[ConfirmationState]:
        inv = await self.api.get_invoice(invoice_id)
        return _success_from_invoice(inv) if inv is not None else None

    async def _probe(self) -> Optional[ConfirmationState]:
        p = self.params
        if p.invoice_id:
            result = await self._invoice_only(p.invoice_id)
            if result is None and p.payment_id:
                # invoice may still be in the making, go through the payment
                result = await self._via_payment(p.payment_id)
            return result
        if p.payment_id:
            return await self._via_payment(p.payment_id)
        return None

    async def attempt(self) -> Optional[ConfirmationState]:
        """One verification pass; a success state, or None when not there yet."""
        self.attempts += 1
        return await self._guarded(self._probe())

    async def run(self) -> ConfirmationState:
        """Poll until success or until the attempt budget is spent."""
        if self.state.step != Step.CHECKING:
            return self.state

        tries = 0
        while True:
            tries += 1
            result = await self.attempt()
            if result is not None:
                self._set(result)
                return result
            if tries >= self.max_attempts:
                self._set(ConfirmationState.failed(REASON_TIMEOUT, ReconciliationTimeout.__name__))
                return self.state
            await self._sleep(self.interval)

    def start(self) -> PollHandle:
        """Schedule the poll loop on the running event loop."""
        if self._handle is not None and not self._handle.done():
            return self._handle
        task = asyncio.get_running_loop().create_task(self.run())
        self._handle = PollHandle(task)
        return self._handle

    def close(self) -> None:
        """Teardown: cancel a pending loop so no request is made afterwards."""
        if self._handle is not None and not self._handle.done():
            self._handle.cancel()
            logger.info("confirmation polling cancelled", attempts=self.attempts)

    async def retry(self) -> ConfirmationState:
        """Manual "verify again": a single attempt, not another polling loop."""
        self.close()
        p = self.params
        if not p.has_identifier:
            self._set(ConfirmationState.failed(REASON_MISSING_ID))
            return self.state

        self._set(ConfirmationState.checking())
        self.attempts += 1
        if p.payment_id:
            result = await self._guarded(self._via_payment(p.payment_id))
        else:
            result = await self._guarded(self._invoice_only(p.invoice_id))

        if result is None:
            result = ConfirmationState.failed(REASON_NOT_VERIFIED, NotYetAvailable.__name__)
        self._set(result)
        return result


class ConfirmationView(BaseModel):
    step: Step
    title: str
    message: str
    details: Dict[str, str] = {}
    actions: List[str] = []
    pdf_url: Optional[str] = Field(None, alias="pdfUrl")

    class Config:
        populate_by_name = True


def render_confirmation(state: ConfirmationState) -> ConfirmationView:
    if state.step == Step.CHECKING:
        return ConfirmationView(
            step=state.step,
            title="Finishing your payment…",
            message="We are confirming your payment. Please wait…",
            actions=["progress"],
        )

    if state.step == Step.FAILED:
        return ConfirmationView(
            step=state.step,
            title="Payment failed",
            message=state.reason or "Something went wrong while processing the payment.",
            actions=["retry", "home"],
        )

    details: Dict[str, str] = {}
    if state.invoice_number:
        details["invoiceNumber"] = state.invoice_number
    if state.payment_id:
        details["paymentId"] = state.payment_id
    if state.tpay_id:
        details["tpayId"] = state.tpay_id
    if state.amount:
        details["amount"] = state.amount
    return ConfirmationView(
        step=state.step,
        title="Thank you! Payment received",
        message="Download your invoice below." if state.pdf_url else "The invoice is still being generated…",
        details=details,
        actions=["download"] if state.pdf_url else [],
        pdf_url=state.pdf_url,
    )
