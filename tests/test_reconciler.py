import asyncio
import json

import httpx
import pytest

from tpay_service import confirm
from tpay_service.reconciler import (
    REASON_MISSING_ID,
    REASON_NOT_COMPLETED,
    REASON_TIMEOUT,
    ConfirmationReconciler,
    ConfirmationState,
    PaymentsApiClient,
    ReturnParams,
    Step,
    render_confirmation,
)

API = "http://api.test"

INVOICE_1 = {"id": "inv_1", "number": "FV/1", "amountGross": 150, "pdfUrl": "http://x/f.pdf"}
INVOICE_9 = {"id": "inv_9", "number": "2026/10/009", "amountGross": 80, "paymentId": "p_1",
             "pdfUrl": "http://x/inv_9.pdf"}


class Recorder:
    """MockTransport handler that records request paths and delegates to a responder."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        return self.responder(request, len(self.calls))


def reconciler_for(client, url, **kwargs):
    kwargs.setdefault("interval", 0)
    return ConfirmationReconciler(PaymentsApiClient(API, client=client), ReturnParams.from_url(url), **kwargs)


def mock_client(recorder):
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def not_found(request, n):
    return httpx.Response(404, json={"error": "not found"})


async def test_failed_status_param_fails_without_requests():
    recorder = Recorder(not_found)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://school.example/payments/return?status=failed&paymentId=p_1")
        assert rec.state.step == Step.FAILED
        assert rec.state.reason == REASON_NOT_COMPLETED

        state = await rec.start().wait()
    assert state.step == Step.FAILED
    assert recorder.calls == []


async def test_missing_identifiers_fail_without_requests():
    recorder = Recorder(not_found)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://school.example/payments/return?status=ok")
        state = await rec.run()
    assert state.step == Step.FAILED
    assert state.reason == REASON_MISSING_ID
    assert recorder.calls == []


async def test_invoice_found_on_first_attempt():
    def responder(request, n):
        if request.url.path == "/invoices/inv_1":
            return httpx.Response(200, json=INVOICE_1)
        return httpx.Response(404)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://school.example/payments/return?invoiceId=inv_1")
        assert rec.state.step == Step.CHECKING
        state = await rec.run()

    assert state.step == Step.SUCCESS
    assert state.invoice_number == "FV/1"
    assert state.pdf_url == "http://x/f.pdf"
    assert state.amount == "150.00"
    assert recorder.calls == ["/invoices/inv_1"]


async def test_payment_polled_until_paid_with_invoice():
    def responder(request, n):
        if request.url.path == "/payments/p_1":
            if n <= 3:
                return httpx.Response(200, json={"status": "pending"})
            return httpx.Response(200, json={"status": "paid", "invoiceId": "inv_9",
                                             "tpayId": "TR-9", "tpayAmount": "80.00"})
        if request.url.path == "/invoices/inv_9":
            return httpx.Response(200, json=INVOICE_9)
        return httpx.Response(404)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://school.example/payments/return?paymentId=p_1")
        state = await rec.run()

    assert state.step == Step.SUCCESS
    assert state.payment_id == "p_1"
    assert state.tpay_id == "TR-9"
    assert state.amount == "80.00"
    assert state.invoice_id == "inv_9"
    assert state.invoice_number == "2026/10/009"
    assert recorder.calls == ["/payments/p_1"] * 4 + ["/invoices/inv_9"]
    assert rec.attempts == 4


async def test_paid_without_invoice_keeps_polling():
    def responder(request, n):
        if request.url.path == "/payments/p_1":
            if n <= 2:
                return httpx.Response(200, json={"id": "p_1", "status": "paid", "invoiceId": None})
            return httpx.Response(200, json={"id": "p_1", "status": "paid", "invoiceId": "inv_9"})
        return httpx.Response(200, json=INVOICE_9)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        state = await reconciler_for(client, "https://s.example/r?paymentId=p_1").run()

    assert state.step == Step.SUCCESS
    assert recorder.calls == ["/payments/p_1"] * 3 + ["/invoices/inv_9"]


async def test_missing_invoice_falls_back_to_payment():
    def responder(request, n):
        if request.url.path == "/payments/p_1":
            return httpx.Response(200, json={"id": "p_1", "status": "paid", "invoiceId": "inv_9"})
        if request.url.path == "/invoices/inv_9":
            return httpx.Response(200, json=INVOICE_9)
        return httpx.Response(404)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        state = await reconciler_for(client, "https://s.example/r?invoiceId=inv_x&paymentId=p_1").run()

    assert state.step == Step.SUCCESS
    assert state.invoice_id == "inv_9"
    assert recorder.calls == ["/invoices/inv_x", "/payments/p_1", "/invoices/inv_9"]


async def test_budget_exhaustion_fails_after_last_attempt():
    recorder = Recorder(lambda request, n: httpx.Response(200, json={"status": "pending"}))
    seen = []
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?paymentId=p_1", on_change=seen.append)
        state = await rec.run()

    assert state.step == Step.FAILED
    assert state.reason == REASON_TIMEOUT
    assert state.error == "ReconciliationTimeout"
    assert len(recorder.calls) == 20
    assert [s.step for s in seen] == [Step.FAILED]


async def test_errors_count_as_attempts():
    def responder(request, n):
        if n == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if n == 2:
            return httpx.Response(200, content=b"<html>oops</html>")
        if n == 3:
            return httpx.Response(200, json={"status": "weird"})
        return httpx.Response(200, json=INVOICE_1)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?invoiceId=inv_1", max_attempts=5)
        state = await rec.run()

    assert state.step == Step.SUCCESS
    assert rec.attempts == 4


async def test_errors_until_budget_runs_out():
    def responder(request, n):
        raise httpx.ReadTimeout("slow", request=request)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        state = await reconciler_for(client, "https://s.example/r?paymentId=p_1", max_attempts=3).run()

    assert state.step == Step.FAILED
    assert len(recorder.calls) == 3


async def test_teardown_stops_polling():
    second = asyncio.Event()

    def responder(request, n):
        if n == 2:
            second.set()
        return httpx.Response(200, json={"id": "p_1", "status": "pending"})

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?paymentId=p_1", interval=0.05)
        handle = rec.start()
        await asyncio.wait_for(second.wait(), timeout=5)
        rec.close()

        assert await handle.wait() is None
        assert handle.cancelled()
        await asyncio.sleep(0.2)

    assert len(recorder.calls) == 2
    assert rec.state.step == Step.CHECKING


async def test_start_returns_running_handle():
    recorder = Recorder(lambda request, n: httpx.Response(200, json={"status": "pending"}))
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?paymentId=p_1", interval=0.05)
        handle = rec.start()
        assert rec.start() is handle
        rec.close()
        await handle.wait()


async def test_retry_is_a_single_attempt():
    def responder(request, n):
        return httpx.Response(200, json={"id": "p_1", "status": "pending"})

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?paymentId=p_1")
        seen = []
        rec.on_change = seen.append
        state = await rec.retry()

    assert state.step == Step.FAILED
    assert state.error == "NotYetAvailable"
    assert [s.step for s in seen] == [Step.CHECKING, Step.FAILED]
    assert recorder.calls == ["/payments/p_1"]


async def test_retry_after_failed_return_uses_payment_id():
    def responder(request, n):
        if request.url.path == "/payments/p_1":
            return httpx.Response(200, json={"id": "p_1", "status": "paid", "invoiceId": "inv_9"})
        return httpx.Response(200, json=INVOICE_9)

    recorder = Recorder(responder)
    async with mock_client(recorder) as client:
        rec = reconciler_for(client, "https://s.example/r?status=failed&paymentId=p_1")
        assert rec.state.step == Step.FAILED
        state = await rec.retry()

    assert state.step == Step.SUCCESS
    assert state.pdf_url == "http://x/inv_9.pdf"
    assert recorder.calls == ["/payments/p_1", "/invoices/inv_9"]


async def test_retry_without_identifier():
    recorder = Recorder(not_found)
    async with mock_client(recorder) as client:
        state = await reconciler_for(client, "https://s.example/r").retry()
    assert state.reason == REASON_MISSING_ID
    assert recorder.calls == []


def test_return_params_from_url():
    params = ReturnParams.from_url("https://s.example/r?status=ok&paymentId=u1%3A17&invoiceId=")
    assert params.payment_id == "u1:17"
    assert params.invoice_id is None
    assert params.status == "ok"
    assert params.has_identifier


def test_render_checking():
    view = render_confirmation(ConfirmationState.checking())
    assert view.step == Step.CHECKING
    assert view.actions == ["progress"]


def test_render_failed_offers_retry_and_home():
    view = render_confirmation(ConfirmationState.failed(REASON_TIMEOUT))
    assert view.message == REASON_TIMEOUT
    assert view.actions == ["retry", "home"]


def test_render_success_with_and_without_pdf():
    state = ConfirmationState(step=Step.SUCCESS, payment_id="p_1", amount="80.00",
                              invoice_id="inv_9", invoice_number="2026/10/009")
    pending_pdf = render_confirmation(state)
    assert "still being generated" in pending_pdf.message
    assert pending_pdf.pdf_url is None
    assert pending_pdf.details == {"invoiceNumber": "2026/10/009", "paymentId": "p_1", "amount": "80.00"}

    ready = render_confirmation(state.model_copy(update={"pdf_url": "http://x/inv_9.pdf"}))
    assert ready.actions == ["download"]
    assert ready.pdf_url == "http://x/inv_9.pdf"


def test_cli_reports_failed_return_without_network(capsys):
    code = confirm.main(["https://s.example/r?status=failed", "--api-base", "http://127.0.0.1:9"])
    assert code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["step"] == "failed"
    assert out["actions"] == ["retry", "home"]


@pytest.mark.parametrize("path,expected", [
    ("/payments/u1:1700", "/payments/u1%3A1700"),
    ("/invoices/a b", "/invoices/a%20b"),
])
async def test_api_client_quotes_ids(path, expected):
    seen = []

    def handler(request):
        seen.append(request.url.raw_path.decode())
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        api = PaymentsApiClient(API, client=client)
        kind, ident = path.strip("/").split("/", 1)
        result = await (api.get_payment(ident) if kind == "payments" else api.get_invoice(ident))

    assert result is None
    assert seen == [expected]
