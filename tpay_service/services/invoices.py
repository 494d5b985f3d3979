"""
Invoice generation after a confirmed payment.

Numbers run per month as YYYY/MM/NNN. The PDF is rendered with reportlab and
kept on local disk; its URL points back at GET /invoices/{id}/pdf.
"""
import uuid
from datetime import date
from io import BytesIO
from pathlib import Path
from typing import Optional

import structlog
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlalchemy import case, insert, select, update
from sqlmodel.ext.asyncio.session import AsyncSession

from ..config import Settings
from ..models import Invoice, InvoiceCounter, Payment
from . import store

logger = structlog.get_logger(component="invoices")

COUNTER_ID = "invoice"
DEFAULT_DESCRIPTION = "Opłata za zajęcia"


async def next_invoice_number(session: AsyncSession, today: Optional[date] = None) -> str:
    """Allocate the next number inside the caller's transaction.

    The counter is bumped with one UPDATE, so two invoices issued at the same
    time never share a number. Nothing is committed here.
    """
    today = today or date.today()
    prefix = f"{today.year}/{today.month:02d}"

    conn = await session.connection()
    bumped = await conn.execute(
        update(InvoiceCounter)
        .where(InvoiceCounter.id == COUNTER_ID)
        # a new month restarts the sequence
        .values(seq=case((InvoiceCounter.prefix == prefix, InvoiceCounter.seq + 1), else_=1), prefix=prefix)
    )
    if bumped.rowcount == 0:
        await conn.execute(insert(InvoiceCounter).values(id=COUNTER_ID, prefix=prefix, seq=1))
    seq = (await conn.execute(select(InvoiceCounter.seq).where(InvoiceCounter.id == COUNTER_ID))).scalar_one()
    return f"{prefix}/{seq:03d}"


def render_invoice_pdf(invoice: Invoice, settings: Settings) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4

    c.setFont("Helvetica-Bold", 18)
    c.drawRightString(width - 50, height - 60, "Invoice")
    c.setFont("Helvetica", 11)
    c.drawRightString(width - 50, height - 80, f"No.: {invoice.number}")
    c.drawRightString(width - 50, height - 95, f"Issue date: {invoice.issue_date.isoformat()}")
    if invoice.paid_at:
        c.drawRightString(width - 50, height - 110, f"Paid on: {invoice.paid_at.isoformat()}")

    y = height - 150
    c.setFont("Helvetica-Bold", 13)
    c.drawString(50, y, "Seller")
    c.setFont("Helvetica", 11)
    for line in (settings.seller_name, settings.seller_address, f"NIP: {settings.seller_nip}"):
        y -= 15
        c.drawString(50, y, line)

    y -= 30
    c.setFont("Helvetica-Bold", 13)
    c.drawString(50, y, "Buyer")
    c.setFont("Helvetica", 11)
    for line in (invoice.buyer_name or invoice.buyer_email or "Customer", invoice.buyer_email):
        if line:
            y -= 15
            c.drawString(50, y, line)

    amount = f"{invoice.amount_gross:.2f} {invoice.currency}"
    y -= 40
    c.setFont("Helvetica-Bold", 11)
    c.drawString(50, y, "Description")
    c.drawString(340, y, "Qty")
    c.drawString(400, y, "Price")
    c.drawString(480, y, "Total")
    c.line(50, y - 4, width - 50, y - 4)
    y -= 20
    c.setFont("Helvetica", 11)
    c.drawString(50, y, (invoice.description or DEFAULT_DESCRIPTION)[:60])
    c.drawString(340, y, "1")
    c.drawString(400, y, amount)
    c.drawString(480, y, amount)

    y -= 40
    c.setFont("Helvetica-Bold", 12)
    c.drawRightString(width - 50, y, f"Amount due: {amount}")
    if invoice.status == "paid":
        y -= 18
        c.setFillColorRGB(0, 0.5, 0)
        c.drawRightString(width - 50, y, "STATUS: PAID")
        c.setFillColorRGB(0, 0, 0)

    c.showPage()
    c.save()
    return buf.getvalue()


def store_pdf(invoice_id: str, content: bytes, settings: Settings) -> Path:
    directory = Path(settings.invoice_storage_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{invoice_id}.pdf"
    path.write_bytes(content)
    return path


async def create_invoice_for_payment(session: AsyncSession, payment_id: str, settings: Settings) -> str:
    """Create (once) the invoice for a paid payment and return its id."""
    payment: Optional[Payment] = await store.get_payment(session, payment_id)
    if payment is None:
        raise LookupError(f"payment {payment_id} not found")
    if payment.invoice_id:
        return payment.invoice_id

    number = await next_invoice_number(session)
    today = date.today()
    invoice = Invoice(
        id=uuid.uuid4().hex,
        number=number,
        payment_id=payment.id,
        amount_gross=payment.amount,
        currency=payment.currency,
        description=payment.description or DEFAULT_DESCRIPTION,
        status="paid",
        issue_date=today,
        paid_at=today,
        buyer_name=payment.payer_name,
        buyer_email=payment.email,
    )
    session.add(invoice)
    store.attach_invoice(session, payment, invoice.id)
    # number, invoice row and payment link land together
    await session.commit()
    logger.info("invoice created", invoice_id=invoice.id, number=number, payment_id=payment_id)

    # the pdf location is the only thing that changes after creation
    path = store_pdf(invoice.id, render_invoice_pdf(invoice, settings), settings)
    invoice.pdf_path = str(path)
    invoice.pdf_url = f"{settings.public_base_url.rstrip('/')}/invoices/{invoice.id}/pdf"
    session.add(invoice)
    await session.commit()
    logger.info("invoice pdf stored", invoice_id=invoice.id, path=str(path))
    return invoice.id
