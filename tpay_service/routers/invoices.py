from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlmodel.ext.asyncio.session import AsyncSession

from ..db import get_session
from ..schemas import InvoiceOut
from ..services import store

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(invoice_id: str, session: AsyncSession = Depends(get_session)):
    invoice = await store.get_invoice(session, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="invoice not found")
    return InvoiceOut.from_record(invoice)


@router.get("/{invoice_id}/pdf")
async def get_invoice_pdf(invoice_id: str, session: AsyncSession = Depends(get_session)):
    invoice = await store.get_invoice(session, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="invoice not found")
    if not invoice.pdf_path or not Path(invoice.pdf_path).is_file():
        raise HTTPException(status_code=404, detail="invoice pdf not generated yet")
    return FileResponse(
        invoice.pdf_path,
        media_type="application/pdf",
        filename=f"invoice-{invoice.number.replace('/', '-')}.pdf",
        headers={"Cache-Control": "public, max-age=3600"},
    )
