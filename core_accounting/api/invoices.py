"""
Invoice endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_accounting_system
from .schemas import (
    CreateInvoiceRequest, SubmitInvoiceRequest, PayInvoiceRequest, VoidInvoiceRequest,
    serialize_invoice
)
from ..invoices import InvoiceStatus
from ..system import AccountingSystem


router = APIRouter()


@router.post("", status_code=201)
async def create_invoice(
    request: CreateInvoiceRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Create a draft invoice"""
    invoice = system.invoices.create_invoice(
        client=request.client,
        lines=[line.to_line() for line in request.lines],
        number=request.number,
        invoice_date=request.invoice_date,
        due_date=request.due_date
    )
    return serialize_invoice(invoice)


@router.get("")
async def list_invoices(
    status: Optional[InvoiceStatus] = None,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """List invoices"""
    invoices = system.invoices.list_invoices(status)
    return {"invoices": [serialize_invoice(i) for i in invoices], "count": len(invoices)}


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str, system: AccountingSystem = Depends(get_accounting_system)):
    """Get invoice state"""
    return serialize_invoice(system.invoices.get_invoice_state(invoice_id))


@router.post("/{invoice_id}/submit")
def submit_invoice(
    invoice_id: str,
    request: Optional[SubmitInvoiceRequest] = None,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Submit to the tax authority; blocks until answered or timed out"""
    timeout = request.timeout if request else None
    return serialize_invoice(system.invoices.submit_invoice(invoice_id, timeout=timeout))


@router.post("/{invoice_id}/pay")
async def pay_invoice(
    invoice_id: str,
    request: Optional[PayInvoiceRequest] = None,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Record payment of an accepted invoice"""
    request = request or PayInvoiceRequest()
    invoice = system.invoices.mark_paid(invoice_id, request.cash_account, request.payment_date)
    return serialize_invoice(invoice)


@router.post("/{invoice_id}/void")
async def void_invoice(
    invoice_id: str,
    request: Optional[VoidInvoiceRequest] = None,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Void an unpaid invoice"""
    reason = request.reason if request else ""
    return serialize_invoice(system.invoices.void_invoice(invoice_id, reason))
