"""
Journal endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import get_accounting_system
from .schemas import CreateJournalEntryRequest, VoidEntryRequest, serialize_entry
from ..ledger import EntryOrigin, EntryStatus, JournalFilter
from ..system import AccountingSystem


router = APIRouter()


@router.post("/entries", status_code=201)
async def post_entry(
    request: CreateJournalEntryRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Post a manual journal entry"""
    entry = system.ledger.new_entry(
        memo=request.memo,
        lines=[line.to_line() for line in request.lines],
        entry_date=request.entry_date,
        reference_id=request.reference_id
    )
    return serialize_entry(system.ledger.post(entry))


@router.get("/entries")
async def list_entries(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    account_code: Optional[str] = None,
    reference_id: Optional[str] = None,
    source_id: Optional[str] = None,
    origin: Optional[EntryOrigin] = None,
    status: Optional[EntryStatus] = None,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Query the journal"""
    entries = system.ledger.query(JournalFilter(
        start_date=start_date,
        end_date=end_date,
        account_code=account_code,
        reference_id=reference_id,
        source_id=source_id,
        origin=origin,
        status=status
    ))
    return {"entries": [serialize_entry(entry) for entry in entries], "count": len(entries)}


@router.get("/entries/{entry_id}")
async def get_entry(entry_id: str, system: AccountingSystem = Depends(get_accounting_system)):
    """Get a journal entry"""
    entry = system.ledger.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Journal entry {entry_id} not found")
    return serialize_entry(entry)


@router.post("/entries/{entry_id}/void")
async def void_entry(
    entry_id: str,
    request: VoidEntryRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Void a posted entry by posting its reversal"""
    reversal = system.ledger.void(entry_id, request.reason)
    return {
        "voided_entry_id": entry_id,
        "reversal": serialize_entry(reversal)
    }
