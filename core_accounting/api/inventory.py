"""
Inventory endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_accounting_system
from .schemas import (
    CreateItemRequest, InboundRequest, PurchaseRequest, OutboundRequest, AdjustmentRequest,
    serialize_item, serialize_movement
)
from ..system import AccountingSystem


router = APIRouter()


@router.post("/items", status_code=201)
async def register_item(
    request: CreateItemRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Register a new item"""
    item = system.inventory.register_item(
        code=request.code,
        name=request.name,
        sale_price=request.sale_price,
        min_threshold=request.min_threshold,
        max_threshold=request.max_threshold
    )
    return serialize_item(item)


@router.get("/items")
async def list_items(system: AccountingSystem = Depends(get_accounting_system)):
    """List items with stock levels"""
    items = system.inventory.list_items()
    return {"items": [serialize_item(item) for item in items], "count": len(items)}


@router.get("/items/{item_id}")
async def get_item(item_id: str, system: AccountingSystem = Depends(get_accounting_system)):
    """Get item state"""
    return serialize_item(system.inventory.get_item_state(item_id))


@router.get("/items/{item_id}/movements")
async def get_item_movements(item_id: str, system: AccountingSystem = Depends(get_accounting_system)):
    """Movement history of an item"""
    system.inventory.get_item_state(item_id)
    movements = system.inventory.get_movements(item_id=item_id)
    return {"movements": [serialize_movement(m) for m in movements], "count": len(movements)}


@router.post("/items/{item_id}/inbound")
async def apply_inbound(
    item_id: str,
    request: InboundRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Receive stock"""
    movement, entry = system.inventory.apply_inbound(
        item_id, request.quantity, request.unit_cost, request.reason_code,
        request.document_ref, request.movement_date
    )
    return serialize_movement(movement, entry)


@router.post("/items/{item_id}/outbound")
async def apply_outbound(
    item_id: str,
    request: OutboundRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Release stock"""
    movement, entry = system.inventory.apply_outbound(
        item_id, request.quantity, request.reason_code,
        request.document_ref, request.movement_date
    )
    return serialize_movement(movement, entry)


@router.post("/items/{item_id}/adjustment")
async def apply_adjustment(
    item_id: str,
    request: AdjustmentRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Correct quantity on hand after a count"""
    movement, entry = system.inventory.apply_adjustment(
        item_id, request.delta, request.reason_code,
        request.document_ref, request.movement_date
    )
    return serialize_movement(movement, entry)


@router.post("/items/{item_id}/purchase")
async def apply_purchase(
    item_id: str,
    request: PurchaseRequest,
    system: AccountingSystem = Depends(get_accounting_system)
):
    """Receive a supplier purchase priced with IVA included"""
    movement, entry = system.inventory.apply_purchase(
        item_id, request.quantity, request.unit_price,
        request.document_ref, request.movement_date
    )
    return serialize_movement(movement, entry)
