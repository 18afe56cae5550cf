"""
Inventory Valuation Engine

Perpetual inventory valued at weighted-average cost. Every movement with a
financial effect posts exactly one journal entry through the ledger, and
the item update, movement record and entry commit together.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum
import threading
import uuid

from .money import (
    ZERO, DEFAULT_COST_PRECISION, Number, round_money, round_cost, split_tax_inclusive,
    to_decimal
)
from .chart import AccountRoles
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import GeneralLedger, JournalEntry, AccountLine, EntryOrigin
from .exceptions import (
    InvalidQuantityError, InsufficientStockError, ItemNotFoundError, InvalidReasonCodeError
)
from .logging_config import get_logger, log_action


class MovementKind(Enum):
    """Direction of an inventory movement"""
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    ADJUSTMENT = "adjustment"


class ReasonCode(Enum):
    """Business reason for an inventory movement"""
    PURCHASE = "purchase"
    SALE = "sale"
    LOSS = "loss"
    RETURN_IN = "return_in"      # Customer return
    RETURN_OUT = "return_out"    # Return to supplier
    MANUAL_ADJUSTMENT = "manual_adjustment"


class StockStatus(Enum):
    """Stock level against the item's thresholds"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# Counter-account role per reason; only Sale touches COGS on the way out
INBOUND_COUNTER_ACCOUNTS = {
    ReasonCode.PURCHASE: "payable",
    ReasonCode.RETURN_IN: "cogs",
    ReasonCode.MANUAL_ADJUSTMENT: "other_income",
}

OUTBOUND_COUNTER_ACCOUNTS = {
    ReasonCode.SALE: "cogs",
    ReasonCode.LOSS: "inventory_losses",
    ReasonCode.MANUAL_ADJUSTMENT: "inventory_losses",
    ReasonCode.RETURN_OUT: "payable",
}

ENTRY_ORIGINS = {
    ReasonCode.PURCHASE: EntryOrigin.PURCHASE,
    ReasonCode.RETURN_OUT: EntryOrigin.PURCHASE,
    ReasonCode.SALE: EntryOrigin.SALE,
    ReasonCode.RETURN_IN: EntryOrigin.SALE,
    ReasonCode.LOSS: EntryOrigin.INVENTORY_ADJUSTMENT,
    ReasonCode.MANUAL_ADJUSTMENT: EntryOrigin.INVENTORY_ADJUSTMENT,
}


@dataclass
class InventoryItem(StorageRecord):
    """Stock-keeping item with its running quantity and average cost"""
    code: str
    name: str
    sale_price: Decimal
    quantity_on_hand: Decimal = ZERO
    weighted_average_cost: Decimal = ZERO
    min_threshold: Decimal = ZERO
    max_threshold: Decimal = ZERO

    @property
    def book_value(self) -> Decimal:
        return round_money(self.quantity_on_hand * self.weighted_average_cost)

    @property
    def stock_status(self) -> StockStatus:
        if self.quantity_on_hand <= self.min_threshold:
            return StockStatus.LOW
        if self.max_threshold > ZERO and self.quantity_on_hand >= self.max_threshold:
            return StockStatus.HIGH
        return StockStatus.NORMAL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InventoryItem':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            code=data['code'],
            name=data['name'],
            sale_price=Decimal(data['sale_price']),
            quantity_on_hand=Decimal(data['quantity_on_hand']),
            weighted_average_cost=Decimal(data['weighted_average_cost']),
            min_threshold=Decimal(data['min_threshold']),
            max_threshold=Decimal(data['max_threshold'])
        )


@dataclass
class InventoryMovement(StorageRecord):
    """
    Append-only record of one stock movement

    Carries the before/after quantity and cost so the valuation history can
    be replayed without recomputation.
    """
    movement_date: date
    kind: MovementKind
    item_id: str
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    reason_code: ReasonCode
    document_ref: str
    quantity_before: Decimal
    quantity_after: Decimal
    cost_before: Decimal
    cost_after: Decimal
    resulting_entry_id: Optional[str] = None

    @property
    def is_outbound(self) -> bool:
        return self.quantity_after < self.quantity_before

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['movement_date'] = self.movement_date.isoformat()
        result['kind'] = self.kind.value
        result['reason_code'] = self.reason_code.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InventoryMovement':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            movement_date=date.fromisoformat(data['movement_date']),
            kind=MovementKind(data['kind']),
            item_id=data['item_id'],
            quantity=Decimal(data['quantity']),
            unit_cost=Decimal(data['unit_cost']),
            total_cost=Decimal(data['total_cost']),
            reason_code=ReasonCode(data['reason_code']),
            document_ref=data['document_ref'],
            quantity_before=Decimal(data['quantity_before']),
            quantity_after=Decimal(data['quantity_after']),
            cost_before=Decimal(data['cost_before']),
            cost_after=Decimal(data['cost_after']),
            resulting_entry_id=data.get('resulting_entry_id')
        )


def _as_reason(reason_code: Union[ReasonCode, str], direction: str) -> ReasonCode:
    if isinstance(reason_code, ReasonCode):
        return reason_code
    try:
        return ReasonCode(reason_code)
    except ValueError:
        raise InvalidReasonCodeError(str(reason_code), direction)


def _signed_line(account_code: str, amount: Decimal, description: str) -> AccountLine:
    """Debit for a positive amount, credit for a negative one"""
    if amount < ZERO:
        return AccountLine.credit_line(account_code, -amount, description)
    return AccountLine.debit_line(account_code, amount, description)


class InventoryEngine:
    """
    Weighted-average inventory valuation

    Inbound:  new_cost = (q_before * c_before + q * u) / (q_before + q)
    Outbound: valued at the current average cost, which does not change

    Every movement is valued as the change in the item's book value
    (quantity x average cost, rounded to cents), so the Inventory account
    always equals the sum of the item book values.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: GeneralLedger,
        roles: AccountRoles,
        audit_trail: AuditTrail,
        cost_precision: int = DEFAULT_COST_PRECISION
    ):
        self.storage = storage
        self.ledger = ledger
        self.roles = roles
        self.audit_trail = audit_trail
        self.cost_precision = cost_precision
        self.items_table = "inventory_items"
        self.movements_table = "inventory_movements"
        self.logger = get_logger("accounting.inventory")

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _item_lock(self, item_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = threading.RLock()
            return lock

    def register_item(
        self,
        code: str,
        name: str,
        sale_price: Number,
        min_threshold: Number = 0,
        max_threshold: Number = 0,
        item_id: Optional[str] = None
    ) -> InventoryItem:
        """
        Register a new item with no stock

        Opening stock enters through ``apply_inbound`` so that it is
        reflected in the ledger.

        Raises:
            ValueError: If the code is already registered or a value is negative
        """
        sale_price = round_money(sale_price)
        min_threshold = to_decimal(min_threshold)
        max_threshold = to_decimal(max_threshold)
        if sale_price < ZERO or min_threshold < ZERO or max_threshold < ZERO:
            raise ValueError("Sale price and thresholds must not be negative")

        now = datetime.now(timezone.utc)
        item = InventoryItem(
            id=item_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            sale_price=sale_price,
            min_threshold=min_threshold,
            max_threshold=max_threshold
        )

        with self.storage.atomic():
            if self.storage.find(self.items_table, {'code': code}):
                raise ValueError(f"Item code {code} is already registered")
            if self.storage.exists(self.items_table, item.id):
                raise ValueError(f"Item {item.id} already exists")

            self._save_item(item)
            self.audit_trail.log_event(
                event_type=AuditEventType.ITEM_REGISTERED,
                entity_type="inventory_item",
                entity_id=item.id,
                metadata={"code": code, "name": name, "sale_price": sale_price}
            )

        log_action(
            self.logger, "info", f"Item {code} registered",
            action="register_item", resource=f"inventory_item:{item.id}"
        )
        return item

    def apply_inbound(
        self,
        item_id: str,
        quantity: Number,
        unit_cost: Number,
        reason_code: Union[ReasonCode, str] = ReasonCode.PURCHASE,
        document_ref: str = "",
        movement_date: Optional[date] = None,
        kind: MovementKind = MovementKind.INBOUND
    ) -> Tuple[InventoryMovement, Optional[JournalEntry]]:
        """
        Receive stock and recompute the weighted-average cost

        Inventory is debited with the change in the item's book value; the
        counter account receives the document amount ``quantity x unit_cost``
        rounded to cents.

        Args:
            item_id: Item receiving stock
            quantity: Units received, > 0
            unit_cost: Cost per unit, >= 0
            reason_code: Purchase, ReturnIn or ManualAdjustment
            document_ref: Source document (purchase order, invoice number, ...)
            movement_date: Business date (defaults to today)
            kind: Recorded movement kind

        Returns:
            Tuple of (movement, journal entry or None for a zero-value movement)

        Raises:
            InvalidQuantityError: quantity <= 0 or unit_cost < 0
            InvalidReasonCodeError: Reason not valid for inbound movements
            ItemNotFoundError: Unknown item
        """
        reason = _as_reason(reason_code, "inbound")
        if reason not in INBOUND_COUNTER_ACCOUNTS:
            raise InvalidReasonCodeError(reason.value, "inbound")
        quantity = self._positive_quantity(item_id, quantity)
        unit_cost = to_decimal(unit_cost)
        if unit_cost < ZERO:
            raise InvalidQuantityError(item_id, f"unit cost must not be negative, got {unit_cost}")

        value = quantity * unit_cost
        return self._receive(
            item_id, quantity, unit_cost, value, reason, document_ref, movement_date, kind,
            counter_amount=round_money(value)
        )

    def apply_purchase(
        self,
        item_id: str,
        quantity: Number,
        unit_price: Number,
        document_ref: str = "",
        movement_date: Optional[date] = None
    ) -> Tuple[InventoryMovement, Optional[JournalEntry]]:
        """
        Receive a supplier purchase whose price includes IVA

        The purchase document total is split like a sale: the net part is
        the inventory cost and the 13% IVA is recoverable tax credit.

            Dr Inventory       net
            Dr IVA Tax Credit  iva
                Cr Accounts Payable  total

        Raises:
            InvalidQuantityError: quantity <= 0 or unit_price < 0
            ItemNotFoundError: Unknown item
        """
        quantity = self._positive_quantity(item_id, quantity)
        unit_price = to_decimal(unit_price)
        if unit_price < ZERO:
            raise InvalidQuantityError(item_id, f"unit price must not be negative, got {unit_price}")

        total = round_money(quantity * unit_price)
        net, iva = split_tax_inclusive(total)
        return self._receive(
            item_id, quantity, round_cost(net / quantity, self.cost_precision), net,
            ReasonCode.PURCHASE, document_ref, movement_date, MovementKind.INBOUND,
            counter_amount=total, iva=iva
        )

    def _receive(
        self,
        item_id: str,
        quantity: Decimal,
        unit_cost: Decimal,
        value: Decimal,
        reason: ReasonCode,
        document_ref: str,
        movement_date: Optional[date],
        kind: MovementKind,
        counter_amount: Decimal,
        iva: Decimal = ZERO
    ) -> Tuple[InventoryMovement, Optional[JournalEntry]]:
        """Inbound valuation and posting; ``value`` is the unrounded cost received"""
        with self.storage.atomic():
            with self._item_lock(item_id):
                item = self._require_item(item_id)

                quantity_before = item.quantity_on_hand
                cost_before = item.weighted_average_cost
                quantity_after = quantity_before + quantity
                cost_after = round_cost(
                    (quantity_before * cost_before + value) / quantity_after,
                    self.cost_precision
                )
                total_cost = (round_money(quantity_after * cost_after)
                              - round_money(quantity_before * cost_before))

                lines = []
                if total_cost != ZERO:
                    lines.append(_signed_line(self.roles.inventory, total_cost, item.name))
                if iva != ZERO:
                    lines.append(AccountLine.debit_line(self.roles.iva_credit, iva, "IVA Credito Fiscal"))
                if counter_amount != ZERO:
                    counter = getattr(self.roles, INBOUND_COUNTER_ACCOUNTS[reason])
                    lines.append(AccountLine.credit_line(counter, counter_amount, document_ref))
                residue = counter_amount - iva - total_cost
                if residue > ZERO:
                    lines.append(AccountLine.debit_line(self.roles.inventory_losses, residue, "Valuation rounding"))
                elif residue < ZERO:
                    lines.append(AccountLine.credit_line(self.roles.other_income, -residue, "Valuation rounding"))

                entry = None
                if lines:
                    entry = self.ledger.post(self.ledger.new_entry(
                        memo=f"Inventory {reason.value}: {quantity} x {item.code}",
                        lines=lines,
                        entry_date=movement_date,
                        reference_id=document_ref or None,
                        origin=ENTRY_ORIGINS[reason],
                        source_id=item.id
                    ))

                movement = self._record_movement(
                    item, kind, reason, quantity, unit_cost, total_cost, document_ref,
                    quantity_before, quantity_after, cost_before, cost_after,
                    entry, movement_date
                )

        return movement, entry

    def apply_outbound(
        self,
        item_id: str,
        quantity: Number,
        reason_code: Union[ReasonCode, str] = ReasonCode.SALE,
        document_ref: str = "",
        movement_date: Optional[date] = None,
        kind: MovementKind = MovementKind.OUTBOUND
    ) -> Tuple[InventoryMovement, Optional[JournalEntry]]:
        """
        Release stock at the current weighted-average cost

        The average cost is unchanged by an outbound movement. Only a Sale
        is charged to Cost of Goods Sold; losses and manual adjustments go
        to Inventory Losses and returns to the supplier reduce Accounts
        Payable.

        Raises:
            InvalidQuantityError: quantity <= 0
            InvalidReasonCodeError: Reason not valid for outbound movements
            ItemNotFoundError: Unknown item
            InsufficientStockError: quantity exceeds quantity on hand
        """
        reason = _as_reason(reason_code, "outbound")
        if reason not in OUTBOUND_COUNTER_ACCOUNTS:
            raise InvalidReasonCodeError(reason.value, "outbound")
        quantity = self._positive_quantity(item_id, quantity)

        with self.storage.atomic():
            with self._item_lock(item_id):
                item = self._require_item(item_id)

                if quantity > item.quantity_on_hand:
                    error = InsufficientStockError(item.id, item.code, quantity, item.quantity_on_hand)
                    log_action(
                        self.logger, "warning", str(error),
                        action="apply_outbound", resource=f"inventory_item:{item.id}",
                        extra={
                            "item_code": item.code,
                            "requested": str(quantity),
                            "available": str(item.quantity_on_hand),
                            "document_ref": document_ref
                        }
                    )
                    raise error

                quantity_before = item.quantity_on_hand
                cost = item.weighted_average_cost
                quantity_after = quantity_before - quantity
                # Book-value difference: selling out releases exactly the remaining value
                total_cost = round_money(quantity_before * cost) - round_money(quantity_after * cost)

                entry = None
                if total_cost != ZERO:
                    counter = getattr(self.roles, OUTBOUND_COUNTER_ACCOUNTS[reason])
                    entry = self.ledger.post(self.ledger.new_entry(
                        memo=f"Inventory {reason.value}: {quantity} x {item.code}",
                        lines=[
                            AccountLine.debit_line(counter, total_cost, document_ref),
                            AccountLine.credit_line(self.roles.inventory, total_cost, item.name),
                        ],
                        entry_date=movement_date,
                        reference_id=document_ref or None,
                        origin=ENTRY_ORIGINS[reason],
                        source_id=item.id
                    ))

                movement = self._record_movement(
                    item, kind, reason, quantity, cost, total_cost, document_ref,
                    quantity_before, quantity_after, cost, cost,
                    entry, movement_date
                )

        return movement, entry

    def apply_adjustment(
        self,
        item_id: str,
        delta: Number,
        reason_code: Union[ReasonCode, str] = ReasonCode.MANUAL_ADJUSTMENT,
        document_ref: str = "",
        movement_date: Optional[date] = None
    ) -> Tuple[InventoryMovement, Optional[JournalEntry]]:
        """
        Correct the quantity on hand after a physical count

        A positive delta is received at the current average cost (credit
        Other Income); a negative delta is released like a loss (debit
        Inventory Losses). Adjustments never touch Cost of Goods Sold.

        Raises:
            InvalidQuantityError: delta is zero
            InvalidReasonCodeError: Reason other than ManualAdjustment, or
                Loss on a positive delta
        """
        reason = _as_reason(reason_code, "adjustment")
        delta = to_decimal(delta)
        if delta == ZERO:
            raise InvalidQuantityError(item_id, "adjustment delta must not be zero")

        if delta > ZERO:
            if reason != ReasonCode.MANUAL_ADJUSTMENT:
                raise InvalidReasonCodeError(reason.value, "adjustment")
            with self.storage.atomic():
                item = self.get_item_state(item_id)
                return self.apply_inbound(
                    item_id, delta, item.weighted_average_cost, reason, document_ref,
                    movement_date, kind=MovementKind.ADJUSTMENT
                )

        if reason not in (ReasonCode.MANUAL_ADJUSTMENT, ReasonCode.LOSS):
            raise InvalidReasonCodeError(reason.value, "adjustment")
        return self.apply_outbound(
            item_id, -delta, reason, document_ref, movement_date, kind=MovementKind.ADJUSTMENT
        )

    def check_stock(self, item_id: str, quantity: Number) -> Optional[InsufficientStockError]:
        """Return the shortage for a requested quantity, or None if it is available"""
        quantity = to_decimal(quantity)
        item = self.get_item_state(item_id)
        if quantity > item.quantity_on_hand:
            return InsufficientStockError(item.id, item.code, quantity, item.quantity_on_hand)
        return None

    def get_item_state(self, item_id: str) -> InventoryItem:
        """Get an item, raising ItemNotFoundError if missing"""
        return self._require_item(item_id)

    def find_item_by_code(self, code: str) -> Optional[InventoryItem]:
        records = self.storage.find(self.items_table, {'code': code})
        if records:
            return InventoryItem.from_dict(records[0])
        return None

    def list_items(self) -> List[InventoryItem]:
        items = [InventoryItem.from_dict(data) for data in self.storage.load_all(self.items_table)]
        items.sort(key=lambda i: i.code)
        return items

    def get_movements(
        self,
        item_id: Optional[str] = None,
        document_ref: Optional[str] = None
    ) -> List[InventoryMovement]:
        """Movements in the order they were recorded, optionally filtered"""
        filters = {}
        if item_id is not None:
            filters['item_id'] = item_id
        if document_ref is not None:
            filters['document_ref'] = document_ref
        return [InventoryMovement.from_dict(data) for data in self.storage.find(self.movements_table, filters)]

    def get_movement(self, movement_id: str) -> Optional[InventoryMovement]:
        data = self.storage.load(self.movements_table, movement_id)
        if data:
            return InventoryMovement.from_dict(data)
        return None

    def inventory_book_value(self) -> Decimal:
        """Sum of item book values (quantity on hand x average cost)"""
        return sum((item.book_value for item in self.list_items()), ZERO)

    def _positive_quantity(self, item_id: str, quantity: Number) -> Decimal:
        quantity = to_decimal(quantity)
        if quantity <= ZERO:
            raise InvalidQuantityError(item_id, f"quantity must be positive, got {quantity}")
        return quantity

    def _require_item(self, item_id: str) -> InventoryItem:
        data = self.storage.load(self.items_table, item_id)
        if data is None:
            raise ItemNotFoundError(item_id)
        return InventoryItem.from_dict(data)

    def _save_item(self, item: InventoryItem) -> None:
        self.storage.save(self.items_table, item.id, item.to_dict())

    def _record_movement(
        self,
        item: InventoryItem,
        kind: MovementKind,
        reason: ReasonCode,
        quantity: Decimal,
        unit_cost: Decimal,
        total_cost: Decimal,
        document_ref: str,
        quantity_before: Decimal,
        quantity_after: Decimal,
        cost_before: Decimal,
        cost_after: Decimal,
        entry: Optional[JournalEntry],
        movement_date: Optional[date]
    ) -> InventoryMovement:
        """Persist the movement and the updated item; caller holds the transaction"""
        now = datetime.now(timezone.utc)
        movement = InventoryMovement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            movement_date=movement_date or now.date(),
            kind=kind,
            item_id=item.id,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=total_cost,
            reason_code=reason,
            document_ref=document_ref,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            cost_before=cost_before,
            cost_after=cost_after,
            resulting_entry_id=entry.id if entry else None
        )
        self.storage.save(self.movements_table, movement.id, movement.to_dict())

        item.quantity_on_hand = quantity_after
        item.weighted_average_cost = cost_after
        item.updated_at = now
        self._save_item(item)

        self.audit_trail.log_event(
            event_type=AuditEventType.INVENTORY_MOVEMENT_RECORDED,
            entity_type="inventory_item",
            entity_id=item.id,
            metadata={
                "movement_id": movement.id,
                "kind": kind.value,
                "reason_code": reason.value,
                "quantity": quantity,
                "total_cost": total_cost,
                "quantity_after": quantity_after,
                "cost_after": cost_after,
                "document_ref": document_ref,
                "entry_id": movement.resulting_entry_id
            }
        )

        log_action(
            self.logger, "info", f"{kind.value.capitalize()} {quantity} x {item.code} ({reason.value})",
            action=f"apply_{kind.value}", resource=f"inventory_item:{item.id}",
            extra={"total_cost": str(total_cost), "quantity_after": str(quantity_after),
                   "cost_after": str(cost_after)}
        )
        return movement
