"""
Test suite for the inventory valuation engine

Tests weighted-average costing, counter-account routing by reason code,
adjustments, stock checks and the atomicity of movements with their
journal entries.
"""

import pytest
from decimal import Decimal

from core_accounting.storage import InMemoryStorage
from core_accounting.audit import AuditTrail, AuditEventType
from core_accounting.chart import ChartOfAccounts, AccountRoles
from core_accounting.ledger import GeneralLedger, EntryOrigin
from core_accounting.inventory import (
    InventoryEngine, MovementKind, ReasonCode, StockStatus
)
from core_accounting.exceptions import (
    InvalidQuantityError, InsufficientStockError, ItemNotFoundError, InvalidReasonCodeError
)


class InventoryTestCase:
    """Shared wiring for inventory tests"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.roles = AccountRoles()
        self.ledger = GeneralLedger(self.storage, ChartOfAccounts.default(), self.audit_trail)
        self.inventory = InventoryEngine(self.storage, self.ledger, self.roles, self.audit_trail)
        self.item = self.inventory.register_item("A", "Widget A", "150.00", min_threshold=5, max_threshold=50)

    def entry_lines(self, entry):
        return sorted((line.account_code, line.debit, line.credit) for line in entry.lines)


class TestRegisterItem(InventoryTestCase):

    def test_register_starts_empty(self):
        item = self.inventory.get_item_state(self.item.id)
        assert item.code == "A"
        assert item.sale_price == Decimal("150.00")
        assert item.quantity_on_hand == Decimal("0")
        assert item.weighted_average_cost == Decimal("0")
        assert self.ledger.entries() == []

    def test_duplicate_code(self):
        with pytest.raises(ValueError, match="already registered"):
            self.inventory.register_item("A", "Another", "10")

    def test_negative_price(self):
        with pytest.raises(ValueError, match="must not be negative"):
            self.inventory.register_item("B", "Widget B", "-1")

    def test_register_is_audited(self):
        events = self.audit_trail.get_events_for_entity("inventory_item", self.item.id)
        assert [e.event_type for e in events] == [AuditEventType.ITEM_REGISTERED]

    def test_lookup_and_listing(self):
        self.inventory.register_item("0-FIRST", "First", "1")
        assert self.inventory.find_item_by_code("A").id == self.item.id
        assert self.inventory.find_item_by_code("missing") is None
        assert [i.code for i in self.inventory.list_items()] == ["0-FIRST", "A"]

    def test_unknown_item(self):
        with pytest.raises(ItemNotFoundError):
            self.inventory.get_item_state("missing")


class TestWeightedAverage(InventoryTestCase):

    def test_purchases_recompute_average_cost(self):
        self.inventory.apply_inbound(self.item.id, 10, "100.00", document_ref="PO-1")
        movement, entry = self.inventory.apply_inbound(self.item.id, 5, "120.00", document_ref="PO-2")

        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("15")
        assert item.weighted_average_cost == Decimal("106.666667")

        assert movement.kind == MovementKind.INBOUND
        assert movement.quantity_before == Decimal("10")
        assert movement.cost_before == Decimal("100.00")
        assert movement.cost_after == Decimal("106.666667")
        assert movement.total_cost == Decimal("600.00")
        assert movement.resulting_entry_id == entry.id

        assert entry.origin == EntryOrigin.PURCHASE
        assert entry.reference_id == "PO-2"
        assert self.entry_lines(entry) == [
            ("1131", Decimal("600.00"), Decimal("0.00")),
            ("2111", Decimal("0.00"), Decimal("600.00")),
        ]

    def test_sale_valued_at_average_cost(self):
        self.inventory.apply_inbound(self.item.id, 10, "100.00")
        self.inventory.apply_inbound(self.item.id, 5, "120.00")

        movement, entry = self.inventory.apply_outbound(self.item.id, 3, document_ref="INV-000001")

        assert movement.total_cost == Decimal("320.00")
        assert movement.unit_cost == Decimal("106.666667")
        assert entry.origin == EntryOrigin.SALE
        assert self.entry_lines(entry) == [
            ("1131", Decimal("0.00"), Decimal("320.00")),
            ("5111", Decimal("320.00"), Decimal("0.00")),
        ]

        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("12")
        assert item.weighted_average_cost == Decimal("106.666667")
        assert self.ledger.account_balance("1131") == Decimal("1280.00")

    def test_insufficient_stock_changes_nothing(self):
        self.inventory.apply_inbound(self.item.id, 2, "100.00")
        entries_before = len(self.ledger.entries())
        events_before = self.audit_trail.count_events()

        with pytest.raises(InsufficientStockError) as exc_info:
            self.inventory.apply_outbound(self.item.id, 5)

        error = exc_info.value
        assert error.item_code == "A"
        assert error.requested == Decimal("5")
        assert error.available == Decimal("2")

        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("2")
        assert len(self.inventory.get_movements(self.item.id)) == 1
        assert len(self.ledger.entries()) == entries_before
        assert self.audit_trail.count_events() == events_before

    def test_selling_everything_keeps_average_cost(self):
        self.inventory.apply_inbound(self.item.id, 4, "25.00")
        self.inventory.apply_outbound(self.item.id, 4)
        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("0")
        assert item.book_value == Decimal("0.00")
        assert self.ledger.account_balance("1131") == Decimal("0.00")

    def test_fractional_quantities(self):
        self.inventory.apply_inbound(self.item.id, "2.5", "10.00")
        movement, _ = self.inventory.apply_outbound(self.item.id, "0.75")
        assert movement.total_cost == Decimal("7.50")
        assert self.inventory.get_item_state(self.item.id).quantity_on_hand == Decimal("1.75")


class TestRouting(InventoryTestCase):

    def setup_method(self):
        super().setup_method()
        self.inventory.apply_inbound(self.item.id, 10, "10.00")

    def test_loss_never_touches_cogs(self):
        _, entry = self.inventory.apply_outbound(self.item.id, 2, ReasonCode.LOSS)
        assert entry.origin == EntryOrigin.INVENTORY_ADJUSTMENT
        assert "5111" not in entry.get_affected_accounts()
        assert self.entry_lines(entry) == [
            ("1131", Decimal("0.00"), Decimal("20.00")),
            ("5322", Decimal("20.00"), Decimal("0.00")),
        ]

    def test_return_to_supplier_reduces_payable(self):
        _, entry = self.inventory.apply_outbound(self.item.id, 1, "return_out")
        assert self.entry_lines(entry) == [
            ("1131", Decimal("0.00"), Decimal("10.00")),
            ("2111", Decimal("10.00"), Decimal("0.00")),
        ]

    def test_customer_return_credits_cogs(self):
        _, entry = self.inventory.apply_inbound(self.item.id, 1, "10.00", ReasonCode.RETURN_IN)
        assert self.entry_lines(entry) == [
            ("1131", Decimal("10.00"), Decimal("0.00")),
            ("5111", Decimal("0.00"), Decimal("10.00")),
        ]

    def test_invalid_reason_for_direction(self):
        with pytest.raises(InvalidReasonCodeError):
            self.inventory.apply_inbound(self.item.id, 1, "10.00", ReasonCode.SALE)
        with pytest.raises(InvalidReasonCodeError):
            self.inventory.apply_outbound(self.item.id, 1, ReasonCode.PURCHASE)
        with pytest.raises(InvalidReasonCodeError):
            self.inventory.apply_outbound(self.item.id, 1, "stolen")

    def test_invalid_quantities(self):
        with pytest.raises(InvalidQuantityError):
            self.inventory.apply_inbound(self.item.id, 0, "10.00")
        with pytest.raises(InvalidQuantityError):
            self.inventory.apply_inbound(self.item.id, 1, "-1")
        with pytest.raises(InvalidQuantityError):
            self.inventory.apply_outbound(self.item.id, -3)

    def test_zero_cost_inbound_posts_no_entry(self):
        entries_before = len(self.ledger.entries())
        movement, entry = self.inventory.apply_inbound(self.item.id, 10, "0", ReasonCode.MANUAL_ADJUSTMENT)
        assert entry is None
        assert movement.resulting_entry_id is None
        assert len(self.ledger.entries()) == entries_before
        assert self.inventory.get_item_state(self.item.id).weighted_average_cost == Decimal("5.000000")


class TestAdjustments(InventoryTestCase):

    def setup_method(self):
        super().setup_method()
        self.inventory.apply_inbound(self.item.id, 10, "10.00")

    def test_positive_adjustment_at_average_cost(self):
        movement, entry = self.inventory.apply_adjustment(self.item.id, 2)
        assert movement.kind == MovementKind.ADJUSTMENT
        assert movement.unit_cost == Decimal("10.00")
        assert self.entry_lines(entry) == [
            ("1131", Decimal("20.00"), Decimal("0.00")),
            ("4191", Decimal("0.00"), Decimal("20.00")),
        ]
        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("12")
        assert item.weighted_average_cost == Decimal("10.000000")

    def test_negative_adjustment_goes_to_losses(self):
        movement, entry = self.inventory.apply_adjustment(self.item.id, -3, ReasonCode.LOSS)
        assert movement.kind == MovementKind.ADJUSTMENT
        assert movement.is_outbound
        assert self.entry_lines(entry) == [
            ("1131", Decimal("0.00"), Decimal("30.00")),
            ("5322", Decimal("30.00"), Decimal("0.00")),
        ]

    def test_zero_delta(self):
        with pytest.raises(InvalidQuantityError, match="must not be zero"):
            self.inventory.apply_adjustment(self.item.id, 0)

    def test_reason_restrictions(self):
        with pytest.raises(InvalidReasonCodeError):
            self.inventory.apply_adjustment(self.item.id, 1, ReasonCode.LOSS)
        with pytest.raises(InvalidReasonCodeError):
            self.inventory.apply_adjustment(self.item.id, -1, ReasonCode.SALE)

    def test_negative_adjustment_beyond_stock(self):
        with pytest.raises(InsufficientStockError):
            self.inventory.apply_adjustment(self.item.id, -11)


class TestStockQueries(InventoryTestCase):

    def test_stock_status(self):
        assert self.inventory.get_item_state(self.item.id).stock_status == StockStatus.LOW
        self.inventory.apply_inbound(self.item.id, 20, "1.00")
        assert self.inventory.get_item_state(self.item.id).stock_status == StockStatus.NORMAL
        self.inventory.apply_inbound(self.item.id, 30, "1.00")
        assert self.inventory.get_item_state(self.item.id).stock_status == StockStatus.HIGH

    def test_no_high_status_without_maximum(self):
        item = self.inventory.register_item("B", "Widget B", "5")
        self.inventory.apply_inbound(item.id, 1000, "1.00")
        assert self.inventory.get_item_state(item.id).stock_status == StockStatus.NORMAL

    def test_check_stock(self):
        self.inventory.apply_inbound(self.item.id, 3, "1.00")
        assert self.inventory.check_stock(self.item.id, 3) is None
        shortage = self.inventory.check_stock(self.item.id, 4)
        assert isinstance(shortage, InsufficientStockError)
        assert shortage.available == Decimal("3")

    def test_movements_by_document(self):
        self.inventory.apply_inbound(self.item.id, 3, "1.00", document_ref="PO-7")
        self.inventory.apply_inbound(self.item.id, 3, "1.00", document_ref="PO-8")
        movements = self.inventory.get_movements(document_ref="PO-7")
        assert len(movements) == 1
        assert self.inventory.get_movement(movements[0].id).document_ref == "PO-7"

    def test_book_value_matches_inventory_account(self):
        self.inventory.apply_inbound(self.item.id, 10, "100.00")
        self.inventory.apply_inbound(self.item.id, 5, "120.00")
        self.inventory.apply_outbound(self.item.id, 3)

        book_value = self.inventory.inventory_book_value()
        ledger_value = self.ledger.account_balance("1131")
        assert book_value == ledger_value == Decimal("1280.00")


class TestValuationRounding(InventoryTestCase):
    """Inventory account stays equal to book values at non-terminating costs"""

    def sell_out_one_by_one(self):
        item = self.inventory.get_item_state(self.item.id)
        released = Decimal("0")
        for _ in range(int(item.quantity_on_hand)):
            movement, _ = self.inventory.apply_outbound(self.item.id, 1)
            released += movement.total_cost
            assert self.ledger.account_balance("1131") == self.inventory.inventory_book_value()
        return released

    def test_half_cent_cost_sold_unit_by_unit(self):
        self.inventory.apply_inbound(self.item.id, 10, "1.005")
        assert self.ledger.account_balance("1131") == Decimal("10.05")

        released = self.sell_out_one_by_one()

        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("0")
        assert item.book_value == Decimal("0.00")
        assert released == Decimal("10.05")
        assert self.ledger.account_balance("1131") == Decimal("0.00")
        assert self.ledger.account_balance("5111") == Decimal("10.05")

    def test_blended_cost_sold_unit_by_unit(self):
        self.inventory.apply_inbound(self.item.id, 3, "10.00")
        self.inventory.apply_inbound(self.item.id, 3, "10.01")
        assert self.inventory.get_item_state(self.item.id).weighted_average_cost == Decimal("10.005000")

        released = self.sell_out_one_by_one()

        assert released == Decimal("60.03")
        assert self.ledger.account_balance("1131") == Decimal("0.00")

    def test_cost_rounding_difference_is_booked_separately(self):
        movement, entry = self.inventory.apply_inbound(self.item.id, 1000, "0.0012345", document_ref="PO-9")

        assert movement.cost_after == Decimal("0.001235")
        assert movement.total_cost == Decimal("1.24")
        assert self.entry_lines(entry) == [
            ("1131", Decimal("1.24"), Decimal("0.00")),
            ("2111", Decimal("0.00"), Decimal("1.23")),
            ("4191", Decimal("0.00"), Decimal("0.01")),
        ]
        assert self.ledger.account_balance("1131") == self.inventory.inventory_book_value()


class TestPurchaseWithIva(InventoryTestCase):

    def test_tax_inclusive_purchase_splits_credit(self):
        movement, entry = self.inventory.apply_purchase(self.item.id, 10, "113.00", document_ref="FAC-77")

        assert movement.reason_code == ReasonCode.PURCHASE
        assert movement.unit_cost == Decimal("100.000000")
        assert movement.total_cost == Decimal("1000.00")
        assert entry.origin == EntryOrigin.PURCHASE
        assert self.entry_lines(entry) == [
            ("1131", Decimal("1000.00"), Decimal("0.00")),
            ("1142", Decimal("130.00"), Decimal("0.00")),
            ("2111", Decimal("0.00"), Decimal("1130.00")),
        ]

        item = self.inventory.get_item_state(self.item.id)
        assert item.quantity_on_hand == Decimal("10")
        assert item.weighted_average_cost == Decimal("100.000000")

    def test_net_cost_blends_with_existing_stock(self):
        self.inventory.apply_inbound(self.item.id, 10, "100.00")
        self.inventory.apply_purchase(self.item.id, 10, "135.60")

        item = self.inventory.get_item_state(self.item.id)
        assert item.weighted_average_cost == Decimal("110.000000")
        assert self.ledger.account_balance("1131") == Decimal("2200.00")
        assert self.ledger.account_balance("1142") == Decimal("156.00")
        assert self.ledger.account_balance("2111") == Decimal("2356.00")

    def test_invalid_purchase(self):
        with pytest.raises(InvalidQuantityError):
            self.inventory.apply_purchase(self.item.id, 0, "113.00")
        with pytest.raises(InvalidQuantityError):
            self.inventory.apply_purchase(self.item.id, 1, "-1")
        with pytest.raises(ItemNotFoundError):
            self.inventory.apply_purchase("missing", 1, "113.00")
