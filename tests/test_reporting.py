"""
Tests for balance validation and financial reports

Every figure is derived from the journal, so these tests drive the engines
through realistic flows and check the statements that come out.
"""

import pytest
from decimal import Decimal

from core_accounting.config import AccountingConfig
from core_accounting.system import AccountingSystem
from core_accounting.chart import AccountKind
from core_accounting.ledger import AccountLine
from core_accounting.inventory import ReasonCode
from core_accounting.invoices import InvoiceLine
from core_accounting.reporting import BalanceValidator, BalanceSheet
from core_accounting.reconciliation import AdjustmentDirection
from core_accounting.tax_authority import MockTaxAuthority


@pytest.fixture
def system():
    """Accounting system over in-memory storage with an accepting validator"""
    accounting_system = AccountingSystem(
        config=AccountingConfig(database_url="memory"),
        validator=MockTaxAuthority()
    )
    yield accounting_system
    accounting_system.close()


@pytest.fixture
def trading_system(system):
    """Capital contributed, stock bought, one accepted sale of 3 units"""
    ledger = system.ledger
    ledger.post(ledger.new_entry("Owner contribution", [
        AccountLine.debit_line("1111", "5000.00"),
        AccountLine.credit_line("3111", "5000.00"),
    ]))
    item = system.inventory.register_item("A", "Widget A", "150.00")
    system.inventory.apply_inbound(item.id, 10, "100.00", document_ref="PO-1")
    system.inventory.apply_inbound(item.id, 5, "120.00", document_ref="PO-2")

    invoice = system.invoices.create_invoice(
        "Cliente SRL", [InvoiceLine(item.id, Decimal("3"), Decimal("150.00"))]
    )
    system.invoices.submit_invoice(invoice.id)
    system.item = item
    system.invoice = invoice
    return system


class TestEmptyLedger:

    def test_empty_ledger_is_balanced(self, system):
        trial_balance = system.balance_validator.compute_trial_balance()
        assert trial_balance.lines == {}
        assert trial_balance.is_balanced
        assert system.balance_validator.is_balanced()

    def test_identity_holds_without_stock(self, system):
        identity = system.balance_validator.check_inventory_identity()
        assert identity.expected_ending == Decimal("0")
        assert identity.holds

    def test_identity_requires_inventory(self, system):
        validator = BalanceValidator(system.ledger, system.chart)
        with pytest.raises(ValueError, match="inventory engine"):
            validator.check_inventory_identity()


class TestTrialBalance:

    def test_totals_match(self, trading_system):
        trial_balance = trading_system.balance_validator.compute_trial_balance()
        assert trial_balance.is_balanced
        assert trial_balance.total_debits == trial_balance.total_credits
        assert list(trial_balance.lines) == sorted(trial_balance.lines)

    def test_account_balances(self, trading_system):
        trial_balance = trading_system.balance_validator.compute_trial_balance()
        assert trial_balance.balance_of("1131") == Decimal("1280.00")
        assert trial_balance.balance_of("2111") == Decimal("1600.00")
        assert trial_balance.balance_of("1121") == Decimal("450.00")
        assert trial_balance.balance_of("4111") == Decimal("398.23")
        assert trial_balance.balance_of("2131") == Decimal("51.77")
        assert trial_balance.balance_of("5111") == Decimal("320.00")
        assert trial_balance.balance_of("5322") == Decimal("0")
        assert trial_balance.lines["1131"].kind == AccountKind.ASSET

    def test_voided_entries_cancel_out(self, trading_system):
        invoice = trading_system.invoices.get_invoice_state(trading_system.invoice.id)
        trading_system.invoices.void_invoice(invoice.id, reason="Returned")

        trial_balance = trading_system.balance_validator.compute_trial_balance()
        assert trial_balance.is_balanced
        assert trial_balance.balance_of("1121") == Decimal("0")
        assert trial_balance.balance_of("4111") == Decimal("0")
        assert trial_balance.lines["1121"].debit_total == Decimal("450.00")


class TestStatements:

    def test_income_statement(self, trading_system):
        statement = trading_system.balance_validator.compute_income_statement()
        assert statement.revenue == Decimal("398.23")
        assert statement.cost_of_goods_sold == Decimal("320.00")
        assert statement.gross_margin == Decimal("78.23")
        assert statement.operating_expenses == Decimal("0")
        assert statement.net_income == Decimal("78.23")

    def test_losses_are_operating_expenses(self, trading_system):
        trading_system.inventory.apply_outbound(trading_system.item.id, 1, ReasonCode.LOSS)
        statement = trading_system.balance_validator.compute_income_statement()
        assert statement.cost_of_goods_sold == Decimal("320.00")
        assert statement.operating_expenses == Decimal("106.67")

    def test_balance_sheet_includes_net_income(self, trading_system):
        balance_sheet = trading_system.balance_validator.compute_balance_sheet()
        assert balance_sheet.assets == Decimal("6730.00")
        assert balance_sheet.liabilities == Decimal("1651.77")
        assert balance_sheet.net_income == Decimal("78.23")
        assert balance_sheet.equity == Decimal("5078.23")
        assert balance_sheet.is_balanced

    def test_balanced_after_payment_and_reconciliation_adjustments(self, trading_system):
        trading_system.invoices.mark_paid(trading_system.invoice.id, cash_account="1112")
        trading_system.reconciler.post_adjustment("12.50", "Interest", AdjustmentDirection.BANK_CREDIT)
        trading_system.reconciler.post_adjustment("4.00", "Fees", AdjustmentDirection.BANK_DEBIT)

        assert trading_system.balance_validator.is_balanced()
        assert trading_system.ledger.account_balance("1112") == Decimal("458.50")

    def test_balance_sheet_difference(self):
        balance_sheet = BalanceSheet(
            assets=Decimal("100.00"), liabilities=Decimal("40.00"),
            equity=Decimal("59.99"), net_income=Decimal("0")
        )
        assert balance_sheet.difference == Decimal("0.01")
        assert not balance_sheet.is_balanced


class TestInventoryIdentity:

    def test_identity_after_trading(self, trading_system):
        identity = trading_system.balance_validator.check_inventory_identity()
        assert identity.inbound_value == Decimal("1600.00")
        assert identity.outbound_value == Decimal("320.00")
        assert identity.expected_ending == Decimal("1280.00")
        assert identity.ledger_balance == Decimal("1280.00")
        assert identity.book_value == Decimal("1280.00")
        assert identity.holds

    def test_manual_entry_on_inventory_breaks_identity(self, trading_system):
        ledger = trading_system.ledger
        ledger.post(ledger.new_entry("Stock found outside the engine", [
            AccountLine.debit_line("1131", "50.00"),
            AccountLine.credit_line("3111", "50.00"),
        ]))
        identity = trading_system.balance_validator.check_inventory_identity()
        assert not identity.holds
        # The books still balance; only the inventory identity notices
        assert trading_system.balance_validator.is_balanced()

    def test_identity_holds_after_selling_out_at_rounded_cost(self, system):
        item = system.inventory.register_item("B", "Widget B", "2.00")
        system.inventory.apply_inbound(item.id, 10, "1.005")
        for _ in range(10):
            system.inventory.apply_outbound(item.id, 1)

        identity = system.balance_validator.check_inventory_identity()
        assert identity.book_value == Decimal("0.00")
        assert identity.ledger_balance == Decimal("0.00")
        assert identity.expected_ending == Decimal("0.00")
        assert identity.holds


class TestIvaPosition:

    def test_sales_only(self, trading_system):
        position = trading_system.balance_validator.compute_iva_position()
        assert position.output_tax == Decimal("51.77")
        assert position.input_tax == Decimal("0")
        assert position.net_payable == Decimal("51.77")
        assert not position.is_carryforward

    def test_purchase_credit_offsets_sales_debit(self, trading_system):
        trading_system.inventory.apply_purchase(trading_system.item.id, 10, "113.00", document_ref="FAC-1")

        position = trading_system.balance_validator.compute_iva_position()
        assert position.input_tax == Decimal("130.00")
        assert position.net_payable == Decimal("-78.23")
        assert position.is_carryforward
        assert trading_system.balance_validator.is_balanced()
        assert trading_system.balance_validator.check_inventory_identity().holds
