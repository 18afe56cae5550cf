"""
Balance Validation and Reporting Module

Read-only views over the ledger: trial balance, balance sheet, income
statement and the inventory identity. Every figure is derived by folding
the journal; nothing here writes.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Dict, Optional

from .money import ZERO, TOLERANCE, amounts_equal
from .chart import AccountKind, AccountRoles, ChartOfAccounts
from .ledger import GeneralLedger
from .inventory import InventoryEngine


@dataclass
class TrialBalanceLine:
    account_code: str
    account_name: str
    kind: AccountKind
    debit_total: Decimal = ZERO
    credit_total: Decimal = ZERO

    @property
    def net_debit(self) -> Decimal:
        return self.debit_total - self.credit_total

    @property
    def balance(self) -> Decimal:
        """Balance on the account's normal side"""
        if self.kind in (AccountKind.ASSET, AccountKind.EXPENSE):
            return self.net_debit
        return -self.net_debit


@dataclass
class TrialBalance:
    lines: Dict[str, TrialBalanceLine] = field(default_factory=dict)
    total_debits: Decimal = ZERO
    total_credits: Decimal = ZERO

    @property
    def is_balanced(self) -> bool:
        return amounts_equal(self.total_debits, self.total_credits)

    def balance_of(self, account_code: str) -> Decimal:
        line = self.lines.get(account_code)
        return line.balance if line else ZERO

    def total_for_kind(self, kind: AccountKind) -> Decimal:
        return sum((line.balance for line in self.lines.values() if line.kind == kind), ZERO)


@dataclass
class BalanceSheet:
    """Assets = Liabilities + Equity; equity includes current net income"""
    assets: Decimal
    liabilities: Decimal
    equity: Decimal
    net_income: Decimal

    @property
    def liabilities_and_equity(self) -> Decimal:
        return self.liabilities + self.equity

    @property
    def difference(self) -> Decimal:
        return self.assets - self.liabilities_and_equity

    @property
    def is_balanced(self) -> bool:
        return abs(self.difference) < TOLERANCE


@dataclass
class IncomeStatement:
    revenue: Decimal
    cost_of_goods_sold: Decimal
    operating_expenses: Decimal

    @property
    def gross_margin(self) -> Decimal:
        return self.revenue - self.cost_of_goods_sold

    @property
    def net_income(self) -> Decimal:
        return self.gross_margin - self.operating_expenses


@dataclass
class InventoryIdentity:
    """
    Ending = Beginning + Inbound - Outbound, checked three ways: the
    movement history, the Inventory account and the item book values
    """
    inbound_value: Decimal
    outbound_value: Decimal
    ledger_balance: Decimal
    book_value: Decimal

    @property
    def expected_ending(self) -> Decimal:
        # Items start empty, so the beginning balance is zero
        return self.inbound_value - self.outbound_value

    @property
    def holds(self) -> bool:
        return (amounts_equal(self.expected_ending, self.ledger_balance)
                and amounts_equal(self.ledger_balance, self.book_value))


@dataclass
class IvaPosition:
    """
    IVA owed for the period: debito fiscal collected on sales less the
    credito fiscal paid on purchases
    """
    output_tax: Decimal
    input_tax: Decimal

    @property
    def net_payable(self) -> Decimal:
        return self.output_tax - self.input_tax

    @property
    def is_carryforward(self) -> bool:
        """More credit than debit; the remainder offsets the next period"""
        return self.net_payable < ZERO


class BalanceValidator:
    """Computes trial balance and financial statements from the journal"""

    def __init__(
        self,
        ledger: GeneralLedger,
        chart: ChartOfAccounts,
        inventory: Optional[InventoryEngine] = None,
        roles: Optional[AccountRoles] = None
    ):
        self.ledger = ledger
        self.chart = chart
        self.inventory = inventory
        self.roles = roles or AccountRoles()

    def compute_trial_balance(self) -> TrialBalance:
        """
        Fold every entry that entered the ledger

        Voided originals are included together with their reversals, which
        cancel them out.
        """
        trial_balance = TrialBalance()
        for entry in self.ledger.entries():
            if not entry.in_ledger:
                continue
            for line in entry.lines:
                tb_line = trial_balance.lines.get(line.account_code)
                if tb_line is None:
                    account = self.chart.get(line.account_code)
                    tb_line = trial_balance.lines[line.account_code] = TrialBalanceLine(
                        account_code=account.code,
                        account_name=account.name,
                        kind=account.kind
                    )
                tb_line.debit_total += line.debit
                tb_line.credit_total += line.credit
                trial_balance.total_debits += line.debit
                trial_balance.total_credits += line.credit

        trial_balance.lines = dict(sorted(trial_balance.lines.items()))
        return trial_balance

    def compute_income_statement(self) -> IncomeStatement:
        trial_balance = self.compute_trial_balance()
        cogs = trial_balance.balance_of(self.roles.cogs)
        return IncomeStatement(
            revenue=trial_balance.total_for_kind(AccountKind.REVENUE),
            cost_of_goods_sold=cogs,
            operating_expenses=trial_balance.total_for_kind(AccountKind.EXPENSE) - cogs
        )

    def compute_balance_sheet(self) -> BalanceSheet:
        trial_balance = self.compute_trial_balance()
        net_income = (trial_balance.total_for_kind(AccountKind.REVENUE)
                      - trial_balance.total_for_kind(AccountKind.EXPENSE))
        return BalanceSheet(
            assets=trial_balance.total_for_kind(AccountKind.ASSET),
            liabilities=trial_balance.total_for_kind(AccountKind.LIABILITY),
            equity=trial_balance.total_for_kind(AccountKind.EQUITY) + net_income,
            net_income=net_income
        )

    def is_balanced(self) -> bool:
        """Assets equal liabilities plus equity within one cent"""
        return self.compute_balance_sheet().is_balanced

    def check_inventory_identity(self) -> InventoryIdentity:
        if self.inventory is None:
            raise ValueError("Inventory identity needs an inventory engine")

        inbound = ZERO
        outbound = ZERO
        for movement in self.inventory.get_movements():
            if movement.is_outbound:
                outbound += movement.total_cost
            else:
                inbound += movement.total_cost

        return InventoryIdentity(
            inbound_value=inbound,
            outbound_value=outbound,
            ledger_balance=self.ledger.account_balance(self.roles.inventory),
            book_value=self.inventory.inventory_book_value()
        )

    def compute_iva_position(self) -> IvaPosition:
        trial_balance = self.compute_trial_balance()
        return IvaPosition(
            output_tax=trial_balance.balance_of(self.roles.iva_payable),
            input_tax=trial_balance.balance_of(self.roles.iva_credit)
        )
