"""
Bank Reconciliation Module

Matches a bank statement against the ledger lines of the bank account and
posts the adjusting entries for items the books do not carry yet (interest,
bank charges). Adjustments go through ``GeneralLedger.post`` like any other
entry.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional
from enum import Enum
import uuid

from .money import ZERO, Number, amounts_equal, round_money
from .chart import AccountRoles
from .audit import AuditEventType
from .ledger import GeneralLedger, JournalEntry, JournalFilter, AccountLine, EntryOrigin, EntryStatus
from .logging_config import get_logger, log_action


class AdjustmentDirection(Enum):
    """Side of the bank statement an unrecorded item appears on"""
    BANK_CREDIT = "bank_credit"   # Deposit or interest credited by the bank
    BANK_DEBIT = "bank_debit"     # Charge or commission debited by the bank


class MatchMethod(Enum):
    REFERENCE = "reference"
    AMOUNT_AND_DATE = "amount_and_date"


@dataclass
class BankMovement:
    """Statement line; positive amounts increase the account balance"""
    movement_date: date
    description: str
    amount: Decimal
    reference: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        self.amount = round_money(self.amount)


@dataclass
class BankStatement:
    period_start: date
    period_end: date
    opening_balance: Decimal
    closing_balance: Decimal
    movements: List[BankMovement] = field(default_factory=list)
    account_code: Optional[str] = None  # Bank account in the chart; the bank role when None

    def __post_init__(self):
        self.opening_balance = round_money(self.opening_balance)
        self.closing_balance = round_money(self.closing_balance)


@dataclass
class LedgerMovement:
    """Net effect of one journal entry on the bank account"""
    entry_id: str
    entry_number: int
    entry_date: date
    memo: str
    reference_id: Optional[str]
    amount: Decimal


@dataclass
class ReconciliationMatch:
    bank_movement_id: str
    entry_id: str
    amount: Decimal
    method: MatchMethod


@dataclass
class ReconciliationReport:
    account_code: str
    book_balance: Decimal
    bank_balance: Decimal
    matches: List[ReconciliationMatch] = field(default_factory=list)
    unmatched_bank: List[BankMovement] = field(default_factory=list)
    unmatched_ledger: List[LedgerMovement] = field(default_factory=list)

    @property
    def difference(self) -> Decimal:
        """Bank closing balance minus book balance"""
        return self.bank_balance - self.book_balance

    @property
    def is_reconciled(self) -> bool:
        return (amounts_equal(self.bank_balance, self.book_balance)
                and not self.unmatched_bank and not self.unmatched_ledger)


class BankReconciler:
    """Matches bank statements to the books and posts adjustments"""

    def __init__(self, ledger: GeneralLedger, roles: AccountRoles, date_tolerance_days: int = 3):
        self.ledger = ledger
        self.roles = roles
        self.audit_trail = ledger.audit_trail
        self.date_tolerance_days = date_tolerance_days
        self.logger = get_logger("accounting.reconciliation")

    def ledger_movements(self, account_code: str, start: date, end: date) -> List[LedgerMovement]:
        """
        Bank-account effect of each live entry in the period

        Voided entries and their reversals cancel out and are left out.
        """
        movements = []
        entries = self.ledger.query(JournalFilter(start_date=start, end_date=end, account_code=account_code))
        for entry in entries:
            if entry.status != EntryStatus.POSTED or entry.origin == EntryOrigin.REVERSAL:
                continue
            amount = self._net_effect(entry, account_code)
            if amount != ZERO:
                movements.append(LedgerMovement(
                    entry_id=entry.id,
                    entry_number=entry.number,
                    entry_date=entry.entry_date,
                    memo=entry.memo,
                    reference_id=entry.reference_id,
                    amount=amount
                ))
        return movements

    def reconcile(self, statement: BankStatement) -> ReconciliationReport:
        """
        Match statement lines to ledger movements

        First by reference (same reference and amount), then by amount with
        the closest entry date within the date tolerance.
        """
        account_code = statement.account_code or self.roles.bank
        self.ledger.chart.get(account_code)

        pending_ledger = self.ledger_movements(account_code, statement.period_start, statement.period_end)
        report = ReconciliationReport(
            account_code=account_code,
            book_balance=self.ledger.account_balance(account_code, as_of=statement.period_end),
            bank_balance=statement.closing_balance
        )

        unmatched_bank = []
        for bank_movement in statement.movements:
            candidate = None
            if bank_movement.reference:
                candidate = next(
                    (m for m in pending_ledger
                     if m.reference_id == bank_movement.reference and m.amount == bank_movement.amount),
                    None
                )
            if candidate is None:
                unmatched_bank.append(bank_movement)
                continue
            pending_ledger.remove(candidate)
            report.matches.append(ReconciliationMatch(bank_movement.id, candidate.entry_id,
                                                      bank_movement.amount, MatchMethod.REFERENCE))

        for bank_movement in unmatched_bank:
            candidates = [
                m for m in pending_ledger
                if m.amount == bank_movement.amount
                and abs((m.entry_date - bank_movement.movement_date).days) <= self.date_tolerance_days
            ]
            if not candidates:
                report.unmatched_bank.append(bank_movement)
                continue
            candidate = min(candidates, key=lambda m: abs((m.entry_date - bank_movement.movement_date).days))
            pending_ledger.remove(candidate)
            report.matches.append(ReconciliationMatch(bank_movement.id, candidate.entry_id,
                                                      bank_movement.amount, MatchMethod.AMOUNT_AND_DATE))

        report.unmatched_ledger = pending_ledger

        log_action(
            self.logger, "info", f"Reconciled {len(report.matches)} movements on account {account_code}",
            action="reconcile", resource=f"account:{account_code}",
            extra={
                "unmatched_bank": len(report.unmatched_bank),
                "unmatched_ledger": len(report.unmatched_ledger),
                "difference": str(report.difference)
            }
        )
        return report

    def post_adjustment(
        self,
        amount: Number,
        memo: str,
        direction: AdjustmentDirection,
        statement_date: Optional[date] = None,
        account_code: Optional[str] = None,
        reference_id: Optional[str] = None
    ) -> JournalEntry:
        """
        Post an adjusting entry for a statement item missing from the books

        Bank credits: debit Bank, credit Other Income.
        Bank debits: debit Bank Charges, credit Bank.

        Raises:
            ValueError: If amount is not positive
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValueError("Adjustment amount must be positive")
        bank = account_code or self.roles.bank

        if direction == AdjustmentDirection.BANK_CREDIT:
            lines = [
                AccountLine.debit_line(bank, amount, memo),
                AccountLine.credit_line(self.roles.other_income, amount, memo),
            ]
        else:
            lines = [
                AccountLine.debit_line(self.roles.bank_charges, amount, memo),
                AccountLine.credit_line(bank, amount, memo),
            ]

        with self.ledger.storage.atomic():
            entry = self.ledger.post(self.ledger.new_entry(
                memo=f"Bank reconciliation adjustment: {memo}",
                lines=lines,
                entry_date=statement_date,
                reference_id=reference_id,
                origin=EntryOrigin.RECONCILIATION
            ))
            self.audit_trail.log_event(
                event_type=AuditEventType.RECONCILIATION_ADJUSTMENT_POSTED,
                entity_type="journal_entry",
                entity_id=entry.id,
                metadata={"account_code": bank, "amount": amount, "direction": direction.value}
            )

        log_action(
            self.logger, "info", f"Reconciliation adjustment #{entry.number} posted",
            action="post_adjustment", resource=f"journal_entry:{entry.id}",
            extra={"direction": direction.value, "amount": str(amount)}
        )
        return entry

    @staticmethod
    def _net_effect(entry: JournalEntry, account_code: str) -> Decimal:
        return sum((line.debit - line.credit for line in entry.lines if line.account_code == account_code), ZERO)
