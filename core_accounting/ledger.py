"""
Double-Entry Journal Engine

Append-only general ledger. Every financial effect in the system enters
through ``GeneralLedger.post`` as a balanced journal entry; posted entries
are immutable and can only be superseded by a reversal entry created with
``GeneralLedger.void``.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Set
from enum import Enum
import threading
import uuid

from .money import ZERO, TOLERANCE, Number, round_money, to_decimal
from .chart import ChartOfAccounts, NormalBalance
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    UnbalancedEntryError, MalformedLineError, EntryNotFoundError,
    EntryAlreadyVoidedError, InvalidEntryStateError, UnknownAccountError
)
from .logging_config import get_logger, log_action


class EntryStatus(Enum):
    """States of a journal entry"""
    DRAFT = "draft"      # Built in memory, not part of the ledger
    POSTED = "posted"    # Finalized and immutable
    VOIDED = "voided"    # Superseded by a reversal entry


class EntryOrigin(Enum):
    """Business event that produced a journal entry"""
    MANUAL = "manual"
    SALE = "sale"
    PURCHASE = "purchase"
    INVENTORY_ADJUSTMENT = "inventory_adjustment"
    RECONCILIATION = "reconciliation"
    REVERSAL = "reversal"


@dataclass
class AccountLine:
    """
    Individual line of a journal entry
    Each line affects one account with either a debit or a credit
    """
    account_code: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str = ""

    def __post_init__(self):
        # Line shape is validated by GeneralLedger.post
        self.debit = round_money(self.debit)
        self.credit = round_money(self.credit)

    @classmethod
    def debit_line(cls, account_code: str, amount: Number, description: str = "") -> 'AccountLine':
        return cls(account_code=account_code, debit=to_decimal(amount), description=description)

    @classmethod
    def credit_line(cls, account_code: str, amount: Number, description: str = "") -> 'AccountLine':
        return cls(account_code=account_code, credit=to_decimal(amount), description=description)

    @property
    def is_debit(self) -> bool:
        return self.debit != ZERO

    @property
    def is_credit(self) -> bool:
        return self.credit != ZERO

    @property
    def amount(self) -> Decimal:
        """Get the non-zero amount (debit or credit)"""
        return self.debit if self.is_debit else self.credit

    def reversed(self) -> 'AccountLine':
        """Same line with debit and credit swapped"""
        return AccountLine(
            account_code=self.account_code,
            debit=self.credit,
            credit=self.debit,
            description=f"REVERSAL: {self.description}" if self.description else "REVERSAL"
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'account_code': self.account_code,
            'debit': str(self.debit),
            'credit': str(self.credit),
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountLine':
        return cls(
            account_code=data['account_code'],
            debit=Decimal(data['debit']),
            credit=Decimal(data['credit']),
            description=data.get('description', "")
        )


@dataclass
class JournalEntry(StorageRecord):
    """
    Double-entry journal entry with lines that must balance
    Immutable once posted to keep the audit trail meaningful
    """
    entry_date: date
    memo: str
    lines: List[AccountLine]
    origin: EntryOrigin = EntryOrigin.MANUAL
    status: EntryStatus = EntryStatus.DRAFT
    number: Optional[int] = None
    reference_id: Optional[str] = None
    source_id: Optional[str] = None   # Business document or entry this entry derives from
    posted_at: Optional[datetime] = None
    voided_by: Optional[str] = None   # ID of the reversal entry

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    def is_balanced(self) -> bool:
        return abs(self.total_debits - self.total_credits) < TOLERANCE

    def get_affected_accounts(self) -> Set[str]:
        """Get set of account codes affected by this entry"""
        return {line.account_code for line in self.lines}

    @property
    def in_ledger(self) -> bool:
        """Posted entries and voided originals are part of the ledger"""
        return self.status in (EntryStatus.POSTED, EntryStatus.VOIDED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'entry_date': self.entry_date.isoformat(),
            'memo': self.memo,
            'lines': [line.to_dict() for line in self.lines],
            'origin': self.origin.value,
            'status': self.status.value,
            'number': self.number,
            'reference_id': self.reference_id,
            'source_id': self.source_id,
            'posted_at': self.posted_at.isoformat() if self.posted_at else None,
            'voided_by': self.voided_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalEntry':
        posted_at = None
        if data.get('posted_at'):
            posted_at = datetime.fromisoformat(data['posted_at'])

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entry_date=date.fromisoformat(data['entry_date']),
            memo=data['memo'],
            lines=[AccountLine.from_dict(line) for line in data['lines']],
            origin=EntryOrigin(data['origin']),
            status=EntryStatus(data['status']),
            number=data.get('number'),
            reference_id=data.get('reference_id'),
            source_id=data.get('source_id'),
            posted_at=posted_at,
            voided_by=data.get('voided_by')
        )


@dataclass
class JournalFilter:
    """Read-only query over the ledger; unset fields match everything"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    account_code: Optional[str] = None
    reference_id: Optional[str] = None
    source_id: Optional[str] = None
    origin: Optional[EntryOrigin] = None
    status: Optional[EntryStatus] = None

    def matches(self, entry: JournalEntry) -> bool:
        if self.start_date and entry.entry_date < self.start_date:
            return False
        if self.end_date and entry.entry_date > self.end_date:
            return False
        if self.account_code and self.account_code not in entry.get_affected_accounts():
            return False
        if self.reference_id is not None and entry.reference_id != self.reference_id:
            return False
        if self.source_id is not None and entry.source_id != self.source_id:
            return False
        if self.origin and entry.origin != self.origin:
            return False
        if self.status and entry.status != self.status:
            return False
        return True


class GeneralLedger:
    """
    General ledger that validates, numbers and stores journal entries
    Balances are derived from entries, never stored separately
    """

    SEQUENCE_ID = "journal_entry_number"

    def __init__(self, storage: StorageInterface, chart: ChartOfAccounts, audit_trail: AuditTrail):
        self.storage = storage
        self.chart = chart
        self.audit_trail = audit_trail
        self.table_name = "journal_entries"
        self.logger = get_logger("accounting.ledger")
        self._lock = threading.RLock()

    def new_entry(
        self,
        memo: str,
        lines: List[AccountLine],
        entry_date: Optional[date] = None,
        reference_id: Optional[str] = None,
        origin: EntryOrigin = EntryOrigin.MANUAL,
        source_id: Optional[str] = None
    ) -> JournalEntry:
        """
        Build a journal entry in DRAFT state

        Nothing is stored; the entry only becomes part of the ledger
        through ``post``.
        """
        now = datetime.now(timezone.utc)
        return JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_date=entry_date or now.date(),
            memo=memo,
            lines=list(lines),
            origin=origin,
            status=EntryStatus.DRAFT,
            reference_id=reference_id,
            source_id=source_id
        )

    def validate(self, entry: JournalEntry) -> None:
        """
        Check an entry can be posted

        Raises:
            MalformedLineError: Empty entry, negative amount, or a line with
                both or neither side set
            UnknownAccountError: Line references a code not in the chart
            UnbalancedEntryError: Debits and credits differ by 0.01 or more
        """
        if not entry.lines:
            raise MalformedLineError("journal entry must have at least one line")

        for line in entry.lines:
            if line.debit < ZERO or line.credit < ZERO:
                raise MalformedLineError("amounts must not be negative", line.account_code)
            if line.is_debit and line.is_credit:
                raise MalformedLineError("line cannot have both debit and credit", line.account_code)
            if not line.is_debit and not line.is_credit:
                raise MalformedLineError("line must have either debit or credit", line.account_code)
            if not self.chart.contains(line.account_code):
                raise UnknownAccountError(line.account_code)

        if not entry.is_balanced():
            raise UnbalancedEntryError(entry.total_debits, entry.total_credits)

    def post(self, entry: JournalEntry) -> JournalEntry:
        """
        Post a draft entry to the ledger

        Args:
            entry: DRAFT journal entry (see ``new_entry``)

        Returns:
            The POSTED entry carrying its sequence number

        Raises:
            InvalidEntryStateError: If the entry is not a draft or was
                already posted
            MalformedLineError, UnknownAccountError, UnbalancedEntryError:
                See ``validate``
        """
        if entry.status != EntryStatus.DRAFT:
            raise InvalidEntryStateError(entry.id, entry.status.value, "post")

        try:
            self.validate(entry)
        except (UnbalancedEntryError, MalformedLineError) as e:
            log_action(
                self.logger, "error", f"Rejected journal entry: {e}",
                action="post_entry", resource=f"journal_entry:{entry.id}",
                extra={"code": e.code, "memo": entry.memo, "origin": entry.origin.value}
            )
            raise

        with self.storage.atomic():
            with self._lock:
                if self.storage.exists(self.table_name, entry.id):
                    raise InvalidEntryStateError(entry.id, EntryStatus.POSTED.value, "post")

                now = datetime.now(timezone.utc)
                posted = replace(
                    entry,
                    lines=list(entry.lines),
                    status=EntryStatus.POSTED,
                    number=self._next_number(),
                    posted_at=now,
                    updated_at=now
                )
                self._save_entry(posted)

                self.audit_trail.log_event(
                    event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                    entity_type="journal_entry",
                    entity_id=posted.id,
                    metadata={
                        "number": posted.number,
                        "origin": posted.origin.value,
                        "reference_id": posted.reference_id,
                        "source_id": posted.source_id,
                        "total": posted.total_debits,
                        "accounts": sorted(posted.get_affected_accounts())
                    }
                )

        log_action(
            self.logger, "info", f"Journal entry #{posted.number} posted",
            action="post_entry", resource=f"journal_entry:{posted.id}",
            extra={"origin": posted.origin.value, "total": str(posted.total_debits)}
        )
        return posted

    def void(self, entry_id: str, reason: str = "", entry_date: Optional[date] = None) -> JournalEntry:
        """
        Void a posted entry by posting its reversal

        Args:
            entry_id: ID of the posted entry
            reason: Reason recorded on the reversal memo and audit trail
            entry_date: Date of the reversal (defaults to today)

        Returns:
            The POSTED reversal entry

        Raises:
            EntryNotFoundError: Unknown entry
            EntryAlreadyVoidedError: Entry was already voided
            InvalidEntryStateError: Entry is itself a reversal
        """
        with self.storage.atomic():
            with self._lock:
                original = self._load_entry(entry_id)
                if original is None:
                    raise EntryNotFoundError(entry_id)
                if original.status == EntryStatus.VOIDED:
                    raise EntryAlreadyVoidedError(entry_id, original.voided_by)
                if original.status != EntryStatus.POSTED or original.origin == EntryOrigin.REVERSAL:
                    raise InvalidEntryStateError(entry_id, original.status.value, "void")

                memo = f"REVERSAL of #{original.number}"
                if reason:
                    memo = f"{memo}: {reason}"

                reversal = self.post(self.new_entry(
                    memo=memo,
                    lines=[line.reversed() for line in original.lines],
                    entry_date=entry_date,
                    reference_id=original.reference_id,
                    origin=EntryOrigin.REVERSAL,
                    source_id=original.id
                ))

                original.status = EntryStatus.VOIDED
                original.voided_by = reversal.id
                original.updated_at = datetime.now(timezone.utc)
                self._save_entry(original)

                self.audit_trail.log_event(
                    event_type=AuditEventType.JOURNAL_ENTRY_VOIDED,
                    entity_type="journal_entry",
                    entity_id=original.id,
                    metadata={
                        "number": original.number,
                        "reversal_entry_id": reversal.id,
                        "reversal_number": reversal.number,
                        "reason": reason
                    }
                )

        log_action(
            self.logger, "info", f"Journal entry #{original.number} voided by #{reversal.number}",
            action="void_entry", resource=f"journal_entry:{original.id}",
            extra={"reason": reason}
        )
        return reversal

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        """Get a journal entry by ID"""
        return self._load_entry(entry_id)

    def entries(self) -> List[JournalEntry]:
        """All ledger entries (posted, voided and reversals) by number"""
        entries = [JournalEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.number or 0)
        return entries

    def query(self, journal_filter: Optional[JournalFilter] = None) -> List[JournalEntry]:
        """
        Find ledger entries matching a filter

        Args:
            journal_filter: Criteria; all entries when None

        Returns:
            Matching entries ordered by number
        """
        journal_filter = journal_filter or JournalFilter()
        return [entry for entry in self.entries() if journal_filter.matches(entry)]

    def account_balance(self, account_code: str, as_of: Optional[date] = None) -> Decimal:
        """
        Calculate account balance from journal entries

        The balance is signed by the account's normal balance: a debit-normal
        account returns debits minus credits, a credit-normal account the
        opposite.
        """
        account = self.chart.get(account_code)
        entries = self.query(JournalFilter(end_date=as_of, account_code=account_code))

        running_balance = ZERO
        for entry in entries:
            if not entry.in_ledger:
                continue
            for line in entry.lines:
                if line.account_code == account_code:
                    running_balance += line.debit - line.credit

        if account.normal_balance == NormalBalance.CREDIT:
            running_balance = -running_balance
        return running_balance

    def _next_number(self) -> int:
        return self.storage.next_value(self.SEQUENCE_ID)

    def _save_entry(self, entry: JournalEntry) -> None:
        """Save journal entry to storage"""
        self.storage.save(self.table_name, entry.id, entry.to_dict())

    def _load_entry(self, entry_id: str) -> Optional[JournalEntry]:
        """Load journal entry from storage"""
        entry_dict = self.storage.load(self.table_name, entry_id)
        if entry_dict:
            return JournalEntry.from_dict(entry_dict)
        return None
