"""
Audit Trail Module

Append-only record of every state change in the accounting engine. Each
event stores the SHA-256 digest of its content together with the digest
of its predecessor, so editing or removing a stored event is detectable
by replaying the chain.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


GENESIS_HASH = ""


class AuditEventType(Enum):
    """Types of audit events"""
    # Journal
    JOURNAL_ENTRY_POSTED = "journal_entry_posted"
    JOURNAL_ENTRY_VOIDED = "journal_entry_voided"

    # Inventory
    ITEM_REGISTERED = "item_registered"
    INVENTORY_MOVEMENT_RECORDED = "inventory_movement_recorded"

    # Invoices
    INVOICE_CREATED = "invoice_created"
    INVOICE_SUBMITTED = "invoice_submitted"
    INVOICE_ACCEPTED = "invoice_accepted"
    INVOICE_REJECTED = "invoice_rejected"
    INVOICE_VALIDATION_FAILED = "invoice_validation_failed"
    INVOICE_STOCK_SHORTAGE = "invoice_stock_shortage"
    INVOICE_PAID = "invoice_paid"
    INVOICE_VOIDED = "invoice_voided"

    # Bank reconciliation
    RECONCILIATION_ADJUSTMENT_POSTED = "reconciliation_adjustment_posted"

    # Lifecycle of the engine itself
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"


def _jsonable(value: Any) -> Any:
    """Metadata value in the form it is hashed and stored"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    return value


def digest(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, no whitespace)"""
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    sequence: int
    event_type: AuditEventType
    entity_type: str  # journal_entry, inventory_item, invoice, system
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = {key: _jsonable(value) for key, value in (self.metadata or {}).items()}

    def calculate_hash(self) -> str:
        """Digest over every field except ``current_hash`` and ``updated_at``"""
        return digest({
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        })

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sequence=data['sequence'],
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id')
        )


@dataclass
class IntegrityReport:
    """Result of replaying the audit chain"""
    total_events: int = 0
    hash_errors: List[Dict[str, Any]] = field(default_factory=list)
    chain_breaks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.hash_errors and not self.chain_breaks


class AuditTrail:
    """
    Hash-chained audit trail

    The chain head (last sequence and hash) is a record in the same store
    as the events. Logging happens inside ``storage.atomic()``, so an event
    written by a business operation that later rolls back disappears
    together with the head update and the chain stays unbroken.
    """

    HEAD_TABLE = "audit_head"
    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events", enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of record affected
            entity_id: ID of the record affected
            metadata: Event details; Decimals, dates and enums are converted
            user_id: Initiating user, when known

        Returns:
            The stored event, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self.storage.load(self.HEAD_TABLE, self.HEAD_ID) or {'sequence': 0, 'hash': GENESIS_HASH}
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.HEAD_TABLE, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'sequence': event.sequence,
                'hash': event.current_hash
            })
        return event

    def _events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        if filters:
            records = self.storage.find(self.table_name, filters)
        else:
            records = self.storage.load_all(self.table_name)
        return sorted((AuditEvent.from_dict(record) for record in records), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """History of one record, oldest first"""
        return self._events({'entity_type': entity_type, 'entity_id': entity_id})

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._events({'event_type': event_type.value})

    def get_all_events(self) -> List[AuditEvent]:
        """Whole chain in sequence order"""
        return self._events()

    def verify_integrity(self) -> IntegrityReport:
        """
        Replay the chain

        Reports events whose stored hash no longer matches their content
        (``hash_errors``) and events that do not point at their
        predecessor's hash (``chain_breaks``).
        """
        events = self.get_all_events()
        report = IntegrityReport(total_events=len(events))

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            if not event.verify_hash():
                report.hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                report.chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return report

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
