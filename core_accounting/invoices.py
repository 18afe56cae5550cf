"""
Invoice Lifecycle Module

State machine for sales invoices:

    Draft -> Submitted(Pending) -> Submitted(Accepted) -> Paid | Voided
                                -> Draft(Rejected)

Acceptance by the tax authority processes the sale as one unit of work:
one Sale outbound per line plus the receivable/revenue/IVA entry. Either
all of it is applied or none of it.
"""

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import threading
import uuid

from .money import ZERO, round_money, split_tax_inclusive, to_decimal
from .chart import AccountRoles
from .config import AccountingConfig, get_config
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import GeneralLedger, AccountLine, EntryOrigin
from .inventory import InventoryEngine, ReasonCode
from .tax_authority import TaxAuthorityValidator, ValidationResult, ValidationStatus
from .exceptions import (
    AccountingError, InvoiceNotFoundError, InvalidTransitionError, StockShortageError,
    ValidationTimeoutError, ValidationUnavailableError, InsufficientStockError,
    InvalidQuantityError
)
from .logging_config import get_logger, log_action


class InvoiceStatus(Enum):
    """Lifecycle status of an invoice"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PAID = "paid"          # Terminal
    VOIDED = "voided"      # Terminal


class AttemptStatus(Enum):
    """Outcome of one external validation attempt"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"      # Validator raised; no answer obtained


@dataclass
class InvoiceLine:
    """One sold item; unit price is tax-inclusive"""
    item_id: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = ZERO

    def __post_init__(self):
        self.quantity = to_decimal(self.quantity)
        self.unit_price = round_money(self.unit_price)
        self.discount = round_money(self.discount)

    @property
    def line_total(self) -> Decimal:
        return round_money(self.quantity * self.unit_price - self.discount)

    def to_dict(self) -> Dict[str, str]:
        return {
            'item_id': self.item_id,
            'quantity': str(self.quantity),
            'unit_price': str(self.unit_price),
            'discount': str(self.discount)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InvoiceLine':
        return cls(
            item_id=data['item_id'],
            quantity=Decimal(str(data['quantity'])),
            unit_price=Decimal(str(data['unit_price'])),
            discount=Decimal(str(data.get('discount', "0")))
        )


@dataclass
class ValidationAttempt:
    """
    One submission of an invoice to the tax authority

    Results are applied once per attempt; a resolved attempt is never
    changed again.
    """
    attempt_id: str
    requested_at: datetime
    result: AttemptStatus = AttemptStatus.PENDING
    reason: Optional[str] = None
    authorization_code: Optional[str] = None
    failure_reason: Optional[str] = None  # Set when an accepted sale could not be applied
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.result != AttemptStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempt_id': self.attempt_id,
            'requested_at': self.requested_at.isoformat(),
            'result': self.result.value,
            'reason': self.reason,
            'authorization_code': self.authorization_code,
            'failure_reason': self.failure_reason,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ValidationAttempt':
        return cls(
            attempt_id=data['attempt_id'],
            requested_at=datetime.fromisoformat(data['requested_at']),
            result=AttemptStatus(data['result']),
            reason=data.get('reason'),
            authorization_code=data.get('authorization_code'),
            failure_reason=data.get('failure_reason'),
            resolved_at=datetime.fromisoformat(data['resolved_at']) if data.get('resolved_at') else None
        )


@dataclass
class Invoice(StorageRecord):
    """Sales invoice with tax-inclusive totals"""
    number: str
    client: str
    invoice_date: date
    due_date: date
    lines: List[InvoiceLine]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    status: InvoiceStatus = InvoiceStatus.DRAFT
    external_validation: Optional[ValidationStatus] = None  # None until first submission
    rejection_reason: Optional[str] = None
    attempts: List[ValidationAttempt] = field(default_factory=list)
    sale_entry_id: Optional[str] = None
    payment_entry_id: Optional[str] = None
    void_entry_id: Optional[str] = None
    movement_ids: List[str] = field(default_factory=list)
    restock_movement_ids: List[str] = field(default_factory=list)
    void_reason: Optional[str] = None

    @property
    def current_attempt(self) -> Optional[ValidationAttempt]:
        return self.attempts[-1] if self.attempts else None

    def get_attempt(self, attempt_id: str) -> Optional[ValidationAttempt]:
        for attempt in self.attempts:
            if attempt.attempt_id == attempt_id:
                return attempt
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in (InvoiceStatus.PAID, InvoiceStatus.VOIDED)

    @property
    def state_label(self) -> str:
        """Status with the validation state while submitted, e.g. ``submitted(pending)``"""
        if self.status == InvoiceStatus.SUBMITTED and self.external_validation:
            return f"{self.status.value}({self.external_validation.value})"
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'number': self.number,
            'client': self.client,
            'invoice_date': self.invoice_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'lines': [line.to_dict() for line in self.lines],
            'subtotal': str(self.subtotal),
            'tax_amount': str(self.tax_amount),
            'total': str(self.total),
            'status': self.status.value,
            'external_validation': self.external_validation.value if self.external_validation else None,
            'rejection_reason': self.rejection_reason,
            'attempts': [attempt.to_dict() for attempt in self.attempts],
            'sale_entry_id': self.sale_entry_id,
            'payment_entry_id': self.payment_entry_id,
            'void_entry_id': self.void_entry_id,
            'movement_ids': list(self.movement_ids),
            'restock_movement_ids': list(self.restock_movement_ids),
            'void_reason': self.void_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Invoice':
        external_validation = data.get('external_validation')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            number=data['number'],
            client=data['client'],
            invoice_date=date.fromisoformat(data['invoice_date']),
            due_date=date.fromisoformat(data['due_date']),
            lines=[InvoiceLine.from_dict(line) for line in data['lines']],
            subtotal=Decimal(data['subtotal']),
            tax_amount=Decimal(data['tax_amount']),
            total=Decimal(data['total']),
            status=InvoiceStatus(data['status']),
            external_validation=ValidationStatus(external_validation) if external_validation else None,
            rejection_reason=data.get('rejection_reason'),
            attempts=[ValidationAttempt.from_dict(a) for a in data.get('attempts', [])],
            sale_entry_id=data.get('sale_entry_id'),
            payment_entry_id=data.get('payment_entry_id'),
            void_entry_id=data.get('void_entry_id'),
            movement_ids=list(data.get('movement_ids', [])),
            restock_movement_ids=list(data.get('restock_movement_ids', [])),
            void_reason=data.get('void_reason')
        )


class InvoiceManager:
    """
    Drives invoices through their lifecycle

    Lock order: invoice lock, then storage transaction. Validation runs on
    a worker pool without holding either.
    """

    SEQUENCE_ID = "invoice_number"
    DEFAULT_PAYMENT_TERMS_DAYS = 30

    def __init__(
        self,
        storage: StorageInterface,
        ledger: GeneralLedger,
        inventory: InventoryEngine,
        validator: TaxAuthorityValidator,
        roles: AccountRoles,
        audit_trail: AuditTrail,
        config: Optional[AccountingConfig] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.inventory = inventory
        self.validator = validator
        self.roles = roles
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.table_name = "invoices"
        self.logger = get_logger("accounting.invoices")

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.validator_workers,
            thread_name_prefix="tax-validation"
        )
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _invoice_lock(self, invoice_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(invoice_id)
            if lock is None:
                lock = self._locks[invoice_id] = threading.RLock()
            return lock

    def create_invoice(
        self,
        client: str,
        lines: List[Union[InvoiceLine, Dict[str, Any]]],
        number: Optional[str] = None,
        invoice_date: Optional[date] = None,
        due_date: Optional[date] = None
    ) -> Invoice:
        """
        Create a DRAFT invoice

        Args:
            client: Customer name or tax ID
            lines: InvoiceLine objects or dicts with item_id, quantity,
                unit_price and optional discount
            number: Invoice number (generated when omitted)
            invoice_date: Business date (defaults to today)
            due_date: Payment due date (defaults to 30 days after the invoice date)

        Returns:
            Invoice in DRAFT status with computed totals

        Raises:
            ValueError: If there are no lines
            ItemNotFoundError: If a line references an unknown item
            InvalidQuantityError: If a quantity, price or discount is invalid
        """
        invoice_lines = [line if isinstance(line, InvoiceLine) else InvoiceLine.from_dict(line)
                         for line in lines]
        if not invoice_lines:
            raise ValueError("Invoice must have at least one line")

        for line in invoice_lines:
            self.inventory.get_item_state(line.item_id)
            if line.quantity <= ZERO:
                raise InvalidQuantityError(line.item_id, f"quantity must be positive, got {line.quantity}")
            if line.unit_price < ZERO or line.discount < ZERO:
                raise InvalidQuantityError(line.item_id, "unit price and discount must not be negative")
            if line.line_total < ZERO:
                raise InvalidQuantityError(line.item_id, "discount exceeds line amount")

        total = sum((line.line_total for line in invoice_lines), ZERO)
        subtotal, tax_amount = split_tax_inclusive(total)

        now = datetime.now(timezone.utc)
        invoice_date = invoice_date or now.date()

        with self.storage.atomic():
            invoice = Invoice(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                number=number or self._next_number(),
                client=client,
                invoice_date=invoice_date,
                due_date=due_date or invoice_date + timedelta(days=self.DEFAULT_PAYMENT_TERMS_DAYS),
                lines=invoice_lines,
                subtotal=subtotal,
                tax_amount=tax_amount,
                total=total
            )
            self._save_invoice(invoice)

            self.audit_trail.log_event(
                event_type=AuditEventType.INVOICE_CREATED,
                entity_type="invoice",
                entity_id=invoice.id,
                metadata={
                    "number": invoice.number,
                    "client": client,
                    "total": total,
                    "line_count": len(invoice_lines)
                }
            )

        log_action(
            self.logger, "info", f"Invoice {invoice.number} created",
            action="create_invoice", resource=f"invoice:{invoice.id}",
            extra={"total": str(total), "subtotal": str(subtotal), "tax_amount": str(tax_amount)}
        )
        return invoice

    def submit_invoice(self, invoice_id: str, timeout: Optional[float] = None) -> Invoice:
        """
        Submit a DRAFT invoice to the tax authority and apply the answer

        The invoice is parked in SUBMITTED(PENDING) under a new validation
        attempt while the validator runs.

        Args:
            invoice_id: Invoice to submit
            timeout: Seconds to wait for the answer (config default when None)

        Returns:
            Invoice after the answer was applied

        Raises:
            InvalidTransitionError: If the invoice is not a DRAFT
            ValidationTimeoutError: No answer in time; the invoice stays
                pending and the late answer is applied when it arrives
            ValidationUnavailableError: The validator failed; the invoice
                returns to DRAFT
            StockShortageError: Accepted, but stock could not cover the sale
        """
        timeout = self.config.validator_timeout if timeout is None else timeout

        with self._invoice_lock(invoice_id):
            with self.storage.atomic():
                invoice = self._require_invoice(invoice_id)
                if invoice.status != InvoiceStatus.DRAFT:
                    raise InvalidTransitionError(invoice_id, invoice.state_label, "submit")

                now = datetime.now(timezone.utc)
                attempt = ValidationAttempt(attempt_id=str(uuid.uuid4()), requested_at=now)
                invoice.attempts.append(attempt)
                invoice.status = InvoiceStatus.SUBMITTED
                invoice.external_validation = ValidationStatus.PENDING
                invoice.rejection_reason = None
                invoice.updated_at = now
                self._save_invoice(invoice)

                self.audit_trail.log_event(
                    event_type=AuditEventType.INVOICE_SUBMITTED,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    metadata={"number": invoice.number, "attempt_id": attempt.attempt_id}
                )

        log_action(
            self.logger, "info", f"Invoice {invoice.number} submitted for validation",
            action="submit_invoice", resource=f"invoice:{invoice_id}",
            extra={"attempt_id": attempt.attempt_id}
        )

        future = self._executor.submit(self.validator.validate, invoice)
        result = self._collect_result(invoice_id, attempt.attempt_id, future, timeout)
        if result is None:
            future.add_done_callback(partial(self._apply_late_result, invoice_id, attempt.attempt_id))
            # The callback runs inline when the answer landed just before it was attached
            invoice = self._require_invoice(invoice_id)
            if invoice.get_attempt(attempt.attempt_id).is_resolved:
                return invoice
            log_action(
                self.logger, "warning", f"Validation of invoice {invoice.number} timed out after {timeout}s",
                action="submit_invoice", resource=f"invoice:{invoice_id}",
                extra={"attempt_id": attempt.attempt_id}
            )
            raise ValidationTimeoutError(invoice_id, attempt.attempt_id, timeout)

        return self.apply_validation_result(invoice_id, attempt.attempt_id, result)

    def _collect_result(
        self,
        invoice_id: str,
        attempt_id: str,
        future: Future,
        timeout: float
    ) -> Optional[ValidationResult]:
        """Validator answer, or None when it is still outstanding after ``timeout``"""
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            if not future.done():
                return None
            # Finished between the deadline and this check, or the validator
            # itself raised TimeoutError
            error = future.exception()
            if error is None:
                return future.result()
        except Exception as e:
            error = e
        self._fail_attempt(invoice_id, attempt_id, str(error))
        raise ValidationUnavailableError(invoice_id, attempt_id, str(error)) from error

    def apply_validation_result(self, invoice_id: str, attempt_id: str, result: ValidationResult) -> Invoice:
        """
        Apply the tax authority's answer for one attempt

        Idempotent per (invoice, attempt): a repeated delivery for a resolved
        attempt, or a result for an attempt that is no longer current, leaves
        the invoice untouched.

        Raises:
            InvoiceNotFoundError: Unknown invoice
            InvalidTransitionError: Unknown attempt
            StockShortageError: Accepted, but stock could not cover the sale;
                nothing was applied and the invoice is back in DRAFT
        """
        if result.status == ValidationStatus.PENDING:
            raise ValueError("A validation result must be accepted or rejected")

        with self._invoice_lock(invoice_id):
            invoice = self._require_invoice(invoice_id)
            attempt = invoice.get_attempt(attempt_id)
            if attempt is None:
                raise InvalidTransitionError(invoice_id, invoice.state_label, f"apply result of unknown attempt {attempt_id}")

            if attempt.is_resolved:
                self.logger.debug(f"Attempt {attempt_id} of invoice {invoice.number} already resolved")
                return invoice

            if (attempt is not invoice.current_attempt
                    or invoice.status != InvoiceStatus.SUBMITTED
                    or invoice.external_validation != ValidationStatus.PENDING):
                log_action(
                    self.logger, "info", f"Ignoring superseded validation result for invoice {invoice.number}",
                    action="apply_validation_result", resource=f"invoice:{invoice_id}",
                    extra={"attempt_id": attempt_id, "status": invoice.state_label}
                )
                return invoice

            if result.status == ValidationStatus.REJECTED:
                return self._reject(invoice, attempt, result)
            return self._accept(invoice, attempt, result)

    def mark_paid(
        self,
        invoice_id: str,
        cash_account: Optional[str] = None,
        payment_date: Optional[date] = None
    ) -> Invoice:
        """
        Record full payment of an accepted invoice

        Debits cash (or the given bank account) and credits Accounts
        Receivable for the invoice total.

        Raises:
            InvalidTransitionError: Unless the invoice is SUBMITTED(ACCEPTED)
        """
        with self._invoice_lock(invoice_id):
            with self.storage.atomic():
                invoice = self._require_invoice(invoice_id)
                if (invoice.status != InvoiceStatus.SUBMITTED
                        or invoice.external_validation != ValidationStatus.ACCEPTED):
                    raise InvalidTransitionError(invoice_id, invoice.state_label, "mark paid")

                if invoice.total != ZERO:
                    entry = self.ledger.post(self.ledger.new_entry(
                        memo=f"Payment of invoice {invoice.number} - {invoice.client}",
                        lines=[
                            AccountLine.debit_line(cash_account or self.roles.cash, invoice.total),
                            AccountLine.credit_line(self.roles.receivable, invoice.total, invoice.client),
                        ],
                        entry_date=payment_date,
                        reference_id=invoice.number,
                        origin=EntryOrigin.SALE,
                        source_id=invoice.id
                    ))
                    invoice.payment_entry_id = entry.id

                invoice.status = InvoiceStatus.PAID
                invoice.updated_at = datetime.now(timezone.utc)
                self._save_invoice(invoice)

                self.audit_trail.log_event(
                    event_type=AuditEventType.INVOICE_PAID,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    metadata={"number": invoice.number, "total": invoice.total,
                              "entry_id": invoice.payment_entry_id}
                )

        log_action(
            self.logger, "info", f"Invoice {invoice.number} paid",
            action="mark_paid", resource=f"invoice:{invoice_id}"
        )
        return invoice

    def void_invoice(self, invoice_id: str, reason: str = "") -> Invoice:
        """
        Void an invoice that is not yet paid

        A processed sale is reversed through the ledger and, when
        ``restock_on_void`` is enabled, every sold quantity is returned to
        stock at the cost it left with.

        Raises:
            InvalidTransitionError: If the invoice is PAID or VOIDED
        """
        with self._invoice_lock(invoice_id):
            with self.storage.atomic():
                invoice = self._require_invoice(invoice_id)
                if invoice.is_terminal:
                    raise InvalidTransitionError(invoice_id, invoice.state_label, "void")

                if invoice.sale_entry_id:
                    reversal = self.ledger.void(invoice.sale_entry_id, reason or f"Invoice {invoice.number} voided")
                    invoice.void_entry_id = reversal.id

                if self.config.restock_on_void:
                    for movement_id in invoice.movement_ids:
                        sold = self.inventory.get_movement(movement_id)
                        restock, _ = self.inventory.apply_inbound(
                            sold.item_id, sold.quantity, sold.unit_cost,
                            ReasonCode.RETURN_IN, document_ref=invoice.number
                        )
                        invoice.restock_movement_ids.append(restock.id)

                invoice.status = InvoiceStatus.VOIDED
                invoice.void_reason = reason or None
                invoice.updated_at = datetime.now(timezone.utc)
                self._save_invoice(invoice)

                self.audit_trail.log_event(
                    event_type=AuditEventType.INVOICE_VOIDED,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    metadata={
                        "number": invoice.number,
                        "reason": reason,
                        "void_entry_id": invoice.void_entry_id,
                        "restocked": len(invoice.restock_movement_ids)
                    }
                )

        log_action(
            self.logger, "info", f"Invoice {invoice.number} voided",
            action="void_invoice", resource=f"invoice:{invoice_id}",
            extra={"reason": reason}
        )
        return invoice

    def get_invoice_state(self, invoice_id: str) -> Invoice:
        """Get an invoice, raising InvoiceNotFoundError if missing"""
        return self._require_invoice(invoice_id)

    def list_invoices(self, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
        if status is not None:
            records = self.storage.find(self.table_name, {'status': status.value})
        else:
            records = self.storage.load_all(self.table_name)
        invoices = [Invoice.from_dict(data) for data in records]
        invoices.sort(key=lambda i: i.number)
        return invoices

    def close(self, wait: bool = True) -> None:
        """Stop the validation worker pool"""
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _accept(self, invoice: Invoice, attempt: ValidationAttempt, result: ValidationResult) -> Invoice:
        try:
            with self.storage.atomic():
                self._process_sale(invoice)

                attempt.result = AttemptStatus.ACCEPTED
                attempt.authorization_code = result.authorization_code
                attempt.resolved_at = datetime.now(timezone.utc)
                invoice.external_validation = ValidationStatus.ACCEPTED
                invoice.updated_at = attempt.resolved_at
                self._save_invoice(invoice)

                self.audit_trail.log_event(
                    event_type=AuditEventType.INVOICE_ACCEPTED,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    metadata={
                        "number": invoice.number,
                        "attempt_id": attempt.attempt_id,
                        "authorization_code": result.authorization_code,
                        "sale_entry_id": invoice.sale_entry_id,
                        "movement_ids": invoice.movement_ids
                    }
                )
        except StockShortageError as e:
            self._record_shortage(invoice.id, attempt.attempt_id, result, e)
            raise

        log_action(
            self.logger, "info", f"Invoice {invoice.number} accepted and sale processed",
            action="apply_validation_result", resource=f"invoice:{invoice.id}",
            extra={"attempt_id": attempt.attempt_id, "sale_entry_id": invoice.sale_entry_id}
        )
        return invoice

    def _process_sale(self, invoice: Invoice) -> None:
        """Stock outbound per line plus the sale entry; caller holds the transaction"""
        requested: Dict[str, Decimal] = {}
        for line in invoice.lines:
            requested[line.item_id] = requested.get(line.item_id, ZERO) + line.quantity

        shortages = []
        for item_id, quantity in requested.items():
            shortage = self.inventory.check_stock(item_id, quantity)
            if shortage is not None:
                shortages.append(shortage)
        if shortages:
            raise StockShortageError(invoice.id, shortages)

        for line in invoice.lines:
            try:
                movement, _ = self.inventory.apply_outbound(
                    line.item_id, line.quantity, ReasonCode.SALE,
                    document_ref=invoice.number, movement_date=invoice.invoice_date
                )
            except InsufficientStockError as e:
                raise StockShortageError(invoice.id, [e]) from e
            invoice.movement_ids.append(movement.id)

        lines = [AccountLine.debit_line(self.roles.receivable, invoice.total, invoice.client)]
        if invoice.subtotal != ZERO:
            lines.append(AccountLine.credit_line(self.roles.sales, invoice.subtotal, f"Invoice {invoice.number}"))
        if invoice.tax_amount != ZERO:
            lines.append(AccountLine.credit_line(self.roles.iva_payable, invoice.tax_amount, "IVA Debito Fiscal"))

        if invoice.total != ZERO:
            entry = self.ledger.post(self.ledger.new_entry(
                memo=f"Sale invoice {invoice.number} - {invoice.client}",
                lines=lines,
                entry_date=invoice.invoice_date,
                reference_id=invoice.number,
                origin=EntryOrigin.SALE,
                source_id=invoice.id
            ))
            invoice.sale_entry_id = entry.id

    def _record_shortage(
        self,
        invoice_id: str,
        attempt_id: str,
        result: ValidationResult,
        error: StockShortageError
    ) -> None:
        """Back to DRAFT after the sale was rolled back, keeping the diagnosis"""
        with self.storage.atomic():
            invoice = self._require_invoice(invoice_id)
            attempt = invoice.get_attempt(attempt_id)
            now = datetime.now(timezone.utc)
            attempt.result = AttemptStatus.ACCEPTED
            attempt.authorization_code = result.authorization_code
            attempt.failure_reason = str(error)
            attempt.resolved_at = now
            invoice.status = InvoiceStatus.DRAFT
            invoice.external_validation = ValidationStatus.ACCEPTED
            invoice.updated_at = now
            self._save_invoice(invoice)

            self.audit_trail.log_event(
                event_type=AuditEventType.INVOICE_STOCK_SHORTAGE,
                entity_type="invoice",
                entity_id=invoice_id,
                metadata={
                    "number": invoice.number,
                    "attempt_id": attempt_id,
                    "shortages": [
                        {"item_code": s.item_code, "requested": s.requested, "available": s.available}
                        for s in error.shortages
                    ]
                }
            )

        log_action(
            self.logger, "warning", str(error),
            action="apply_validation_result", resource=f"invoice:{invoice_id}",
            extra={"attempt_id": attempt_id, "item_codes": error.item_codes}
        )

    def _reject(self, invoice: Invoice, attempt: ValidationAttempt, result: ValidationResult) -> Invoice:
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            attempt.result = AttemptStatus.REJECTED
            attempt.reason = result.reason
            attempt.resolved_at = now
            invoice.status = InvoiceStatus.DRAFT
            invoice.external_validation = ValidationStatus.REJECTED
            invoice.rejection_reason = result.reason
            invoice.updated_at = now
            self._save_invoice(invoice)

            self.audit_trail.log_event(
                event_type=AuditEventType.INVOICE_REJECTED,
                entity_type="invoice",
                entity_id=invoice.id,
                metadata={"number": invoice.number, "attempt_id": attempt.attempt_id,
                          "reason": result.reason}
            )

        log_action(
            self.logger, "info", f"Invoice {invoice.number} rejected: {result.reason}",
            action="apply_validation_result", resource=f"invoice:{invoice.id}",
            extra={"attempt_id": attempt.attempt_id}
        )
        return invoice

    def _fail_attempt(self, invoice_id: str, attempt_id: str, reason: str) -> None:
        """Validator raised: close the attempt and hand the invoice back as DRAFT"""
        with self._invoice_lock(invoice_id):
            with self.storage.atomic():
                invoice = self._require_invoice(invoice_id)
                attempt = invoice.get_attempt(attempt_id)
                if attempt is None or attempt.is_resolved:
                    return
                now = datetime.now(timezone.utc)
                attempt.result = AttemptStatus.FAILED
                attempt.failure_reason = reason
                attempt.resolved_at = now
                if attempt is invoice.current_attempt and invoice.status == InvoiceStatus.SUBMITTED:
                    invoice.status = InvoiceStatus.DRAFT
                    invoice.external_validation = None
                invoice.updated_at = now
                self._save_invoice(invoice)

                self.audit_trail.log_event(
                    event_type=AuditEventType.INVOICE_VALIDATION_FAILED,
                    entity_type="invoice",
                    entity_id=invoice_id,
                    metadata={"number": invoice.number, "attempt_id": attempt_id, "reason": reason}
                )

        log_action(
            self.logger, "error", f"Validation of invoice {invoice_id} failed: {reason}",
            action="submit_invoice", resource=f"invoice:{invoice_id}",
            extra={"attempt_id": attempt_id}
        )

    def _apply_late_result(self, invoice_id: str, attempt_id: str, future: Future) -> None:
        """Done-callback for an answer that arrived after the caller gave up"""
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._fail_attempt(invoice_id, attempt_id, str(error))
            return
        try:
            self.apply_validation_result(invoice_id, attempt_id, future.result())
        except AccountingError:
            self.logger.exception(f"Late validation result for invoice {invoice_id} could not be applied")

    def _next_number(self) -> str:
        return f"INV-{self.storage.next_value(self.SEQUENCE_ID):06d}"

    def _require_invoice(self, invoice_id: str) -> Invoice:
        data = self.storage.load(self.table_name, invoice_id)
        if data is None:
            raise InvoiceNotFoundError(invoice_id)
        return Invoice.from_dict(data)

    def _save_invoice(self, invoice: Invoice) -> None:
        self.storage.save(self.table_name, invoice.id, invoice.to_dict())
