"""
Typed Exception Hierarchy

Every failure the engine reports is a typed exception with a machine-readable
``code`` and structured attributes, so callers branch on type instead of
parsing messages.

    AccountingError (base)
    |
    +-- JournalError
    |   +-- UnbalancedEntryError
    |   +-- UnknownAccountError
    |   +-- MalformedLineError
    |   +-- EntryNotFoundError
    |   +-- EntryAlreadyVoidedError
    |   +-- InvalidEntryStateError
    |
    +-- InventoryError
    |   +-- InvalidQuantityError
    |   +-- InsufficientStockError
    |   +-- ItemNotFoundError
    |   +-- InvalidReasonCodeError
    |
    +-- InvoiceError
        +-- InvoiceNotFoundError
        +-- InvalidTransitionError
        +-- StockShortageError
        +-- ValidationTimeoutError
        +-- ValidationUnavailableError

UnbalancedEntryError and MalformedLineError indicate a defect upstream and
should never surface in normal operation. InsufficientStockError and
StockShortageError are expected business conditions.
"""

from decimal import Decimal
from typing import List, Optional


class AccountingError(Exception):
    """Base exception for all accounting engine errors"""

    code: str = "ACCOUNTING_ERROR"


# Journal errors


class JournalError(AccountingError):
    """Base exception for journal errors"""

    code: str = "JOURNAL_ERROR"


class UnbalancedEntryError(JournalError):
    """Journal entry debits do not equal credits"""

    code: str = "UNBALANCED_ENTRY"

    def __init__(self, debits: Decimal, credits: Decimal):
        self.debits = debits
        self.credits = credits
        super().__init__(f"Unbalanced entry: debits={debits}, credits={credits}")


class UnknownAccountError(JournalError):
    """Account code is not in the chart of accounts"""

    code: str = "UNKNOWN_ACCOUNT"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Unknown account code {account_code}")


class MalformedLineError(JournalError):
    """Journal line is not exactly one positive debit or credit"""

    code: str = "MALFORMED_LINE"

    def __init__(self, reason: str, account_code: Optional[str] = None):
        self.reason = reason
        self.account_code = account_code
        if account_code:
            super().__init__(f"Malformed line on account {account_code}: {reason}")
        else:
            super().__init__(f"Malformed entry: {reason}")


class EntryNotFoundError(JournalError):
    """Journal entry does not exist"""

    code: str = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Journal entry {entry_id} not found")


class EntryAlreadyVoidedError(JournalError):
    """Journal entry has already been voided"""

    code: str = "ENTRY_ALREADY_VOIDED"

    def __init__(self, entry_id: str, voided_by: Optional[str] = None):
        self.entry_id = entry_id
        self.voided_by = voided_by
        super().__init__(f"Journal entry {entry_id} has already been voided")


class InvalidEntryStateError(JournalError):
    """Operation not allowed for the entry's current status"""

    code: str = "INVALID_ENTRY_STATE"

    def __init__(self, entry_id: str, status: str, operation: str):
        self.entry_id = entry_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} journal entry {entry_id} in status {status}")


# Inventory errors


class InventoryError(AccountingError):
    """Base exception for inventory errors"""

    code: str = "INVENTORY_ERROR"


class InvalidQuantityError(InventoryError):
    """Movement quantity or cost is not acceptable"""

    code: str = "INVALID_QUANTITY"

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Invalid movement for item {item_id}: {reason}")


class InsufficientStockError(InventoryError):
    """Outbound quantity exceeds quantity on hand"""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, item_code: str, requested: Decimal, available: Decimal):
        self.item_id = item_id
        self.item_code = item_code
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for item {item_code}: "
            f"requested {requested}, available {available}"
        )


class ItemNotFoundError(InventoryError):
    """Inventory item does not exist"""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Inventory item {item_id} not found")


class InvalidReasonCodeError(InventoryError):
    """Reason code cannot be used for this movement direction"""

    code: str = "INVALID_REASON_CODE"

    def __init__(self, reason_code: str, direction: str):
        self.reason_code = reason_code
        self.direction = direction
        super().__init__(f"Reason code {reason_code} is not valid for {direction} movements")


# Invoice errors


class InvoiceError(AccountingError):
    """Base exception for invoice errors"""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice does not exist"""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class InvalidTransitionError(InvoiceError):
    """Requested lifecycle transition is not allowed from the current state"""

    code: str = "INVALID_TRANSITION"

    def __init__(self, invoice_id: str, status: str, operation: str):
        self.invoice_id = invoice_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} invoice {invoice_id} in status {status}")


class StockShortageError(InvoiceError):
    """One or more invoice lines cannot be fulfilled from stock"""

    code: str = "STOCK_SHORTAGE"

    def __init__(self, invoice_id: str, shortages: List[InsufficientStockError]):
        self.invoice_id = invoice_id
        self.shortages = shortages
        details = "; ".join(str(s) for s in shortages)
        super().__init__(f"Invoice {invoice_id} cannot be fulfilled: {details}")

    @property
    def item_codes(self) -> List[str]:
        return [s.item_code for s in self.shortages]


class ValidationTimeoutError(InvoiceError):
    """External tax-authority validation did not answer in time"""

    code: str = "VALIDATION_TIMEOUT"

    def __init__(self, invoice_id: str, attempt_id: str, timeout: float):
        self.invoice_id = invoice_id
        self.attempt_id = attempt_id
        self.timeout = timeout
        super().__init__(
            f"Validation of invoice {invoice_id} (attempt {attempt_id}) "
            f"timed out after {timeout}s; result will be applied when it arrives"
        )


class ValidationUnavailableError(InvoiceError):
    """External tax-authority validator failed to produce a result"""

    code: str = "VALIDATION_UNAVAILABLE"

    def __init__(self, invoice_id: str, attempt_id: str, reason: str):
        self.invoice_id = invoice_id
        self.attempt_id = attempt_id
        self.reason = reason
        super().__init__(f"Validation of invoice {invoice_id} failed: {reason}")
