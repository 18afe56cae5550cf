"""
Tax Authority Validation Client Module

External invoice validation. Every submitted invoice must be accepted by the
tax authority before the sale takes effect. The validator is a blocking
call that may take seconds; the invoice manager runs it on a worker thread
and bounds the wait.
"""

import httpx
import logging
import random
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .exceptions import AccountingError

if TYPE_CHECKING:
    from .invoices import Invoice

logger = logging.getLogger("accounting.tax_authority")


class ValidationStatus(Enum):
    """External validation state of an invoice"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class ValidationResult:
    """Answer from the tax authority"""
    status: ValidationStatus
    reason: Optional[str] = None  # rejection reason
    authorization_code: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.status == ValidationStatus.ACCEPTED


class TaxAuthorityUnavailableError(AccountingError):
    """Validator could not produce an answer"""

    code: str = "TAX_AUTHORITY_UNAVAILABLE"


class TaxAuthorityValidator(ABC):
    """Interface of the external invoice validator"""

    @abstractmethod
    def validate(self, invoice: 'Invoice') -> ValidationResult:
        """
        Validate an invoice, blocking until the authority answers

        Raises:
            TaxAuthorityUnavailableError: If no answer can be obtained
        """
        pass

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        pass


def invoice_payload(invoice: 'Invoice') -> dict:
    """Map an invoice to the authority's request format"""
    return {
        "invoice_id": invoice.id,
        "number": invoice.number,
        "client": invoice.client,
        "date": invoice.invoice_date.isoformat(),
        "subtotal": str(invoice.subtotal),
        "tax_amount": str(invoice.tax_amount),
        "total": str(invoice.total),
        "lines": [
            {
                "item_id": line.item_id,
                "quantity": str(line.quantity),
                "unit_price": str(line.unit_price),
                "discount": str(line.discount),
            }
            for line in invoice.lines
        ]
    }


class SimulatedTaxAuthority(TaxAuthorityValidator):
    """
    Stand-in for the tax authority service

    Answers after a fixed latency and accepts a configurable share of
    invoices. Pass a seed for reproducible decisions.
    """

    REJECTION_REASONS = [
        "Invalid client tax ID (NIT)",
        "Duplicate invoice authorization code (CUF)",
        "Dosage key expired",
        "Invoice amount does not match declared lines",
    ]

    def __init__(
        self,
        latency_seconds: float = 2.5,
        acceptance_rate: float = 0.85,
        seed: Optional[int] = None
    ):
        if not 0.0 <= acceptance_rate <= 1.0:
            raise ValueError("acceptance_rate must be between 0 and 1")
        self.latency_seconds = latency_seconds
        self.acceptance_rate = acceptance_rate
        self._random = random.Random(seed)
        self._random_lock = threading.Lock()

    def validate(self, invoice: 'Invoice') -> ValidationResult:
        start = time.time()
        if self.latency_seconds > 0:
            time.sleep(self.latency_seconds)

        with self._random_lock:
            roll = self._random.random()
            reason = self._random.choice(self.REJECTION_REASONS)

        latency_ms = (time.time() - start) * 1000
        if roll < self.acceptance_rate:
            return ValidationResult(
                status=ValidationStatus.ACCEPTED,
                authorization_code=uuid.uuid4().hex[:16].upper(),
                latency_ms=latency_ms
            )

        logger.info(f"Simulated authority rejected invoice {invoice.number}: {reason}")
        return ValidationResult(status=ValidationStatus.REJECTED, reason=reason, latency_ms=latency_ms)


class HttpTaxAuthorityClient(TaxAuthorityValidator):
    """REST client for a tax authority validation gateway"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def validate(self, invoice: 'Invoice') -> ValidationResult:
        """POST the invoice to ``/invoices/validate``"""
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/invoices/validate",
                json=invoice_payload(invoice),
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Tax authority connection failed: {e}")
            raise TaxAuthorityUnavailableError(f"Tax authority connection failed: {e}") from e

        latency_ms = (time.time() - start) * 1000

        if response.status_code != 200:
            logger.warning(f"Tax authority returned {response.status_code}: {response.text}")
            raise TaxAuthorityUnavailableError(f"Tax authority returned HTTP {response.status_code}")

        data = response.json()
        try:
            status = ValidationStatus(str(data.get("status", "")).lower())
        except ValueError:
            raise TaxAuthorityUnavailableError(f"Unexpected validation status {data.get('status')!r}")
        if status == ValidationStatus.PENDING:
            raise TaxAuthorityUnavailableError("Tax authority did not reach a decision")

        return ValidationResult(
            status=status,
            reason=data.get("reason"),
            authorization_code=data.get("authorization_code"),
            latency_ms=latency_ms
        )

    def health_check(self) -> bool:
        """Check if the gateway is healthy"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class MockTaxAuthority(TaxAuthorityValidator):
    """
    Deterministic validator for testing

    Answers with a fixed status. When ``gate`` is given, each call blocks
    until the event is set, which lets tests hold an answer past the
    caller's timeout and release it afterwards.
    """

    def __init__(
        self,
        status: ValidationStatus = ValidationStatus.ACCEPTED,
        reason: Optional[str] = None,
        gate: Optional[threading.Event] = None,
        error: Optional[Exception] = None
    ):
        self.status = status
        self.reason = reason
        self.gate = gate
        self.error = error
        self.calls: List[str] = []

    def validate(self, invoice: 'Invoice') -> ValidationResult:
        self.calls.append(invoice.id)
        if self.gate is not None:
            self.gate.wait(timeout=30)
        if self.error is not None:
            raise self.error
        return ValidationResult(status=self.status, reason=self.reason)
