"""
Tests for tax authority validator clients
"""

import pytest
import json
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
import httpx

from core_accounting.invoices import Invoice, InvoiceLine
from core_accounting.tax_authority import (
    SimulatedTaxAuthority, HttpTaxAuthorityClient, MockTaxAuthority,
    TaxAuthorityUnavailableError, ValidationResult, ValidationStatus, invoice_payload
)


def make_invoice() -> Invoice:
    now = datetime.now(timezone.utc)
    return Invoice(
        id="inv-1",
        created_at=now,
        updated_at=now,
        number="INV-000001",
        client="Cliente SRL",
        invoice_date=date(2024, 1, 15),
        due_date=date(2024, 2, 14),
        lines=[InvoiceLine("item-1", Decimal("1"), Decimal("1130.00"))],
        subtotal=Decimal("1000.00"),
        tax_amount=Decimal("130.00"),
        total=Decimal("1130.00")
    )


class TestValidationResult:

    def test_accepted_flag(self):
        assert ValidationResult(ValidationStatus.ACCEPTED).accepted
        assert not ValidationResult(ValidationStatus.REJECTED, reason="NIT").accepted


class TestInvoicePayload:

    def test_payload_uses_strings_for_amounts(self):
        payload = invoice_payload(make_invoice())
        assert payload["number"] == "INV-000001"
        assert payload["date"] == "2024-01-15"
        assert payload["total"] == "1130.00"
        assert payload["lines"] == [
            {"item_id": "item-1", "quantity": "1", "unit_price": "1130.00", "discount": "0.00"}
        ]


class TestSimulatedTaxAuthority:

    def test_always_accepts(self):
        validator = SimulatedTaxAuthority(latency_seconds=0, acceptance_rate=1.0)
        result = validator.validate(make_invoice())
        assert result.status == ValidationStatus.ACCEPTED
        assert len(result.authorization_code) == 16

    def test_always_rejects_with_reason(self):
        validator = SimulatedTaxAuthority(latency_seconds=0, acceptance_rate=0.0)
        result = validator.validate(make_invoice())
        assert result.status == ValidationStatus.REJECTED
        assert result.reason in SimulatedTaxAuthority.REJECTION_REASONS

    def test_seed_makes_decisions_reproducible(self):
        first = SimulatedTaxAuthority(latency_seconds=0, acceptance_rate=0.5, seed=42)
        second = SimulatedTaxAuthority(latency_seconds=0, acceptance_rate=0.5, seed=42)
        invoice = make_invoice()
        assert ([first.validate(invoice).status for _ in range(20)]
                == [second.validate(invoice).status for _ in range(20)])

    def test_invalid_acceptance_rate(self):
        with pytest.raises(ValueError, match="between 0 and 1"):
            SimulatedTaxAuthority(acceptance_rate=1.5)


class TestHttpTaxAuthorityClient:

    def client_for(self, handler, api_key=None):
        return HttpTaxAuthorityClient(
            "https://sin.example.test/api/", api_key=api_key, transport=httpx.MockTransport(handler)
        )

    def test_accepted_response(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "ACCEPTED", "authorization_code": "ABC123"})

        client = self.client_for(handler, api_key="secret")
        result = client.validate(make_invoice())

        assert result.accepted
        assert result.authorization_code == "ABC123"
        assert requests[0].url.path == "/api/invoices/validate"
        assert requests[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(requests[0].content)["total"] == "1130.00"
        client.close()

    def test_rejected_response(self):
        client = self.client_for(
            lambda request: httpx.Response(200, json={"status": "rejected", "reason": "Invalid NIT"})
        )
        result = client.validate(make_invoice())
        assert result.status == ValidationStatus.REJECTED
        assert result.reason == "Invalid NIT"

    def test_server_error(self):
        client = self.client_for(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(TaxAuthorityUnavailableError, match="HTTP 503"):
            client.validate(make_invoice())

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = self.client_for(handler)
        with pytest.raises(TaxAuthorityUnavailableError, match="connection failed"):
            client.validate(make_invoice())
        assert client.health_check() is False

    def test_undecided_response(self):
        client = self.client_for(lambda request: httpx.Response(200, json={"status": "pending"}))
        with pytest.raises(TaxAuthorityUnavailableError, match="did not reach a decision"):
            client.validate(make_invoice())

        client = self.client_for(lambda request: httpx.Response(200, json={"status": "maybe"}))
        with pytest.raises(TaxAuthorityUnavailableError, match="Unexpected validation status"):
            client.validate(make_invoice())

    def test_health_check(self):
        client = self.client_for(lambda request: httpx.Response(200, json={"status": "ok"}))
        assert client.health_check() is True


class TestMockTaxAuthority:

    def test_records_calls(self):
        validator = MockTaxAuthority(status=ValidationStatus.REJECTED, reason="Dosage key expired")
        result = validator.validate(make_invoice())
        assert result.reason == "Dosage key expired"
        assert validator.calls == ["inv-1"]
        assert validator.health_check()

    def test_gate_holds_answer(self):
        gate = threading.Event()
        validator = MockTaxAuthority(gate=gate)
        results = []
        worker = threading.Thread(target=lambda: results.append(validator.validate(make_invoice())))
        worker.start()

        worker.join(timeout=0.1)
        assert results == []

        gate.set()
        worker.join(timeout=5)
        assert results[0].accepted

    def test_error(self):
        validator = MockTaxAuthority(error=TaxAuthorityUnavailableError("down"))
        with pytest.raises(TaxAuthorityUnavailableError, match="down"):
            validator.validate(make_invoice())
