"""
Tests for system wiring, configuration and structured logging
"""

import pytest
import json
import logging

from core_accounting.config import AccountingConfig
from core_accounting.system import AccountingSystem
from core_accounting.storage import InMemoryStorage, SQLiteStorage
from core_accounting.audit import AuditEventType
from core_accounting.chart import AccountRoles, DEFAULT_ACCOUNTS
from core_accounting.tax_authority import HttpTaxAuthorityClient, SimulatedTaxAuthority, MockTaxAuthority
from core_accounting.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from core_accounting.exceptions import UnknownAccountError


class TestAccountingConfig:

    def test_defaults(self):
        config = AccountingConfig()
        assert config.tax_rate == "0.13"
        assert config.cost_precision == 6
        assert config.restock_on_void is True
        assert config.validator_mode == "simulated"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCOUNTING_DATABASE_URL", "memory")
        monkeypatch.setenv("ACCOUNTING_RESTOCK_ON_VOID", "false")
        monkeypatch.setenv("ACCOUNTING_VALIDATOR_TIMEOUT", "1.5")
        config = AccountingConfig()
        assert config.database_url == "memory"
        assert config.restock_on_void is False
        assert config.validator_timeout == 1.5


class TestAccountingSystem:

    def test_wiring(self):
        with AccountingSystem(config=AccountingConfig(database_url="memory"), validator=MockTaxAuthority()) as system:
            assert isinstance(system.storage, InMemoryStorage)
            assert system.inventory.ledger is system.ledger
            assert system.invoices.inventory is system.inventory
            assert system.reconciler.ledger is system.ledger
            events = system.audit_trail.get_events_by_type(AuditEventType.SYSTEM_START)
            assert len(events) == 1

    def test_sqlite_storage(self, tmp_path):
        config = AccountingConfig(database_url=f"sqlite:///{tmp_path / 'books.db'}")
        with AccountingSystem(config=config, validator=MockTaxAuthority()) as system:
            assert isinstance(system.storage, SQLiteStorage)

    def test_simulated_validator_from_config(self):
        config = AccountingConfig(database_url="memory", validator_latency_seconds=0, validator_acceptance_rate=1.0)
        with AccountingSystem(config=config) as system:
            assert isinstance(system.validator, SimulatedTaxAuthority)
            assert system.validator.latency_seconds == 0

    def test_http_validator_from_config(self):
        config = AccountingConfig(database_url="memory", validator_mode="http", validator_url="http://sin.test")
        with AccountingSystem(config=config) as system:
            assert isinstance(system.validator, HttpTaxAuthorityClient)
            assert system.validator.base_url == "http://sin.test"

    def test_http_validator_requires_url(self):
        config = AccountingConfig(database_url="memory", validator_mode="http", validator_url="")
        with pytest.raises(ValueError, match="validator_url is required"):
            AccountingSystem(config=config)

    def test_unknown_validator_mode(self):
        with pytest.raises(ValueError, match="Unknown validator mode"):
            AccountingSystem(config=AccountingConfig(database_url="memory", validator_mode="carrier-pigeon"))

    def test_roles_must_exist_in_chart(self):
        with pytest.raises(UnknownAccountError):
            AccountingSystem(
                config=AccountingConfig(database_url="memory"),
                validator=MockTaxAuthority(),
                roles=AccountRoles(cash="0000")
            )

    def test_chart_loaded_from_file(self, tmp_path):
        path = tmp_path / "chart.json"
        records = [{"code": a.code, "name": a.name, "kind": a.kind.value} for a in DEFAULT_ACCOUNTS]
        records.append({"code": "1199", "name": "Prepaid Expenses", "kind": "asset"})
        path.write_text(json.dumps(records), encoding="utf-8")

        config = AccountingConfig(database_url="memory", chart_of_accounts_file=str(path))
        with AccountingSystem(config=config, validator=MockTaxAuthority()) as system:
            assert "1199" in system.chart

    def test_close_is_idempotent(self):
        system = AccountingSystem(config=AccountingConfig(database_url="memory"), validator=MockTaxAuthority())
        system.close()
        system.close()
        assert len(system.audit_trail.get_events_by_type(AuditEventType.SYSTEM_STOP)) == 1


class TestStructuredLogging:

    def test_json_formatter(self):
        record = logging.LogRecord("accounting.ledger", logging.INFO, __file__, 1, "Journal entry #1 posted", None, None)
        record.action = "post_entry"
        record.resource = "journal_entry:abc"
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "INFO"
        assert data["logger"] == "accounting.ledger"
        assert data["action"] == "post_entry"
        assert "correlation_id" not in data

    def test_log_action_attaches_fields(self, caplog):
        logger = get_logger("accounting.test")
        with caplog.at_level(logging.WARNING, logger="accounting.test"):
            log_action(logger, "warning", "Insufficient stock", action="apply_outbound",
                       resource="inventory_item:1", extra={"requested": "5"})
        record = caplog.records[-1]
        assert record.action == "apply_outbound"
        assert record.extra == {"requested": "5"}

    def test_setup_logging_to_file(self, tmp_path):
        log_file = tmp_path / "accounting.log"
        logger = setup_logging(level="DEBUG", log_file=str(log_file), logger_name="accounting.filetest")
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert json.loads(log_file.read_text(encoding="utf-8").splitlines()[0])["message"] == "hello"
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
