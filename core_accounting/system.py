"""
Accounting System Wiring

One explicit instance holding the store and every engine. Created at
application start, closed at shutdown; components receive their
collaborators from here instead of reaching for module globals.
"""

from decimal import Decimal
from typing import Optional

from .money import IVA_RATE
from .config import AccountingConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail, AuditEventType
from .chart import AccountRoles, ChartOfAccounts
from .ledger import GeneralLedger
from .inventory import InventoryEngine
from .invoices import InvoiceManager
from .reporting import BalanceValidator
from .reconciliation import BankReconciler
from .tax_authority import TaxAuthorityValidator, SimulatedTaxAuthority, HttpTaxAuthorityClient
from .logging_config import get_logger


class AccountingSystem:
    """Accounting engine with all components initialized"""

    def __init__(
        self,
        config: Optional[AccountingConfig] = None,
        storage: Optional[StorageInterface] = None,
        validator: Optional[TaxAuthorityValidator] = None,
        chart: Optional[ChartOfAccounts] = None,
        roles: Optional[AccountRoles] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("accounting.system")

        if Decimal(self.config.tax_rate) != IVA_RATE:
            self.logger.warning(
                f"Configured tax rate {self.config.tax_rate} ignored; IVA is fixed at {IVA_RATE}"
            )

        self.storage = storage or create_storage(self.config.database_url)
        self.chart = chart or self._load_chart()
        self.roles = roles or AccountRoles()
        self.roles.validate(self.chart)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = GeneralLedger(self.storage, self.chart, self.audit_trail)
        self.inventory = InventoryEngine(
            self.storage, self.ledger, self.roles, self.audit_trail,
            cost_precision=self.config.cost_precision
        )
        self.validator = validator or self._create_validator()
        self.invoices = InvoiceManager(
            self.storage, self.ledger, self.inventory, self.validator,
            self.roles, self.audit_trail, self.config
        )
        self.balance_validator = BalanceValidator(self.ledger, self.chart, self.inventory, self.roles)
        self.reconciler = BankReconciler(self.ledger, self.roles)

        self._closed = False
        self.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_START,
            entity_type="system",
            entity_id="accounting",
            metadata={"database_url": self.config.database_url, "validator_mode": self.config.validator_mode}
        )

    def _load_chart(self) -> ChartOfAccounts:
        if self.config.chart_of_accounts_file:
            return ChartOfAccounts.from_json_file(self.config.chart_of_accounts_file)
        return ChartOfAccounts.default()

    def _create_validator(self) -> TaxAuthorityValidator:
        """Create tax authority validator based on configuration"""
        if self.config.validator_mode == "http":
            if not self.config.validator_url:
                raise ValueError("validator_url is required when validator_mode is 'http'")
            return HttpTaxAuthorityClient(
                base_url=self.config.validator_url,
                timeout=self.config.validator_timeout,
                api_key=self.config.validator_api_key or None
            )
        if self.config.validator_mode == "simulated":
            return SimulatedTaxAuthority(
                latency_seconds=self.config.validator_latency_seconds,
                acceptance_rate=self.config.validator_acceptance_rate
            )
        raise ValueError(f"Unknown validator mode: {self.config.validator_mode}")

    def close(self) -> None:
        """Stop workers and release the store"""
        if self._closed:
            return
        self._closed = True
        self.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_STOP,
            entity_type="system",
            entity_id="accounting"
        )
        self.invoices.close(wait=False)
        self.validator.close()
        self.storage.close()

    def __enter__(self) -> 'AccountingSystem':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
