"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class AccountingConfig(BaseSettings):
    """Accounting engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///accounting.db"  # or "memory"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Chart of accounts provider; built-in chart when unset
    chart_of_accounts_file: Optional[str] = None

    # Business rules configuration
    tax_rate: str = "0.13"  # IVA, informational: the tax-inclusive policy is fixed
    cost_precision: int = 6  # Decimal places kept for weighted-average cost
    restock_on_void: bool = True  # Return sold stock when an invoice is voided

    # Tax authority validator
    validator_mode: str = "simulated"  # simulated or http
    validator_url: str = ""
    validator_api_key: str = ""
    validator_timeout: float = 5.0  # Seconds the caller waits before ValidationTimeout
    validator_latency_seconds: float = 2.5
    validator_acceptance_rate: float = 0.85
    validator_workers: int = 4

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = AccountingConfig()


def get_config() -> AccountingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AccountingConfig:
    """Reload configuration from environment"""
    global config
    config = AccountingConfig()
    return config
