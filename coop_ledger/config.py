"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Cooperative loan ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="COOP_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///coop_ledger.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Late fee policy
    late_fee_daily_rate: Decimal = Decimal("0.02")
    late_fee_max_days: int = 30

    # Schedule generation
    max_schedule_months: int = 360

    # Fines
    fine_due_days: int = 30

    # Display numbers
    loan_number_prefix: str = "LOAN"
    fine_number_prefix: str = "FIN"
    display_number_width: int = 4

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
