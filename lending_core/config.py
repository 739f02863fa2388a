"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///lending.db

    # Money configuration
    currency: str = "INR"

    # Compliance ceilings (decimal strings, in `currency`)
    max_principal: str = "1000000.00"
    min_principal: str = "1.00"
    large_principal_warning: str = "500000.00"
    max_annual_rate_percent: str = "50"
    high_rate_warning_percent: str = "36"
    large_payment_warning: str = "200000.00"

    # Reminder configuration
    reminder_days: List[int] = [7, 3, 1]

    # Notification configuration
    webhook_url: Optional[str] = None  # Lender-side webhook for overdue/completed alerts
    webhook_timeout: float = 10.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    def decimal(self, name: str) -> Decimal:
        """Read a decimal-string setting as Decimal"""
        return Decimal(getattr(self, name))


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
