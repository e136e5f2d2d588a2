"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class CoopBankConfig(BaseSettings):
    """Cooperative banking core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="COOPBANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///coop_banking.db"  # memory://, sqlite:///path or postgresql://...
    storage_transaction_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24

    # Logging configuration
    log_level: str = "INFO"

    # Business rules configuration
    default_branch_code: str = "001"
    savings_minimum_balance: str = "1000.00"
    savings_interest_rate: str = "4.0"
    max_description_length: int = 200
    max_reference_length: int = 50
    default_page_size: int = 10
    max_page_size: int = 100
    allow_super_admin_cross_tenant_transfers: bool = False

    # Feature flags
    enable_audit_logging: bool = True

    @property
    def savings_minimum_balance_amount(self) -> Decimal:
        return Decimal(self.savings_minimum_balance)

    @property
    def savings_interest_rate_value(self) -> Decimal:
        return Decimal(self.savings_interest_rate)


# Global configuration instance
config: Optional[CoopBankConfig] = None


def get_config() -> CoopBankConfig:
    """Get global configuration instance"""
    global config
    if config is None:
        config = CoopBankConfig()
    return config


def reload_config() -> CoopBankConfig:
    """Reload configuration from environment"""
    global config
    config = CoopBankConfig()
    return config
