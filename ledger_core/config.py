"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal, InvalidOperation

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///ledger.db"  # or memory:// for an in-process store

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration (Decimal strings)
    transfer_min_amount: str = "1"  # Exclusive lower bound
    transfer_max_amount: str = "1000000"  # Inclusive upper bound

    # Optimistic concurrency
    cas_max_retries: int = Field(10, ge=1)
    cas_retry_base_delay: float = Field(0.001, ge=0)  # seconds
    cas_retry_max_delay: float = Field(0.05, ge=0)  # seconds

    # Query defaults
    history_default_limit: int = Field(50, ge=1)

    # Customer identifier scheme
    customer_id_prefix: str = "CUST"
    customer_id_width: int = Field(4, ge=1)

    @field_validator("log_format")
    @classmethod
    def _log_format_known(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("transfer_min_amount", "transfer_max_amount")
    @classmethod
    def _decimal_string(cls, v: str) -> str:
        try:
            Decimal(v)
        except InvalidOperation as e:
            raise ValueError("Invalid decimal amount") from e
        return v


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
