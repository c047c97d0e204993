"""
Configuration Management Module

Centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Money
    default_currency: str = "GHS"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business keys
    application_number_prefix: str = "LA"
    loan_number_prefix: str = "LN"
    reference_prefix: str = "TXN"

    # Business rules
    deduct_processing_fee: bool = True  # Fee withheld from the cash handed over
    penalty_grace_days: int = 0

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True


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
