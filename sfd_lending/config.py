"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """SFD lending engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///sfd_lending.db"
    use_in_memory_storage: bool = False

    # Currency (single-currency engine, FCFA has no minor unit)
    currency: str = "XOF"

    # Loan lifecycle policy
    grace_period_days: int = 30  # Days past next_payment_date before default
    payment_cadence_months: int = 1

    # Late payment penalty, percent of the monthly payment
    late_penalty_rate: str = "5"
    late_penalty_after_days: int = 7  # Tolerance past the due date

    # Payment reminders
    payment_reminder_days_before: int = 3

    # Concurrency
    max_concurrency_retries: int = 5

    # Subsidy policy
    max_subsidy_approval_ratio: str = "1.5"  # Approved amount may reach 150% of request

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Notification configuration
    notifications_enabled: bool = True
    notification_webhook_url: str = ""
    notification_timeout_seconds: int = 10
    notification_max_retries: int = 3

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    class Config:
        env_prefix = "SFD_LENDING_"
        env_file = ".env"
        case_sensitive = False


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
