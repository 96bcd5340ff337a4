"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankConfig(BaseSettings):
    """Funds core service configuration"""

    # Database configuration
    database_url: str = "sqlite:///funds_core.db"  # memory://, sqlite:///path, mongodb://...
    mongo_database: str = "funds_core"
    store_timeout_ms: int = 5000

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True
    password_min_length: int = 8
    username_min_length: int = 5

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Account number generation
    account_number_max_attempts: int = 10
    account_number_backoff_ms: int = 50

    # Business rules configuration
    checking_opening_balance: str = "100.00"
    savings_opening_balance: str = "500.00"
    deposit_id_start: int = 1000
    deposit_min_amount: str = "0.01"
    decline_notes_min_length: int = 5
    status_reason_min_length: int = 10
    admin_message_min_length: int = 5
    history_max_transactions: int = 500

    # Post-commit side effects
    outbox_async: bool = True
    outbox_max_attempts: int = 3
    outbox_retention_hours: int = 168  # Sent tasks older than this are purged
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    class Config:
        env_prefix = "BANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
