"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class MicrolendConfig(BaseSettings):
    """Microlend lending engine configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "microlend.db"

    # Business rules configuration
    default_currency: str = "LKR"
    due_soon_days: int = 7  # Installments due within this many days are "Due soon"
    roi_milestone_thresholds: List[int] = [10, 15, 20, 25, 30]
    wallet_max_retries: int = 5  # Optimistic retries for a contended wallet write

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = webhook provider disabled
    notification_webhook_timeout: float = 5.0
    notification_delivery_workers: int = 4

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    class Config:
        env_prefix = "MICROLEND_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrolendConfig()


def get_config() -> MicrolendConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrolendConfig:
    """Reload configuration from environment"""
    global config
    config = MicrolendConfig()
    return config
