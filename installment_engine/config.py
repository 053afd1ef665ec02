"""
Configuration Management Module

Engine settings read from ``INSTALLMENT_*`` environment variables or a ``.env``
file through pydantic-settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class InstallmentConfig(BaseSettings):
    """Installment financing engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="INSTALLMENT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # memory:// keeps everything in process; sqlite:///path.db persists
    database_url: str = "sqlite:///installments.db"

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    log_level: str = "INFO"
    log_format: str = "json"  # or "text"
    log_file: Optional[str] = None  # stderr when unset

    # Shown for products without an image
    default_product_image: str = "/assets/img/products/stock-img-01.png"

    # Reports and dashboard
    upcoming_window_days: int = 7
    dashboard_list_limit: int = 10
    recent_plans_limit: int = 5
    collection_trend_months: int = 12

    enable_audit_logging: bool = True


config = InstallmentConfig()


def get_config() -> InstallmentConfig:
    """Process-wide settings"""
    return config


def reload_config() -> InstallmentConfig:
    """Re-read the environment, replacing the process-wide settings"""
    global config
    config = InstallmentConfig()
    return config
