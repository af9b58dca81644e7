"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_LIVE_API_BASE = "https://api-m.paypal.com"
PAYPAL_SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storefront mode: "shop" (catalog) or "single" (one product)
    app_mode: Literal["shop", "single"] = "shop"
    single_product_id: str = ""
    items_per_page: int = 6
    store_currency: str = "USD"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3002
    api_title: str = "Digital Storefront"
    api_version: str = "0.1.0"
    api_description: str = "Digital goods storefront with PayPal checkout"
    public_base_url: str = ""  # Used for links in receipts; request URL when empty

    # Catalog and downloads
    products_path: Path = Path("db/products.json")
    downloads_dir: Path = Path("private_downloads")

    # Transaction ledger
    database_url: str = "sqlite+aiosqlite:///./data/transactions.db"

    # Sessions
    session_secret: str = ""
    session_cookie_name: str = "storefront_session"
    session_max_age: int = 60 * 60 * 24  # 24 hours
    session_https_only: bool = False
    session_backend: Literal["memory", "redis"] = "memory"  # redis for multi-worker
    session_memory_max_grants: int = 10_000
    redis_url: str = "redis://localhost:6379/0"

    # Payment Provider - PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_api_mode: Literal["sandbox", "live"] = "sandbox"
    paypal_timeout_seconds: float = 30.0
    paypal_token_safety_margin_seconds: int = 60

    # Email receipts
    email_enabled: bool = True
    email_use_sendmail: bool = False
    sendmail_path: str = "/usr/sbin/sendmail"
    email_from: str = ""
    email_subject: str = "Your purchase receipt"
    email_host: str = "localhost"
    email_port: int = 587
    email_user: str = ""
    email_pass: str = ""

    # Site details used in receipts
    site_title: str = "Digital Storefront"
    footer_domain: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "digital-storefront"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.session_secret:
            errors.append("SESSION_SECRET is required but empty or missing")

        if not self.paypal_client_id or not self.paypal_client_secret:
            errors.append("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required")

        if self.app_mode == "single" and not self.single_product_id:
            errors.append("APP_MODE is 'single' but SINGLE_PRODUCT_ID is not set")

        if not self.database_url.startswith(("sqlite", "postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a SQLite or PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.items_per_page < 1:
            errors.append(f"ITEMS_PER_PAGE must be positive, got: {self.items_per_page}")

        if self.session_memory_max_grants < 1:
            errors.append(
                "SESSION_MEMORY_MAX_GRANTS must be positive, "
                f"got: {self.session_memory_max_grants}"
            )

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_shop_mode(self) -> bool:
        return self.app_mode == "shop"

    @property
    def paypal_api_base(self) -> str:
        """PayPal REST API base URL for the configured mode."""
        if self.paypal_api_mode == "live":
            return PAYPAL_LIVE_API_BASE
        return PAYPAL_SANDBOX_API_BASE


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
