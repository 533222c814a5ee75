"""Service configuration read from the environment and an optional .env file."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _trim_credential(value: str) -> str:
    """Strip whitespace and one layer of wrapping quotes from a credential."""
    trimmed = value.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in ("'", '"'):
        trimmed = trimmed[1:-1]
    return trimmed


class Settings(BaseSettings):
    """Settings for the gateways, the order store, mail and the HTTP service.

    Credentials default to empty so the service can boot with a gateway
    unconfigured; that gateway then reports unavailable at request time.
    """

    # Stripe (card_session, card_intent)
    stripe_secret_key: str = Field(default="", description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # PayPal (wallet)
    paypal_client_id: str = Field(default="", description="PayPal REST client id")
    paypal_secret: str = Field(default="", description="PayPal REST secret")
    paypal_environment: str = Field(default="sandbox", description="sandbox or live")

    # Order store
    database_url: str = Field(
        default="sqlite+aiosqlite:///./orders.db", description="Async database connection URL"
    )
    database_pool_size: int = Field(default=20, description="Pool size (server databases only)")
    database_max_overflow: int = Field(default=50, description="Pool overflow (server databases only)")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Mail
    smtp_host: str = Field(default="", description="SMTP server host")
    smtp_port: int = Field(default=465, description="SMTP server port")
    smtp_user: str = Field(default="", description="SMTP username")
    smtp_password: str = Field(default="", description="SMTP password")
    smtp_secure: Optional[bool] = Field(
        default=None, description="Implicit TLS; defaults to True on port 465"
    )
    smtp_timeout: float = Field(default=15.0, description="SMTP socket timeout (seconds)")
    business_email: str = Field(
        default="orders@vortexpcs.com", description="Recipient of new-order alerts"
    )
    mail_from_name: str = Field(default="Vortex PCs", description="Display name on outgoing mail")

    # Orders
    order_number_prefix: str = Field(default="VPC", description="Order number prefix")
    default_item_name: str = Field(
        default="Custom PC Build", description="Name of the synthetic fallback line item"
    )
    default_item_product_id: str = Field(
        default="custom_build", description="Product id of the synthetic fallback line item"
    )
    default_country: str = Field(default="GB", description="Country used when none is known")

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts per transient operation")
    retry_base_delay: float = Field(default=1.0, ge=0, description="Base backoff delay (seconds)")
    retry_max_delay: float = Field(default=10.0, ge=0, description="Backoff ceiling (seconds)")
    retry_max_jitter: float = Field(default=1.0, ge=0, description="Upper bound of random jitter")

    # Timeouts
    provider_timeout: float = Field(default=10.0, description="Gateway lookup timeout (seconds)")
    wallet_capture_timeout: float = Field(
        default=30.0, description="Wallet capture timeout (seconds)"
    )

    # Service
    app_name: str = Field(default="order-reconciliation", description="Service name stamped on log events")
    app_env: str = Field(default="development", description="development, test or production; production logs JSON")
    log_level: str = Field(default="INFO", description="Root log level")
    debug: bool = Field(default=False, description="Auto-reload and a single worker")

    # HTTP
    api_host: str = Field(default="0.0.0.0", description="Bind address")
    api_port: int = Field(default=8000, description="Bind port")
    api_workers: int = Field(default=2, description="uvicorn worker processes")
    allowed_origins: str = Field(
        default="https://www.vortexpcs.com,http://localhost:5173",
        description="Storefront origins allowed by CORS (comma-separated)",
    )

    # Notification re-delivery
    notification_sweep_interval_seconds: float = Field(
        default=60.0, description="Polling interval of the notification sweeper"
    )
    notification_sweep_max_redeliveries: int = Field(
        default=3, description="Re-delivery attempts per failed notification"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key", "paypal_client_id", "paypal_secret", "smtp_password")
    @classmethod
    def trim_credentials(cls, v: str) -> str:
        """Trim whitespace and wrapping quotes pasted into hosting dashboards."""
        return _trim_credential(v)

    @field_validator("stripe_secret_key")
    @classmethod
    def check_stripe_key_mode(cls, v: str) -> str:
        if v and not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError("Stripe secret key must be a sk_test_ or sk_live_ key")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """True for sk_test_ keys; checkout sessions then live in test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment.lower() == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    @property
    def smtp_use_tls(self) -> bool:
        """Implicit TLS unless explicitly disabled; port 465 implies it."""
        if self.smtp_secure is not None:
            return self.smtp_secure
        return self.smtp_port == 465


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
