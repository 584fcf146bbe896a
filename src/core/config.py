"""Application configuration management using Pydantic Settings."""

import json
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.order import OrderStatus

# Roles allowed to cancel an order from each non-terminal status
DEFAULT_CANCELLATION_POLICY: dict[str, list[str]] = {
    "PLACED": ["CUSTOMER", "VENDOR", "ADMIN"],
    "ACCEPTED": ["VENDOR", "ADMIN"],
    "PREPARING": ["VENDOR", "ADMIN"],
    "READY": ["ADMIN"],
    "ASSIGNED": ["ADMIN"],
    "PICKED_UP": ["ADMIN"],
    "ENROUTE": ["ADMIN"],
}
KNOWN_STATUSES = frozenset(status.value for status in OrderStatus)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Supabase credentials are only required when the supabase storage
    backend is selected.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="quickbite-order-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    max_request_body_size: int = Field(default=1_048_576, description="Maximum request body size in bytes")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Auth
    jwt_secret: str = Field(..., description="Secret used to verify bearer tokens")
    jwt_algorithm: str = Field(default="HS256", description="Bearer token signing algorithm")
    jwt_audience: str | None = Field(default=None, description="Expected token audience, if any")
    jwt_issuer: str | None = Field(default=None, description="Expected token issuer, if any")

    # Storage
    storage_backend: Literal["memory", "supabase"] = Field(
        default="memory",
        description="Where orders, intents and ledgers are stored",
    )
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_secret_key: str = Field(default="", description="Supabase secret key for backend operations")

    # Payments
    payment_provider: Literal["local", "stripe"] = Field(
        default="local",
        description="Provider used to create payment intents",
    )
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    webhook_secret: str = Field(..., description="Shared secret for payment webhook signatures")
    webhook_signature_header: str = Field(default="X-Webhook-Signature", description="Webhook signature header name")
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        description="Maximum webhook timestamp skew in seconds (0 disables the check)",
    )
    webhook_processing_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for webhook apply before acknowledging with 202",
    )
    webhook_max_attempts: int = Field(default=5, ge=1, description="Apply attempts before a webhook event is dead-lettered")
    webhook_retry_base_seconds: int = Field(default=30, ge=1, description="Base backoff for webhook retries (doubles per attempt)")
    webhook_retention_days: int = Field(default=30, ge=1, description="Days processed webhook ledger rows are kept")
    require_captured_payment: bool = Field(
        default=False,
        description="Block fulfillment transitions until a payment intent is captured",
    )
    default_currency: str = Field(default="USD", description="Currency assigned to new orders")

    # Orders
    order_lock_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Seconds to wait for the per-order lock before failing",
    )
    driver_max_active_orders: int = Field(default=1, ge=1, description="Active deliveries a driver may hold")
    cancellation_policy: str = Field(
        default=json.dumps(DEFAULT_CANCELLATION_POLICY),
        description="JSON mapping of order status to roles allowed to cancel from it",
    )
    menu_catalog_file: str | None = Field(default=None, description="JSON file seeding the in-memory menu catalog")

    # Idempotency and maintenance
    idempotency_retention_hours: int = Field(default=24, ge=1, description="Hours an idempotency record is honoured")
    maintenance_interval_seconds: int = Field(default=300, ge=1, description="Interval between pruning/retry sweeps")

    # Notifications
    notification_service_url: str | None = Field(default=None, description="Endpoint receiving order status notifications")
    notification_timeout_seconds: float = Field(default=3.0, gt=0, description="Timeout for notification dispatch")

    @model_validator(mode="after")
    def check_backend_credentials(self) -> "Settings":
        """Require credentials for the selected external backends."""
        if self.storage_backend == "supabase" and not (self.supabase_url and self.supabase_secret_key):
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY are required when STORAGE_BACKEND=supabase")
        if self.payment_provider == "stripe" and not self.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required when PAYMENT_PROVIDER=stripe")
        self._validate_cancellation_policy()
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    def _validate_cancellation_policy(self) -> None:
        """Fail at startup on a malformed or unknown-status cancellation policy."""
        unknown = set(self.cancellation_policy_table) - KNOWN_STATUSES
        if unknown:
            raise ValueError(f"CANCELLATION_POLICY names unknown statuses: {', '.join(sorted(unknown))}")

    @property
    def cancellation_policy_table(self) -> dict[str, frozenset[str]]:
        """Parse the cancellation policy into status -> allowed roles."""
        try:
            raw = json.loads(self.cancellation_policy)
        except json.JSONDecodeError as e:
            raise ValueError(f"CANCELLATION_POLICY is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError("CANCELLATION_POLICY must be a JSON object")
        return {
            str(status).upper(): frozenset(str(role).upper() for role in roles)
            for status, roles in raw.items()
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
