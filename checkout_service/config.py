"""
config.py — Environment-driven settings for the Checkout Service

All external addresses, credentials and limits are read from environment
variables (and a `.env` file, if present) once at startup and handed to the
application factory as an immutable `Settings` object. Tests build `Settings`
directly with keyword overrides.
"""

from typing import Annotated, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000", "http://localhost:3001")


class Settings(BaseSettings):
    """
    Runtime configuration of the service.

    Each field is read from the upper-cased environment variable of the same
    name, e.g. `RAZORPAY_KEY_ID`. Empty variables fall back to the default.

    Attributes:
        razorpay_key_id / razorpay_key_secret: Gateway API credentials. The secret
            also signs the client-side payment callback.
        razorpay_webhook_secret: Secret used by the gateway to sign webhooks.
        store_backend: "mongo" for MongoDB, "memory" for the in-process store.
        allowed_origins: Origins accepted by the CSRF origin check. The
            environment form is comma-separated and extends the localhost defaults.
        rate_limit_critical: Requests per window per user on payment endpoints.
        rabbitmq_host: Empty disables order event publishing.
        log_file: Empty disables the file handler.
    """
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com"
    payment_currency: str = "INR"

    firebase_api_key: str = ""
    identity_service_url: str = "https://identitytoolkit.googleapis.com"

    store_backend: str = "mongo"
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_database: str = "storefront"

    site_url: str = "http://localhost:3000"
    allowed_origins: Annotated[Tuple[str, ...], NoDecode] = DEFAULT_ALLOWED_ORIGINS

    rate_limit_critical: int = Field(10, gt=0)
    rate_limit_webhook: int = Field(100, gt=0)
    rate_limit_window_seconds: int = Field(60, gt=0)

    rabbitmq_host: str = ""
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    order_events_queue: str = "orders.committed"

    http_timeout_seconds: float = Field(8.0, gt=0)
    log_level: str = "INFO"
    log_file: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            return DEFAULT_ALLOWED_ORIGINS + tuple(o for o in value.split(",") if o.strip())
        return value

    @field_validator("store_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in ("mongo", "memory"):
            raise ValueError("store_backend must be 'mongo' or 'memory'")
        return value

    def origin_allow_list(self) -> Tuple[str, ...]:
        """Site URL first, then the configured origins, without duplicates."""
        origins = [self.site_url.rstrip("/")]
        for origin in self.allowed_origins:
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return tuple(origins)


def load_settings() -> Settings:
    """Builds `Settings` from the process environment."""
    return Settings()
