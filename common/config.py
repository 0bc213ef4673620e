"""Centralized application configuration using Pydantic settings."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./settlement.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    service_api_key: str = Field(default="service-key", description="API key for service-to-service calls")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    property_catalog_url: str = Field(default="http://properties:8080", description="Property catalog base URL")
    reclamations_service_url: Optional[str] = Field(
        default=None,
        description="Remote reclamation service. When unset, reclamation status is read from the local database.",
    )
    catalog_cache_ttl: int = Field(default=60, description="TTL (s) for cached property catalog lookups")
    dependency_timeout_seconds: float = Field(default=3.0, description="Timeout for calls to external services")
    dependency_max_attempts: int = Field(default=3, description="Attempts before a dependency is reported unavailable")
    dependency_backoff_seconds: float = Field(default=0.2, description="Initial retry backoff, doubled per attempt")

    chain_id: int = Field(default=31337, description="Chain id payment intents are issued for")
    fiat_currency: str = Field(default="MAD", description="Currency booking prices are expressed in")
    default_conversion_rate: Decimal = Field(
        default=Decimal("29079"),
        description="Fiat units per native coin, used until an admin records a rate",
    )
    native_decimals: int = Field(default=18, description="Decimals of the chain's native coin")
    required_confirmations: int = Field(default=3, description="Confirmations needed to finalize a payment")
    payment_intent_ttl_minutes: int = Field(default=30, description="Lifetime of a payment intent")
    settlement_timeout_minutes: int = Field(default=60, description="Age after which an unconfirmed submission is stale")

    negotiation_offer_ttl_hours: int = Field(default=48, description="Lifetime of a negotiation offer")
    negotiation_grace_hours: int = Field(
        default=24,
        description="Time after offer expiry before the booking is implicitly rejected",
    )
    checkout_grace_hours: int = Field(default=48, description="Host confirmation window before auto-completion")
    max_await_seconds: int = Field(default=30, description="Upper bound for the booking status wait endpoint")
    sweep_interval_seconds: int = Field(
        default=0,
        description="Period of the in-process expiry sweep; 0 leaves sweeping to POST /bookings/maintenance/sweep",
    )

    event_broker_enabled: bool = Field(default=False, description="Publish domain events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ host")
    events_queue: str = Field(default="booking_events", description="Durable queue receiving domain events")

    bookings_service_port: int = 8003
    payments_service_port: int = 8005
    reclamations_service_port: int = 8006


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
