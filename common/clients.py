"""HTTP clients for read-only collaborators (property catalog, remote reclamation service).

Transient failures are retried a bounded number of times with exponential
backoff; a circuit breaker stops hammering a collaborator that keeps failing.
Either way the caller sees a DependencyUnavailableError, never a raw transport
exception.
"""
from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from circuitbreaker import CircuitBreaker, CircuitBreakerError
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .cache import SimpleTTLCache
from .config import Settings
from .errors import DependencyUnavailableError, NotFoundError

logger = logging.getLogger(__name__)


class DiscountPlan(BaseModel):
    """Owner-defined long-stay discount percentages, overriding the default tiers."""

    model_config = ConfigDict(populate_by_name=True)

    five_days: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("fiveDays", "five_days"))
    fifteen_days: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("fifteenDays", "fifteen_days")
    )
    one_month: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("oneMonth", "one_month"))


class PropertyInfo(BaseModel):
    """The slice of a catalog property the booking workflow depends on."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    owner_id: str = Field(validation_alias=AliasChoices("ownerId", "userId", "owner_id"))
    nightly_price: Decimal = Field(
        validation_alias=AliasChoices("dailyPrice", "pricePerNight", "price", "nightly_price"), gt=0
    )
    negotiation_percentage: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        le=100,
        validation_alias=AliasChoices("negotiationPercentage", "negotiation_percentage"),
    )
    discount_enabled: bool = Field(default=False, validation_alias=AliasChoices("discountEnabled", "discount_enabled"))
    discount_plan: Optional[DiscountPlan] = Field(
        default=None, validation_alias=AliasChoices("discountPlan", "discount_plan")
    )
    capacity: int = Field(gt=0)
    owner_wallet_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ownerWalletAddress", "walletAddress", "owner_wallet_address"),
    )
    deposit_amount: Decimal = Field(
        default=Decimal("0"), ge=0, validation_alias=AliasChoices("depositAmount", "deposit_amount")
    )


class ServiceClient:
    """JSON-over-HTTP client with bounded retries and a circuit breaker."""

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        timeout: float = 3.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = httpx.Client(base_url=base_url, timeout=timeout, headers=headers, transport=transport)
        self._breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=DependencyUnavailableError,
            name=f"{name}-breaker",
        )
        # decorated form; refuses calls while the circuit is open
        self._guarded_get = self._breaker(self._get_with_retry)

    def get_json(self, path: str) -> Any:
        try:
            return self._guarded_get(path)
        except CircuitBreakerError as exc:
            raise DependencyUnavailableError(f"{self.name} is unavailable (circuit open)") from exc

    def _get_with_retry(self, path: str) -> Any:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._client.get(path)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code == 404:
                    raise NotFoundError(f"{self.name} has no resource at {path}")
                if response.status_code < 500:
                    if response.is_error:
                        raise DependencyUnavailableError(
                            f"{self.name} rejected {path} with HTTP {response.status_code}"
                        )
                    return response.json()
                last_error = f"HTTP {response.status_code}"
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s call %s failed (%s), retrying in %.2fs [%d/%d]",
                    self.name,
                    path,
                    last_error,
                    delay,
                    attempt,
                    self.max_attempts,
                )
                self._sleep(delay)
        raise DependencyUnavailableError(f"{self.name} unavailable after {self.max_attempts} attempts: {last_error}")

    def close(self) -> None:
        self._client.close()


class PropertyCatalogClient:
    """Read-only access to the property catalog, cached for a short TTL."""

    def __init__(self, client: ServiceClient, cache_ttl: int = 60) -> None:
        self._client = client
        self._cache: SimpleTTLCache[PropertyInfo] = SimpleTTLCache(ttl=cache_ttl)

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "PropertyCatalogClient":
        client = ServiceClient(
            "property-catalog",
            settings.property_catalog_url,
            timeout=settings.dependency_timeout_seconds,
            max_attempts=settings.dependency_max_attempts,
            backoff_seconds=settings.dependency_backoff_seconds,
            transport=transport,
        )
        return cls(client, cache_ttl=settings.catalog_cache_ttl)

    def get_property(self, property_id: str) -> PropertyInfo:
        return self._cache.get_or_load(f"property:{property_id}", lambda: self._load(property_id))

    def _load(self, property_id: str) -> PropertyInfo:
        try:
            payload = self._client.get_json(f"/properties/{property_id}")
        except NotFoundError as exc:
            raise NotFoundError(f"Property {property_id} not found") from exc
        if isinstance(payload, dict):
            payload.setdefault("id", property_id)
        try:
            return PropertyInfo.model_validate(payload)
        except PydanticValidationError as exc:
            raise DependencyUnavailableError(f"Property catalog returned a malformed property {property_id}") from exc
