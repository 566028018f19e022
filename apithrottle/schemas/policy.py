"""Pydantic schemas for rate limit policies.

A policy is immutable once built: hot updates replace the whole object in the
policy store instead of mutating it, so an in-flight evaluation always sees a
consistent snapshot.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any, FrozenSet, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class RateLimitPeriod(str, Enum):
    """Time windows a quota can be applied to, narrowest first."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"

    @property
    def seconds(self) -> int:
        """Window duration in seconds."""
        return _PERIOD_SECONDS[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()


_PERIOD_SECONDS: dict[RateLimitPeriod, int] = {
    RateLimitPeriod.SECOND: 1,
    RateLimitPeriod.MINUTE: 60,
    RateLimitPeriod.HOUR: 60 * 60,
    RateLimitPeriod.DAY: 60 * 60 * 24,
    RateLimitPeriod.WEEK: 60 * 60 * 24 * 7,
}

# Canonical evaluation order
PERIODS: tuple[RateLimitPeriod, ...] = tuple(RateLimitPeriod)


class RateLimits(BaseModel):
    """Per-scope quota override; zero or unset means no override for a window."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    per_second: int | None = Field(default=None, ge=0)
    per_minute: int | None = Field(default=None, ge=0)
    per_hour: int | None = Field(default=None, ge=0)
    per_day: int | None = Field(default=None, ge=0)
    per_week: int | None = Field(default=None, ge=0)

    def get_limit(self, period: RateLimitPeriod) -> int:
        """Return the configured limit for ``period`` (0 when unset)."""
        return getattr(self, f"per_{period.value}") or 0


class RateLimitPolicy(BaseModel):
    """Quota configuration: defaults, scope switches, overrides and whitelists.

    Attributes:
        rates: Default limit per window. Missing windows are unbounded.
        ip_throttling: Enable the client IP scope.
        client_throttling: Enable the client key scope.
        endpoint_throttling: Enable the endpoint scope.
        ip_rules: Address or CIDR pattern -> override limits.
        client_rules: Exact client key -> override limits.
        endpoint_rules: Endpoint substring -> override limits.
        route_rules: Route identifier substring -> override limits, resolved
            together with endpoint rules.
        ip_whitelist: Addresses or CIDR ranges never throttled.
        client_whitelist: Client keys never throttled.
        endpoint_whitelist: Endpoint substrings never throttled.
        stack_blocked_requests: Count blocked requests against every window,
            evaluating from the widest window down.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    rates: Mapping[RateLimitPeriod, int] = Field(default_factory=dict)

    ip_throttling: bool = False
    client_throttling: bool = False
    endpoint_throttling: bool = False

    ip_rules: Mapping[str, RateLimits] = Field(default_factory=dict)
    client_rules: Mapping[str, RateLimits] = Field(default_factory=dict)
    endpoint_rules: Mapping[str, RateLimits] = Field(default_factory=dict)
    route_rules: Mapping[str, RateLimits] = Field(default_factory=dict)

    ip_whitelist: FrozenSet[str] = Field(default_factory=frozenset)
    client_whitelist: FrozenSet[str] = Field(default_factory=frozenset)
    endpoint_whitelist: FrozenSet[str] = Field(default_factory=frozenset)

    stack_blocked_requests: bool = False

    @field_validator("rates")
    @classmethod
    def _rates_non_negative(cls, value: Mapping[RateLimitPeriod, int]) -> Mapping[RateLimitPeriod, int]:
        for period, limit in value.items():
            if limit < 0:
                raise ValueError(f"rate for {period.value} must be >= 0")
        return value

    @field_validator("rates", "ip_rules", "client_rules", "endpoint_rules", "route_rules")
    @classmethod
    def _read_only(cls, value: Mapping[Any, Any]) -> Mapping[Any, Any]:
        return MappingProxyType(dict(value))

    @field_serializer("rates", "ip_rules", "client_rules", "endpoint_rules", "route_rules")
    def _serialize_mapping(self, value: Mapping[Any, Any]) -> dict[Any, Any]:
        return dict(value)

    @classmethod
    def create(
        cls,
        *,
        per_second: int | None = None,
        per_minute: int | None = None,
        per_hour: int | None = None,
        per_day: int | None = None,
        per_week: int | None = None,
        **kwargs,
    ) -> "RateLimitPolicy":
        """Build a policy from per-window defaults; unset windows are omitted.

        Example:
            >>> dict(RateLimitPolicy.create(per_minute=2, ip_throttling=True).rates)
            {<RateLimitPeriod.MINUTE: 'minute'>: 2}
        """

        given = {
            RateLimitPeriod.SECOND: per_second,
            RateLimitPeriod.MINUTE: per_minute,
            RateLimitPeriod.HOUR: per_hour,
            RateLimitPeriod.DAY: per_day,
            RateLimitPeriod.WEEK: per_week,
        }
        rates = {period: limit for period, limit in given.items() if limit is not None}
        return cls(rates=rates, **kwargs)

    @property
    def throttling_enabled(self) -> bool:
        """True when at least one scope is switched on."""
        return self.ip_throttling or self.client_throttling or self.endpoint_throttling
