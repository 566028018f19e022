"""Runtime value types exchanged between the HTTP adapter and the core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from apithrottle.schemas.policy import RateLimitPeriod

ANONYMOUS_CLIENT_KEY = "anon"


def normalize_endpoint(endpoint: str | None) -> str:
    """Lower-case an endpoint and drop any query string or fragment."""

    if not endpoint:
        return ""
    path = endpoint.split("?", 1)[0].split("#", 1)[0]
    return path.lower()


@dataclass(frozen=True)
class RequestIdentity:
    """Who is calling what.

    Attributes:
        client_ip: Resolved client address (may be unparseable; matching
            falls back to a sentinel address).
        client_key: Client credential or ``"anon"``.
        endpoint: Normalized request path.
        route: Optional framework route identifier used by route rules.
        force_whitelist: Adapter escape hatch that bypasses all counting.
    """

    client_ip: str
    client_key: str = ANONYMOUS_CLIENT_KEY
    endpoint: str = ""
    route: str | None = None
    force_whitelist: bool = False

    @classmethod
    def from_request_parts(
        cls,
        *,
        client_ip: str | None,
        client_key: str | None,
        endpoint: str | None,
        route: str | None = None,
        force_whitelist: bool = False,
    ) -> "RequestIdentity":
        """Build an identity applying the defaulting and normalization rules."""

        return cls(
            client_ip=(client_ip or "").strip(),
            client_key=client_key or ANONYMOUS_CLIENT_KEY,
            endpoint=normalize_endpoint(endpoint),
            route=route,
            force_whitelist=force_whitelist,
        )


@dataclass(frozen=True)
class ThrottleCounter:
    """Requests seen in one window, starting at the first hit.

    Attributes:
        window_start: UNIX epoch seconds of the first request in the window.
        total_requests: Requests counted so far (>= 1).
    """

    window_start: float
    total_requests: int

    def is_expired(self, window_seconds: int, now: float) -> bool:
        return self.window_start + window_seconds < now


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of evaluating one request.

    Blocked decisions carry the limit that tripped, its window, and how long
    the caller must wait.
    """

    allowed: bool
    limit: int | None = None
    period: RateLimitPeriod | None = None
    retry_after_seconds: int | None = None
    counter: ThrottleCounter | None = None

    @classmethod
    def allow(cls) -> "ThrottleDecision":
        return cls(allowed=True)

    @classmethod
    def block(
        cls,
        *,
        limit: int,
        period: RateLimitPeriod,
        retry_after_seconds: int,
        counter: ThrottleCounter,
    ) -> "ThrottleDecision":
        return cls(
            allowed=False,
            limit=limit,
            period=period,
            retry_after_seconds=retry_after_seconds,
            counter=counter,
        )


@dataclass(frozen=True)
class ThrottleLogEntry:
    """Details of a blocked request handed to the throttle logger."""

    request_id: str
    client_ip: str
    client_key: str
    endpoint: str
    total_requests: int
    start_period: datetime
    rate_limit: int
    rate_limit_period: str
    log_date: datetime
