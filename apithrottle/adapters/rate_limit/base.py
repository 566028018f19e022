"""Storage interfaces for throttle counters and policies.

The core depends on these abstractions (not the concrete implementations)
so the in-process stores can be swapped for a shared cache (e.g., Redis)
without touching the rate limiting algorithm.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from apithrottle.schemas.policy import RateLimitPolicy
from apithrottle.schemas.throttle import ThrottleCounter


class AbstractCounterStore(ABC):
    """Key/value store for throttle counters with per-key time-to-live."""

    @abstractmethod
    def get(self, key: str) -> ThrottleCounter | None:
        """Return the live counter for ``key`` or None."""
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, counter: ThrottleCounter, ttl_seconds: int) -> None:
        """Insert or replace the counter for ``key``, expiring after ``ttl_seconds``."""
        raise NotImplementedError

    @abstractmethod
    def remove(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        """Remove every throttle counter (and nothing else) from the store."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def increment(self, key: str, window_seconds: int, now: float) -> ThrottleCounter:
        """Count one request against ``key`` and return the updated counter.

        A fresh counter is started when there is no entry or the stored one
        is older than ``window_seconds``; otherwise the count grows while the
        original window start is kept. This default is a plain read-modify-write
        and relies on the caller for serialization. Stores with a native
        atomic primitive should override it.

        Args:
            key: Derived throttle key.
            window_seconds: Window duration, also used as the entry TTL.
            now: Current UNIX time in seconds.

        Returns:
            The counter as stored after this request.
        """

        entry = self.get(key)
        if entry is None or entry.is_expired(window_seconds, now):
            counter = ThrottleCounter(window_start=now, total_requests=1)
        else:
            counter = ThrottleCounter(
                window_start=entry.window_start,
                total_requests=entry.total_requests + 1,
            )

        self.put(key, counter, window_seconds)
        return counter


class AbstractPolicyStore(ABC):
    """Holds the active policy under a key so it can be replaced at runtime."""

    @abstractmethod
    def get(self, key: str) -> RateLimitPolicy | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, policy: RateLimitPolicy) -> None:
        """Replace the policy stored under ``key`` as a single operation."""
        raise NotImplementedError

    @abstractmethod
    def remove(self, key: str) -> None:
        raise NotImplementedError
