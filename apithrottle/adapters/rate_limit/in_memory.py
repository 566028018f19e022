"""In-memory counter and policy stores.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- No background thread: expired counters are dropped on read and swept on write.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from apithrottle.adapters.rate_limit.base import AbstractCounterStore, AbstractPolicyStore
from apithrottle.schemas.policy import RateLimitPolicy
from apithrottle.schemas.throttle import ThrottleCounter

logger = logging.getLogger(__name__)


@dataclass
class _CounterEntry:
    counter: ThrottleCounter
    expires_at: float


class InMemoryCounterStore(AbstractCounterStore):
    """Throttle counters kept in a dict keyed by throttle key.

    Entries expire ``ttl_seconds`` after the counter's window start, so a
    counter re-stored mid-window keeps its original expiry. Expired entries
    are dropped when read, and writes sweep the whole map at most once per
    ``sweep_interval_seconds`` so keys that are never read again go too.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 1.0,
    ) -> None:
        """Initialize the store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            sweep_interval_seconds: Minimum time between two expiry sweeps.
        """
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0
        self._lock = threading.RLock()
        self._entries: dict[str, _CounterEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> ThrottleCounter | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.expires_at < self._clock():
                # expired entries are removed on read
                del self._entries[key]
                return None

            return entry.counter

    def _sweep_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at < now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("counter_store.swept", extra={"backend": "memory", "entries": len(expired)})

    def put(self, key: str, counter: ThrottleCounter, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep_expired(now)
            self._entries[key] = _CounterEntry(
                counter=counter,
                expires_at=counter.window_start + ttl_seconds,
            )

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("counter_store.cleared", extra={"backend": "memory", "entries": size})


class InMemoryPolicyStore(AbstractPolicyStore):
    """Policies kept in a dict; replacement swaps the reference under a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._policies: dict[str, RateLimitPolicy] = {}

    def get(self, key: str) -> RateLimitPolicy | None:
        with self._lock:
            return self._policies.get(key)

    def put(self, key: str, policy: RateLimitPolicy) -> None:
        with self._lock:
            self._policies[key] = policy

    def remove(self, key: str) -> None:
        with self._lock:
            self._policies.pop(key, None)
