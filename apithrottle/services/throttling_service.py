"""Rate limiting core: whitelisting, key derivation, rule resolution, counting.

The core is framework-agnostic. HTTP adapters build a ``RequestIdentity``,
fetch the active policy once, and call :meth:`ThrottlingCore.evaluate`.

Evaluation walks the windows second -> week (or week -> second when the
policy stacks blocked requests). For each window the default limit is
resolved against the rule tables; a window whose effective limit is zero
never blocks and is not counted. Otherwise the window's counter is
incremented and compared to the limit, and the first window over its limit
produces a blocked decision.

Rule precedence, applied in order so the last match wins:

1. endpoint and route rules (the smallest non-zero limit among all matches)
2. client rules (exact key)
3. IP rules (address or CIDR), the most specific scope
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from apithrottle.adapters.rate_limit.base import AbstractCounterStore
from apithrottle.schemas.policy import PERIODS, RateLimitPeriod, RateLimitPolicy, RateLimits
from apithrottle.schemas.throttle import (
    RequestIdentity,
    ThrottleCounter,
    ThrottleDecision,
    ThrottleLogEntry,
)
from apithrottle.utils.ip_address import contains_ip, matching_rule

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_KEY = "throttle"

_KEY_SEPARATOR = b"\x1f"


class _KeyLocks:
    """Fixed pool of locks; each throttle key always maps to the same lock."""

    def __init__(self, shards: int) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [threading.Lock() for _ in range(shards)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class ThrottlingCore:
    """Evaluates requests against a rate limit policy.

    Args:
        counter_store: Where per-window counters are kept.
        key_prefix: Global prefix mixed into every throttle key, so several
            applications can share one store.
        clock: Time source returning UNIX time in seconds.
        lock_shards: Number of locks serializing counter updates. Requests
            with the same throttle key always share a lock.
    """

    def __init__(
        self,
        counter_store: AbstractCounterStore,
        *,
        key_prefix: str = DEFAULT_THROTTLE_KEY,
        clock: Callable[[], float] = time.time,
        lock_shards: int = 64,
    ) -> None:
        self._store = counter_store
        self._key_prefix = key_prefix
        self._clock = clock
        self._locks = _KeyLocks(lock_shards)

    @property
    def counter_store(self) -> AbstractCounterStore:
        return self._store

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    def is_whitelisted(self, identity: RequestIdentity, policy: RateLimitPolicy) -> bool:
        """Return True when any enabled scope exempts the identity.

        IP whitelists match by address or CIDR, client whitelists by exact
        key, endpoint whitelists by case-insensitive substring.
        """

        if identity.force_whitelist:
            return True

        if policy.ip_throttling and contains_ip(policy.ip_whitelist, identity.client_ip):
            return True

        if policy.client_throttling and identity.client_key in policy.client_whitelist:
            return True

        if policy.endpoint_throttling:
            endpoint = identity.endpoint.lower()
            if any(entry.lower() in endpoint for entry in policy.endpoint_whitelist):
                return True

        return False

    def compute_throttle_key(
        self,
        identity: RequestIdentity,
        policy: RateLimitPolicy,
        period: RateLimitPeriod,
    ) -> str:
        """Derive the counter key for ``identity`` in ``period``.

        Only enabled scopes contribute, so identities differing only in a
        disabled dimension share a counter. Parts are tagged and separated
        before hashing so distinct tuples cannot produce the same input.

        Returns:
            Hex-encoded SHA-256 digest.
        """

        hasher = hashlib.sha256()
        hasher.update(self._key_prefix.encode())
        hasher.update(_KEY_SEPARATOR)

        if policy.ip_throttling:
            hasher.update(b"ip=" + identity.client_ip.encode() + _KEY_SEPARATOR)
        if policy.client_throttling:
            hasher.update(b"client=" + identity.client_key.encode() + _KEY_SEPARATOR)
        if policy.endpoint_throttling:
            hasher.update(b"endpoint=" + identity.endpoint.encode() + _KEY_SEPARATOR)

        hasher.update(b"period=" + period.value.encode())
        return hasher.hexdigest()

    def rates_with_defaults(self, policy: RateLimitPolicy) -> list[tuple[RateLimitPeriod, int]]:
        """List every window with its default limit, in evaluation order.

        Windows missing from ``policy.rates`` get a zero (unbounded) limit.
        The order is reversed when the policy stacks blocked requests.
        """

        rates = [(period, policy.rates.get(period, 0)) for period in PERIODS]
        if policy.stack_blocked_requests:
            rates.reverse()
        return rates

    def apply_rules(
        self,
        identity: RequestIdentity,
        period: RateLimitPeriod,
        policy: RateLimitPolicy,
        rate_limit: int,
    ) -> int:
        """Resolve the effective limit for ``period`` from the rule tables.

        Args:
            identity: The caller.
            period: Window being evaluated.
            policy: Active policy.
            rate_limit: Default limit for the window.

        Returns:
            The limit after endpoint/route, client and IP overrides.
        """

        if policy.endpoint_throttling:
            limits = self._matching_endpoint_limits(identity, period, policy)
            if limits:
                rate_limit = min(limits)

        if policy.client_throttling:
            client_limits = policy.client_rules.get(identity.client_key)
            if client_limits is not None and client_limits.get_limit(period) > 0:
                rate_limit = client_limits.get_limit(period)

        if policy.ip_throttling and policy.ip_rules:
            rule = matching_rule(policy.ip_rules.keys(), identity.client_ip)
            if rule is not None:
                limit = policy.ip_rules[rule].get_limit(period)
                if limit > 0:
                    rate_limit = limit

        return rate_limit

    def _matching_endpoint_limits(
        self,
        identity: RequestIdentity,
        period: RateLimitPeriod,
        policy: RateLimitPolicy,
    ) -> list[int]:
        endpoint = identity.endpoint.lower()
        matches: list[RateLimits] = [
            limits for pattern, limits in policy.endpoint_rules.items() if pattern.lower() in endpoint
        ]
        if identity.route:
            route = identity.route.lower()
            matches.extend(
                limits for pattern, limits in policy.route_rules.items() if pattern.lower() in route
            )
        return [limit for limit in (m.get_limit(period) for m in matches) if limit > 0]

    def process_request(self, key: str, period: RateLimitPeriod) -> ThrottleCounter:
        """Count one request against ``key`` for ``period``.

        The read-modify-write is serialized per key, so concurrent requests
        never lose increments.
        """

        with self._locks.for_key(key):
            return self._store.increment(key, period.seconds, self._clock())

    def retry_after(self, window_start: float, period: RateLimitPeriod) -> int:
        """Seconds until the window that started at ``window_start`` ends.

        Always between 1 and the window duration.
        """

        duration = period.seconds
        elapsed = max(0, int(self._clock() - window_start))
        return max(1, min(duration, duration - elapsed))

    def evaluate(
        self,
        identity: RequestIdentity,
        policy: RateLimitPolicy | None,
    ) -> ThrottleDecision:
        """Decide whether ``identity`` may proceed under ``policy``.

        A missing policy, or one with every scope disabled, allows everything.

        Raises:
            CounterStoreError: When the counter store is unreachable. The
                caller decides whether to fail open.
        """

        if policy is None or not policy.throttling_enabled:
            return ThrottleDecision.allow()

        if self.is_whitelisted(identity, policy):
            logger.debug("rate_limit.whitelisted", extra={"endpoint": identity.endpoint})
            return ThrottleDecision.allow()

        for period, default_limit in self.rates_with_defaults(policy):
            rate_limit = self.apply_rules(identity, period, policy, default_limit)
            if rate_limit <= 0:
                continue

            key = self.compute_throttle_key(identity, policy, period)
            counter = self.process_request(key, period)

            if counter.total_requests > rate_limit:
                return ThrottleDecision.block(
                    limit=rate_limit,
                    period=period,
                    retry_after_seconds=self.retry_after(counter.window_start, period),
                    counter=counter,
                )

        return ThrottleDecision.allow()

    def compute_log_entry(
        self,
        request_id: str,
        identity: RequestIdentity,
        decision: ThrottleDecision,
    ) -> ThrottleLogEntry:
        """Build the log entry for a blocked decision."""

        if decision.allowed or decision.counter is None or decision.period is None:
            raise ValueError("log entries are only built for blocked decisions")

        return ThrottleLogEntry(
            request_id=request_id,
            client_ip=identity.client_ip,
            client_key=identity.client_key,
            endpoint=identity.endpoint,
            total_requests=decision.counter.total_requests,
            start_period=datetime.fromtimestamp(decision.counter.window_start, tz=timezone.utc),
            rate_limit=decision.limit or 0,
            rate_limit_period=decision.period.label,
            log_date=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )
