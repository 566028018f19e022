"""Redis-backed counter and policy stores.

Counters live in hashes under ``{namespace}:{throttle_key}`` so ``clear()``
can remove them without touching unrelated data in a shared Redis. The
increment runs as a Lua script, which makes the read-modify-write atomic
across every process sharing the same Redis.
"""

from __future__ import annotations

import logging
import math

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from apithrottle.adapters.rate_limit.base import AbstractCounterStore, AbstractPolicyStore
from apithrottle.core.errors import CounterStoreError
from apithrottle.schemas.policy import RateLimitPolicy
from apithrottle.schemas.throttle import ThrottleCounter

logger = logging.getLogger(__name__)

_WINDOW_START = "window_start"
_TOTAL_REQUESTS = "total_requests"

_INCREMENT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local start = redis.call('HGET', KEYS[1], 'window_start')
if start and tonumber(start) + window >= now then
    local total = redis.call('HINCRBY', KEYS[1], 'total_requests', 1)
    redis.call('EXPIREAT', KEYS[1], math.ceil(tonumber(start) + window))
    return {start, total}
end
redis.call('HSET', KEYS[1], 'window_start', ARGV[1], 'total_requests', 1)
redis.call('EXPIRE', KEYS[1], window)
return {ARGV[1], 1}
"""


def _store_error(operation: str, exc: Exception) -> CounterStoreError:
    return CounterStoreError(
        code="counter_store_unavailable",
        message="Throttle store is unavailable",
        details={"backend": "redis", "operation": operation, "hint": type(exc).__name__},
    )


class RedisCounterStore(AbstractCounterStore):
    """Throttle counters stored in Redis hashes with native TTL."""

    def __init__(self, client: Redis, *, namespace: str = "throttle") -> None:
        self._client = client
        self._namespace = namespace
        self._increment = client.register_script(_INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> ThrottleCounter | None:
        try:
            data = self._client.hgetall(self._key(key))
        except RedisError as exc:
            raise _store_error("get", exc) from exc

        if not data:
            return None
        return ThrottleCounter(
            window_start=float(data[_WINDOW_START]),
            total_requests=int(data[_TOTAL_REQUESTS]),
        )

    def put(self, key: str, counter: ThrottleCounter, ttl_seconds: int) -> None:
        redis_key = self._key(key)
        try:
            pipe = self._client.pipeline()
            pipe.hset(
                redis_key,
                mapping={
                    _WINDOW_START: repr(counter.window_start),
                    _TOTAL_REQUESTS: counter.total_requests,
                },
            )
            # expiry follows the window start, like the in-memory store
            pipe.expireat(redis_key, math.ceil(counter.window_start + ttl_seconds))
            pipe.execute()
        except RedisError as exc:
            raise _store_error("put", exc) from exc

    def remove(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except RedisError as exc:
            raise _store_error("remove", exc) from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self._client.exists(self._key(key)))
        except RedisError as exc:
            raise _store_error("exists", exc) from exc

    def clear(self) -> None:
        removed = 0
        try:
            for redis_key in self._client.scan_iter(match=f"{self._namespace}:*"):
                removed += self._client.delete(redis_key)
        except RedisError as exc:
            raise _store_error("clear", exc) from exc
        logger.info("counter_store.cleared", extra={"backend": "redis", "entries": removed})

    def increment(self, key: str, window_seconds: int, now: float) -> ThrottleCounter:
        try:
            start, total = self._increment(
                keys=[self._key(key)],
                args=[repr(now), window_seconds],
            )
        except RedisError as exc:
            raise _store_error("increment", exc) from exc
        return ThrottleCounter(window_start=float(start), total_requests=int(total))


class RedisPolicyStore(AbstractPolicyStore):
    """Policies stored as JSON strings; ``put`` is a single SET."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    def get(self, key: str) -> RateLimitPolicy | None:
        try:
            raw = self._client.get(key)
        except RedisError as exc:
            raise _store_error("get_policy", exc) from exc

        if raw is None:
            return None
        try:
            return RateLimitPolicy.model_validate_json(raw)
        except ValidationError:
            # fail open: a corrupt policy disables throttling instead of the service
            logger.error("policy.invalid_payload", extra={"policy_key": key})
            return None

    def put(self, key: str, policy: RateLimitPolicy) -> None:
        try:
            self._client.set(key, policy.model_dump_json())
        except RedisError as exc:
            raise _store_error("put_policy", exc) from exc

    def remove(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as exc:
            raise _store_error("remove_policy", exc) from exc
