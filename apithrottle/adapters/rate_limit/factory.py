"""Factory functions for counter and policy stores."""

from __future__ import annotations

from redis import Redis

from apithrottle.adapters.rate_limit.base import AbstractCounterStore, AbstractPolicyStore
from apithrottle.adapters.rate_limit.in_memory import InMemoryCounterStore, InMemoryPolicyStore
from apithrottle.adapters.rate_limit.redis_store import RedisCounterStore, RedisPolicyStore
from apithrottle.core.config import ThrottleSettings
from apithrottle.core.errors import ValidationAppError


def _redis_client(throttle_settings: ThrottleSettings) -> Redis:
    return Redis.from_url(throttle_settings.redis_url, decode_responses=True)


def create_counter_store(throttle_settings: ThrottleSettings) -> AbstractCounterStore:
    """Instantiate the counter store selected by ``THROTTLE_STORE_BACKEND``.

    Raises:
        ValidationAppError: If the backend is unknown.
    """
    backend = throttle_settings.store_backend.lower()

    if backend == "memory":
        return InMemoryCounterStore()

    if backend == "redis":
        return RedisCounterStore(
            _redis_client(throttle_settings),
            namespace=throttle_settings.redis_namespace,
        )

    raise ValidationAppError(
        code="throttle_unknown_store",
        message=f"Unknown throttle store backend: '{backend}'. Supported: memory, redis",
    )


def create_policy_store(throttle_settings: ThrottleSettings) -> AbstractPolicyStore:
    """Instantiate the policy store matching the counter store backend."""
    backend = throttle_settings.store_backend.lower()

    if backend == "memory":
        return InMemoryPolicyStore()

    if backend == "redis":
        return RedisPolicyStore(_redis_client(throttle_settings))

    raise ValidationAppError(
        code="throttle_unknown_store",
        message=f"Unknown throttle store backend: '{backend}'. Supported: memory, redis",
    )
