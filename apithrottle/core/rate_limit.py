"""Rate limiting dependency for FastAPI routes.

This module wires the throttling core into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency callable only.
- Swap-friendly: counter and policy stores can be replaced (e.g., Redis)
  behind abstract interfaces.
- Fail-open: a missing policy or an unreachable store never takes the API
  down unless THROTTLE_FAIL_OPEN=false.

Identity extraction:
- Client IP: direct peer, or the right-most public X-Forwarded-For hop when
  THROTTLE_TRUST_FORWARDED_FOR=true.
- Client key: THROTTLE_CLIENT_KEY_HEADER value, "anon" when absent.
- Endpoint: lower-cased path without query string.
- Route: the matched route template, used by per-route rules.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from fastapi import HTTPException, Request, status

from apithrottle.adapters.rate_limit.factory import create_counter_store, create_policy_store
from apithrottle.core.config import ThrottleSettings, settings
from apithrottle.core.errors import CounterStoreError
from apithrottle.core.logging import get_request_id
from apithrottle.schemas.policy import RateLimitPolicy
from apithrottle.schemas.throttle import RequestIdentity, ThrottleDecision
from apithrottle.services.policy_service import PolicyManager
from apithrottle.services.throttle_logger import (
    AbstractThrottleLogger,
    LoggingThrottleLogger,
    hash_client_key,
)
from apithrottle.services.throttling_service import ThrottlingCore
from apithrottle.utils.ip_address import resolve_client_ip

logger = logging.getLogger(__name__)


_core: ThrottlingCore | None = None
_policy_manager: PolicyManager | None = None
_runtime_config: tuple | None = None
_throttle_logger: AbstractThrottleLogger = LoggingThrottleLogger()
_runtime_lock = threading.Lock()


def _runtime_key(cfg: ThrottleSettings) -> tuple:
    return (
        cfg.store_backend,
        cfg.redis_url,
        cfg.redis_namespace,
        cfg.application_name,
        cfg.throttle_key,
        cfg.policy_key,
    )


def _ensure_runtime() -> tuple[ThrottlingCore, PolicyManager]:
    """Build (or rebuild on configuration change) the process-wide runtime.

    The stores are cached in-module to preserve counters across requests.
    A freshly built policy manager is seeded with the policy from settings.
    """

    global _core, _policy_manager, _runtime_config

    cfg = settings.throttle
    config = _runtime_key(cfg)

    core, policy_manager = _core, _policy_manager
    if core is not None and policy_manager is not None and _runtime_config == config:
        return core, policy_manager

    with _runtime_lock:
        if _core is not None and _policy_manager is not None and _runtime_config == config:
            return _core, _policy_manager

        policy_manager = PolicyManager(
            create_policy_store(cfg),
            application_name=cfg.application_name,
            throttle_key=cfg.throttle_key,
            policy_key=cfg.policy_key,
        )
        core = ThrottlingCore(
            create_counter_store(cfg),
            key_prefix=policy_manager.throttle_key_prefix,
        )
        policy_manager.update_policy_from_settings(cfg)

        # published only once built and seeded
        _core, _policy_manager, _runtime_config = core, policy_manager, config
        logger.info(
            "rate_limit.runtime_built",
            extra={"backend": cfg.store_backend, "application": cfg.application_name},
        )

    return core, policy_manager


def get_throttling_core() -> ThrottlingCore:
    """Return the process-wide throttling core."""
    return _ensure_runtime()[0]


def get_policy_manager() -> PolicyManager:
    """Return the process-wide policy manager."""
    return _ensure_runtime()[1]


def set_throttle_logger(throttle_logger: AbstractThrottleLogger) -> None:
    """Replace the sink receiving blocked-request entries."""
    global _throttle_logger
    _throttle_logger = throttle_logger


def reset_rate_limiter() -> None:
    """Drop the cached runtime so the next request rebuilds it from settings."""
    global _core, _policy_manager, _runtime_config
    with _runtime_lock:
        _core = None
        _policy_manager = None
        _runtime_config = None


def build_request_identity(request: Request, *, force_whitelist: bool = False) -> RequestIdentity:
    """Extract the throttling identity from a FastAPI request.

    Args:
        request: FastAPI request.
        force_whitelist: Exempt this request from all counting.

    Returns:
        RequestIdentity for the core.
    """

    cfg = settings.throttle
    peer_ip = request.client.host if request.client else None

    if cfg.trust_forwarded_for:
        client_ip = resolve_client_ip(request.headers.get("X-Forwarded-For"), peer_ip)
    else:
        client_ip = peer_ip or "0.0.0.0"

    route = request.scope.get("route")
    return RequestIdentity.from_request_parts(
        client_ip=client_ip,
        client_key=request.headers.get(cfg.client_key_header),
        endpoint=request.url.path,
        route=getattr(route, "path", None),
        force_whitelist=force_whitelist,
    )


def _fetch_and_evaluate(identity: RequestIdentity) -> tuple[ThrottlingCore, ThrottleDecision]:
    core, policy_manager = _ensure_runtime()
    # the policy is fetched once and used unchanged for the whole evaluation
    policy: RateLimitPolicy | None = policy_manager.current_policy()
    return core, core.evaluate(identity, policy)


async def _evaluate(identity: RequestIdentity) -> tuple[ThrottlingCore, ThrottleDecision]:
    """Build the runtime, fetch the policy and evaluate in the thread pool.

    Everything that may touch a store runs off the event loop and is bounded
    by THROTTLE_STORE_TIMEOUT_SECONDS.

    Raises:
        CounterStoreError: If the store fails or the evaluation times out.
    """

    loop = asyncio.get_running_loop()
    timeout_seconds = settings.throttle.store_timeout_seconds
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, _fetch_and_evaluate, identity),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        raise CounterStoreError(
            code="counter_store_timeout",
            message="Throttle store did not answer in time",
            details={"retry_after": timeout_seconds},
        ) from exc


def _blocked_response(decision: ThrottleDecision) -> HTTPException:
    cfg = settings.throttle
    period = decision.period.label if decision.period else ""
    retry_after = decision.retry_after_seconds or 1

    headers = {"Retry-After": str(retry_after)}
    if cfg.include_headers:
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Period"] = period

    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=cfg.quota_exceeded_message.format(limit=decision.limit, period=period),
        headers=headers,
    )


class RateLimit:
    """FastAPI dependency enforcing the active throttle policy.

    Usage:
        @router.get("/values", dependencies=[Depends(enforce_rate_limit)])
        @router.get("/status", dependencies=[Depends(RateLimit(exempt=True))])

    Args:
        exempt: Skip counting for routes using this instance.
    """

    def __init__(self, *, exempt: bool = False) -> None:
        self.exempt = exempt

    async def __call__(self, request: Request) -> None:
        """Evaluate the request and raise HTTP 429 when a quota is exceeded.

        Raises:
            HTTPException: 429 Too Many Requests, or 503 when the store is
                unavailable and fail-open is disabled.
        """

        if not settings.throttle.enabled:
            return

        identity = build_request_identity(request, force_whitelist=self.exempt)

        try:
            core, decision = await _evaluate(identity)
        except CounterStoreError as exc:
            logger.error(
                "rate_limit.store_unavailable",
                extra={
                    "error_code": exc.code,
                    "fail_open": settings.throttle.fail_open,
                    "endpoint": identity.endpoint,
                },
            )
            if settings.throttle.fail_open:
                return
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Rate limiting is temporarily unavailable. Try again later.",
            ) from exc

        if decision.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "client_ip": identity.client_ip,
                    "client_key_hash": hash_client_key(identity.client_key),
                    "endpoint": identity.endpoint,
                },
            )
            return

        entry = core.compute_log_entry(get_request_id() or "", identity, decision)
        _throttle_logger.log(entry)

        raise _blocked_response(decision)


enforce_rate_limit = RateLimit()
