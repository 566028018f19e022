"""Policy construction and runtime replacement."""

from __future__ import annotations

import logging

from apithrottle.adapters.rate_limit.base import AbstractPolicyStore
from apithrottle.core.config import ThrottleSettings
from apithrottle.schemas.policy import RateLimitPolicy

logger = logging.getLogger(__name__)


def policy_from_settings(throttle_settings: ThrottleSettings) -> RateLimitPolicy:
    """Build a policy from the ``THROTTLE_*`` configuration.

    Args:
        throttle_settings: Resolved throttle settings.

    Returns:
        RateLimitPolicy with only the configured default windows set.
    """

    cfg = throttle_settings
    return RateLimitPolicy.create(
        per_second=cfg.per_second,
        per_minute=cfg.per_minute,
        per_hour=cfg.per_hour,
        per_day=cfg.per_day,
        per_week=cfg.per_week,
        ip_throttling=cfg.ip_throttling,
        client_throttling=cfg.client_throttling,
        endpoint_throttling=cfg.endpoint_throttling,
        stack_blocked_requests=cfg.stack_blocked_requests,
        ip_rules=cfg.ip_rules,
        client_rules=cfg.client_rules,
        endpoint_rules=cfg.endpoint_rules,
        route_rules=cfg.route_rules,
        ip_whitelist=frozenset(cfg.ip_whitelist),
        client_whitelist=frozenset(cfg.client_whitelist),
        endpoint_whitelist=frozenset(cfg.endpoint_whitelist),
    )


class PolicyManager:
    """Owns the key names and hot-swaps the active policy in a policy store.

    Args:
        policy_store: Store holding the active policy.
        application_name: Global prefix shared by counter and policy keys.
        throttle_key: Counter key prefix (after the application name).
        policy_key: Policy key suffix (after the application name).
    """

    def __init__(
        self,
        policy_store: AbstractPolicyStore,
        *,
        application_name: str = "",
        throttle_key: str = "throttle",
        policy_key: str = "throttle_policy",
    ) -> None:
        self._store = policy_store
        self._application_name = application_name
        self._throttle_key = throttle_key
        self._policy_key = policy_key

    @property
    def policy_key(self) -> str:
        return self._application_name + self._policy_key

    @property
    def throttle_key_prefix(self) -> str:
        return self._application_name + self._throttle_key

    def current_policy(self) -> RateLimitPolicy | None:
        return self._store.get(self.policy_key)

    def update_policy(self, policy: RateLimitPolicy) -> None:
        """Replace the active policy as a whole."""

        self._store.put(self.policy_key, policy)
        logger.info(
            "policy.updated",
            extra={
                "policy_key": self.policy_key,
                "ip_throttling": policy.ip_throttling,
                "client_throttling": policy.client_throttling,
                "endpoint_throttling": policy.endpoint_throttling,
                "rates": {period.value: limit for period, limit in policy.rates.items()},
            },
        )

    def update_policy_from_settings(self, throttle_settings: ThrottleSettings) -> RateLimitPolicy:
        """Rebuild the policy from configuration and make it active."""

        policy = policy_from_settings(throttle_settings)
        self.update_policy(policy)
        return policy

    def remove_policy(self) -> None:
        self._store.remove(self.policy_key)
        logger.info("policy.removed", extra={"policy_key": self.policy_key})
