"""Policy management routes: inspect, replace and reload the active policy.

Updates swap the whole policy in the policy store; requests already being
evaluated keep the snapshot they fetched.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from apithrottle.core.auth import verify_api_key
from apithrottle.core.config import settings
from apithrottle.core.errors import NotFoundAppError
from apithrottle.core.rate_limit import get_policy_manager, get_throttling_core
from apithrottle.schemas.policy import RateLimitPolicy

router = APIRouter(
    prefix="/throttle",
    tags=["Throttle"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("/policy", response_model=RateLimitPolicy)
def read_policy() -> RateLimitPolicy:
    """Return the active policy.

    Raises:
        NotFoundAppError: If no policy is stored (throttling is a no-op).
    """

    policy = get_policy_manager().current_policy()
    if policy is None:
        raise NotFoundAppError(
            code="policy_not_found",
            message="No throttle policy is active",
            details={"hint": "PUT /v1/throttle/policy or POST /v1/throttle/policy/reload"},
        )
    return policy


@router.put("/policy", response_model=RateLimitPolicy)
def replace_policy(policy: RateLimitPolicy) -> RateLimitPolicy:
    """Replace the active policy with the validated request body."""

    get_policy_manager().update_policy(policy)
    return policy


@router.post("/policy/reload", response_model=RateLimitPolicy)
def reload_policy() -> RateLimitPolicy:
    """Rebuild the active policy from the THROTTLE_* settings."""

    return get_policy_manager().update_policy_from_settings(settings.throttle)


@router.delete("/counters", status_code=status.HTTP_204_NO_CONTENT)
def clear_counters() -> None:
    """Reset every throttle counter; the policy is left untouched."""

    get_throttling_core().counter_store.clear()


@router.delete("/policy", status_code=status.HTTP_204_NO_CONTENT)
def remove_policy() -> None:
    """Remove the active policy; throttling becomes a no-op until one is set."""

    get_policy_manager().remove_policy()
