from __future__ import annotations

from fastapi import APIRouter

from apithrottle.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Never throttled, so load balancers keep seeing the service while clients
    are being rate limited.

    Returns:
        dict: Service status plus whether throttling is on and which store
            backend holds the counters.
    """

    return {
        "status": "ok",
        "throttling": settings.throttle.enabled,
        "store_backend": settings.throttle.store_backend,
    }
