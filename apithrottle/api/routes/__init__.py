from __future__ import annotations

from apithrottle.api.routes.health import router as health_router
from apithrottle.api.routes.throttle import router as throttle_router
from apithrottle.api.routes.values import router as values_router

__all__ = ["health_router", "throttle_router", "values_router"]
