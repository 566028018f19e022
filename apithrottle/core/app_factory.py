"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) to
improve testability; tests build fresh apps after changing settings.
"""

from __future__ import annotations

from fastapi import FastAPI

from apithrottle.api.routes import health_router, throttle_router, values_router
from apithrottle.core.config import settings
from apithrottle.core.exception_handlers import setup_exception_handlers
from apithrottle.core.logging import configure_logging
from apithrottle.core.middleware import request_id_middleware
from apithrottle.core.openapi import apply_openapi_customizations


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="API Throttle",
        description=(
            "Multi-scope rate limiting for HTTP APIs: per-second to per-week "
            "quotas by client IP, client key and endpoint, with CIDR-aware IP "
            "rules, whitelists and hot-swappable policies. Blocked requests get "
            "HTTP 429 with a Retry-After header."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(values_router, prefix="/v1")
    app.include_router(throttle_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
