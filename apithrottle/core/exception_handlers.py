"""Global exception handlers for consistent error responses.

Every error body has the same shape::

    {"error": {"code": ..., "message": ..., "request_id": ..., "details": ...}}

``AppError`` subclasses map to their ``http_status``; anything else is a 500
with a generic message so internals (store hosts, tracebacks) never leak.
"""

from __future__ import annotations

import logging
import math

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apithrottle.core.errors import AppError
from apithrottle.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    error: dict = {
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        error["details"] = details
    return {"error": error}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render a domain error with the status its type declares.

    A ``retry_after`` detail (store timeouts) is echoed as a ``Retry-After``
    header, rounded up to whole seconds.
    """

    status_code = exc.http_status
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "path": request.url.path,
            "has_details": bool(exc.details),
        },
    )

    headers = None
    retry_after = (exc.details or {}).get("retry_after")
    if retry_after:
        headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}

    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.code, exc.message, dict(exc.details or {})),
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for unexpected errors: log the type, return a generic 500."""

    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content=_error_body(
            "internal_server_error",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the domain handler and the catch-all fallback on ``app``."""

    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
