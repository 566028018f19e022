"""Application-level exception types.

Each error type carries the HTTP status it maps to, so the exception
handlers stay a lookup instead of an isinstance chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context returned to clients and logged."""

    hint: str
    retry_after: float
    backend: str
    operation: str
    context: dict[str, Any]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    http_status: ClassVar[int] = 400

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # str(error) is the message in logs and tracebacks
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input or configuration is invalid (e.g. unknown store backend)."""


class AuthenticationAppError(AppError):
    """Raised when an admin API key is missing, invalid or not configured."""

    http_status = 403


class NotFoundAppError(AppError):
    """Raised when a requested resource (e.g., the active policy) is absent."""

    http_status = 404


class CounterStoreError(AppError):
    """Raised when the counter or policy store cannot be reached in time.

    The rate limit dependency catches it and fails open or closed; anywhere
    else it surfaces as 503.
    """

    http_status = 503
