"""API key authentication for the policy management routes.

Admin keys come from ``APP_API_KEYS`` (comma-separated). They guard
``/v1/throttle/*`` only: throttled routes identify their callers through the
client key header instead, and a client key never grants admin access.
"""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Header, HTTPException, status

from apithrottle.core.config import settings
from apithrottle.core.errors import AuthenticationAppError
from apithrottle.services.throttle_logger import hash_client_key

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Split a comma-separated key list, dropping blanks and duplicates.

    Examples:
        >>> sorted(parse_api_keys("key1, key2 , key1"))
        ['key1', 'key2']
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def _matches_any(provided_key: str, valid_keys: set[str]) -> bool:
    # compare against every key so timing does not reveal which one was close
    matched = False
    for key in valid_keys:
        matched |= hmac.compare_digest(provided_key.encode(), key.encode())
    return matched


def validate_api_key(provided_key: str) -> None:
    """Check ``provided_key`` against the configured admin keys.

    Raises:
        AuthenticationAppError: ``api_keys_not_configured`` when auth is on
            but no keys are set; ``invalid_api_key`` on a mismatch.
    """
    if not settings.app.api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.api_keys)
    if not valid_keys:
        logger.error("auth.keys_not_configured")
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    if not _matches_any(provided_key, valid_keys):
        logger.warning(
            "auth.invalid_key",
            extra={"api_key_hash": hash_client_key(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency: 403 unless ``X-API-Key`` holds an admin key."""
    if not settings.app.api_key_required:
        return

    if not x_api_key:
        logger.warning("auth.missing_key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        validate_api_key(x_api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message) from exc
