"""Sinks for blocked-request log entries."""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod

from apithrottle.schemas.throttle import ThrottleLogEntry

THROTTLE_LOGGER_NAME = "apithrottle.throttle"


class AbstractThrottleLogger(ABC):
    """Receives one entry per blocked request."""

    @abstractmethod
    def log(self, entry: ThrottleLogEntry) -> None:
        raise NotImplementedError


def hash_client_key(client_key: str) -> str:
    """Hash a client key for logging without exposing the credential."""
    return hashlib.sha256(client_key.encode()).hexdigest()[:16]


class LoggingThrottleLogger(AbstractThrottleLogger):
    """Writes blocked requests to stdlib logging as ``rate_limit.exceeded``."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(THROTTLE_LOGGER_NAME)

    def log(self, entry: ThrottleLogEntry) -> None:
        self._logger.warning(
            "rate_limit.exceeded",
            extra={
                "request_id": entry.request_id,
                "client_ip": entry.client_ip,
                "client_key_hash": hash_client_key(entry.client_key),
                "endpoint": entry.endpoint,
                "total_requests": entry.total_requests,
                "start_period": entry.start_period.isoformat(),
                "rate_limit": entry.rate_limit,
                "rate_limit_period": entry.rate_limit_period,
            },
        )
