"""Logging setup: JSON lines, credential scrubbing and request correlation.

Throttling logs are read by operators hunting noisy clients, so every line
carries the request id of the HTTP request that produced it and never the
raw credentials that identify a client:

- admin API keys, connection strings and cookies are replaced by
  ``[REDACTED]``;
- client keys are replaced by a short SHA-256 digest, which keeps them
  correlatable with ``client_key_hash`` in ``rate_limit.exceeded`` events.

Blocked-request events go to the ``apithrottle.throttle`` logger, whose
level can be tuned apart from the root level (``LOG_THROTTLE_LEVEL``).
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from apithrottle.core.config import LogSettings, settings
from apithrottle.services.throttle_logger import THROTTLE_LOGGER_NAME, hash_client_key

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

# Replaced by REDACTED wherever they appear in extras (case-insensitive)
SENSITIVE_KEYS_DEFAULT: set[str] = {
    "api_key",
    "x-api-key",
    "api_keys",
    "app_api_keys",
    "authorization",
    "token",
    "secret",
    "password",
    "cookie",
    "set-cookie",
    "redis_url",
}

# Client identifiers: replaced by their digest instead of being dropped
HASHED_KEYS_DEFAULT: set[str] = {
    "client_key",
    "authorization-token",
}

_DIGEST_PREFIX = "sha256:"

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def set_request_id(request_id: str | None) -> None:
    """Bind ``request_id`` to the current context (one HTTP request)."""

    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def _digest(value: Any) -> Any:
    if not value or (isinstance(value, str) and value.startswith(_DIGEST_PREFIX)):
        return value
    return _DIGEST_PREFIX + hash_client_key(str(value))


class _Scrubber:
    """Rewrites extras so no credential reaches a handler."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        self.sensitive_keys = {k.lower() for k in (sensitive_keys or SENSITIVE_KEYS_DEFAULT)}
        self.hashed_keys = {k.lower() for k in (hashed_keys or HASHED_KEYS_DEFAULT)}

    def field(self, key: str, value: Any) -> Any:
        lowered = key.lower()
        if lowered in self.sensitive_keys:
            return REDACTED
        if lowered in self.hashed_keys:
            return _digest(value)
        return self.value(value)

    def value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: self.field(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.value(v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        """Return the caller-supplied extras of ``record``, scrubbed."""

        return {
            key: self.field(key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub credentials on the record itself, before any formatter runs.

    Plain-text formatters and third-party handlers then see the same
    scrubbed values as the JSON formatter.
    """

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, hashed_keys)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        for key, value in self._scrubber.extras(record).items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, extras."""

    def __init__(
        self,
        *,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, hashed_keys)
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        payload.update(self._scrubber.extras(record))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    """Stdout handler, or a (rotating) file handler when LOG_OUTPUT=file."""

    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/apithrottle.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if not log_settings.max_bytes:
        return logging.FileHandler(file_path, encoding="utf-8")

    return RotatingFileHandler(
        file_path,
        maxBytes=log_settings.max_bytes,
        backupCount=log_settings.backup_count,
        encoding="utf-8",
    )


def _level(name: str | None, default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install a single scrubbing handler on the root logger.

    Safe to call more than once; each call replaces the previous handler.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())

    if cfg.format.lower() == "plain":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_level = _level(cfg.level, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(root_level)

    logging.getLogger(THROTTLE_LOGGER_NAME).setLevel(_level(cfg.throttle_level, root_level))

    # the request middleware already writes one access line per request
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").disabled = True
