"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It ensures that the TESTING environment variable is set to prevent
loading the .env file during tests.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents Pydantic from loading the .env file in tests
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("THROTTLE_STORE_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest  # noqa: E402

from apithrottle.core import rate_limit  # noqa: E402
from apithrottle.core.config import ThrottleSettings, settings  # noqa: E402


class FakeClock:
    """Deterministic clock used to test window expiry."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def throttle_settings(monkeypatch: pytest.MonkeyPatch):
    """Swap in fresh throttle settings and drop the cached runtime.

    Returns a function taking ThrottleSettings overrides.
    """

    def _apply(**overrides) -> ThrottleSettings:
        cfg = ThrottleSettings(**overrides)
        monkeypatch.setattr(settings, "throttle", cfg)
        rate_limit.reset_rate_limiter()
        return cfg

    yield _apply
    rate_limit.reset_rate_limiter()
