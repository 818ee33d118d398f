"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before anything imports the settings module,
so no local .env file leaks into the tests.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")

from collections.abc import Iterator  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402

from admission.adapters.rate_limit.in_memory import InMemoryFixedWindowAdmissionEngine  # noqa: E402
from admission.core import admission as admission_module  # noqa: E402


@pytest.fixture
def clock() -> Mock:
    """Deterministic epoch-millisecond clock."""
    return Mock(return_value=1_000_000.0)


@pytest.fixture
def engine(clock: Mock) -> InMemoryFixedWindowAdmissionEngine:
    return InMemoryFixedWindowAdmissionEngine(clock=clock, sweep_interval_ms=None)


@pytest.fixture(autouse=True)
def _fresh_process_engine() -> Iterator[None]:
    """Each test starts without a cached process-wide engine."""
    admission_module.reset_admission_engine()
    yield
    admission_module.reset_admission_engine()


@pytest.fixture
def valid_api_key_headers() -> dict[str, str]:
    return {"X-API-Key": "test-api-key-123"}
