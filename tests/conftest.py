"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins the environment before settings are imported so local .env files
or exported variables cannot change test behavior.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["STORE_BACKEND"] = "memory"
for _name in (
    "ONBOARD_MAX_ATTEMPTS",
    "ONBOARD_BLOCK_DURATION_MINUTES",
    "ONBOARD_ATOMIC_UPDATES",
    "ONBOARD_EXTEND_BLOCK_ON_RETRY",
    "ONBOARD_FAIL_OPEN",
    "STORE_REDIS_URL",
):
    os.environ.pop(_name, None)

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402

from onboarding_limiter.adapters.store.in_memory import InMemoryRecordStore  # noqa: E402
from onboarding_limiter.core.rate_limit import reset_rate_limiter  # noqa: E402
from onboarding_limiter.services.rate_limiter import OnboardingRateLimiter  # noqa: E402


class FakeClock:
    """Deterministic clock used to test block expiry."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float = 0.0, *, minutes: float = 0.0) -> None:
        self.current += seconds + minutes * 60


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryRecordStore:
    return InMemoryRecordStore(clock=clock)


@pytest.fixture
def limiter(store: InMemoryRecordStore) -> OnboardingRateLimiter:
    return OnboardingRateLimiter(store, max_attempts=3, block_duration=timedelta(minutes=15))


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    reset_rate_limiter()
    yield
    reset_rate_limiter()
