"""Process-wide wiring for the record store and onboarding rate limiter.

Both objects are built lazily on first use from settings and reused for the
life of the process. Configuration is read once; nothing here reacts to
later environment changes. Tests call reset_rate_limiter() to start clean.
"""

from __future__ import annotations

import logging
import threading

from onboarding_limiter.adapters.store.base import AbstractRecordStore
from onboarding_limiter.adapters.store.factory import create_record_store
from onboarding_limiter.core.config import settings
from onboarding_limiter.services.rate_limiter import OnboardingRateLimiter

logger = logging.getLogger(__name__)


_lock = threading.Lock()
_store: AbstractRecordStore | None = None
_limiter: OnboardingRateLimiter | None = None


def get_record_store() -> AbstractRecordStore:
    """Return the process-wide record store, creating it on first use."""

    global _store

    with _lock:
        if _store is None:
            _store = create_record_store(settings.store)
            logger.info(
                "store.initialized",
                extra={"backend": settings.store.backend, "collection": settings.store.collection},
            )
        return _store


def get_onboarding_rate_limiter() -> OnboardingRateLimiter:
    """Return the process-wide onboarding rate limiter.

    Returns:
        OnboardingRateLimiter: Limiter bound to the shared store.
    """

    global _limiter

    store = get_record_store()
    cfg = settings.onboard

    with _lock:
        if _limiter is None:
            _limiter = OnboardingRateLimiter(
                store,
                max_attempts=cfg.max_attempts,
                block_duration=cfg.block_duration,
                key_prefix=cfg.key_prefix,
                atomic_updates=cfg.atomic_updates,
                max_retries=cfg.cas_max_retries,
                extend_block_on_retry=cfg.extend_block_on_retry,
            )
            logger.info(
                "rate_limit.limiter_initialized",
                extra={
                    "max_attempts": cfg.max_attempts,
                    "block_duration_minutes": cfg.block_duration_minutes,
                    "atomic_updates": cfg.atomic_updates,
                },
            )
        return _limiter


def reset_rate_limiter() -> None:
    """Drop the cached store and limiter (used by tests)."""

    global _store, _limiter

    with _lock:
        _store = None
        _limiter = None
