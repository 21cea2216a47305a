"""Factory pattern for creating record store instances."""

from onboarding_limiter.adapters.store.base import AbstractRecordStore
from onboarding_limiter.adapters.store.in_memory import InMemoryRecordStore
from onboarding_limiter.adapters.store.redis_store import RedisRecordStore
from onboarding_limiter.core.config import StoreSettings, settings
from onboarding_limiter.core.errors import ValidationAppError


def create_record_store(store_settings: StoreSettings | None = None) -> AbstractRecordStore:
    """Factory function to instantiate the record store for the configured backend.

    Reads configuration from onboarding_limiter.core.config.settings unless
    explicit settings are provided.

    Args:
        store_settings: Optional store settings override.

    Returns:
        AbstractRecordStore: Configured store instance.

    Raises:
        ValidationAppError: If backend-specific requirements are not met.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "memory":
        return InMemoryRecordStore()

    if backend == "redis":
        if not cfg.redis_url:
            raise ValidationAppError(
                code="store_missing_redis_url",
                message="Redis store requires STORE_REDIS_URL environment variable",
                details={"backend": backend},
            )
        return RedisRecordStore.from_url(
            cfg.redis_url,
            collection=cfg.collection,
            timeout_seconds=cfg.timeout_seconds,
        )

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown store backend: '{backend}'. Supported backends: memory, redis",
        details={"backend": backend},
    )
