"""Record store adapters.

The rate limiter keeps its state in a store shared by every process that
handles onboarding. This package hides the concrete backend behind a small
document-store interface so the limiter logic can be exercised against the
in-memory store in tests and run against Redis in production.
"""

from onboarding_limiter.adapters.store.base import AbstractRecordStore, Document
from onboarding_limiter.adapters.store.factory import create_record_store
from onboarding_limiter.adapters.store.in_memory import InMemoryRecordStore
from onboarding_limiter.adapters.store.redis_store import RedisRecordStore

__all__ = [
    "AbstractRecordStore",
    "Document",
    "InMemoryRecordStore",
    "RedisRecordStore",
    "create_record_store",
]
