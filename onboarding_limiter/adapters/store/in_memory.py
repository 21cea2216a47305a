"""In-memory record store.

Notes:
- Per-process only: use it for tests and single-process development.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from onboarding_limiter.adapters.store.base import AbstractRecordStore, Document
from onboarding_limiter.core.errors import RecordNotFoundError


@dataclass
class _Entry:
    document: Document
    version: int


class InMemoryRecordStore(AbstractRecordStore):
    """Dict-backed store with per-key versions for compare-and-set."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}
        # Store-wide counter: a delete followed by a re-create never reuses a token.
        self._last_version = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Document | None:
        document, _ = self.get_versioned(key)
        return document

    def get_versioned(self, key: str) -> tuple[Document | None, str | None]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, None
            return copy.deepcopy(entry.document), str(entry.version)

    def set(self, key: str, document: Document) -> None:
        with self._lock:
            self._write_locked(key, document)

    def update(self, key: str, fields: Document) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise RecordNotFoundError(
                    code="record_not_found",
                    message=f"Cannot update missing record '{key}'",
                    details={"key": key, "backend": "memory"},
                )
            merged = {**entry.document, **copy.deepcopy(fields)}
            self._write_locked(key, merged)

    def compare_and_set(self, key: str, document: Document, expected_version: str | None) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            current_version = None if entry is None else str(entry.version)
            if current_version != expected_version:
                return False
            self._write_locked(key, document)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _write_locked(self, key: str, document: Document) -> None:
        self._last_version += 1
        self._entries[key] = _Entry(document=copy.deepcopy(document), version=self._last_version)
