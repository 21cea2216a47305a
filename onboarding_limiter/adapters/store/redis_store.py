"""Redis-backed record store shared by every onboarding process.

Documents are stored as JSON strings under "<collection>:<key>". Time comes
from the Redis server (TIME) so processes on different hosts compare against
the same clock.
"""

from __future__ import annotations

import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from redis import Redis
from redis.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from onboarding_limiter.adapters.store.base import AbstractRecordStore, Document
from onboarding_limiter.core.errors import (
    RecordCorruptError,
    RecordNotFoundError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


def _version_of(raw: str | bytes | None) -> str | None:
    """Derive a version token from the stored payload."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


class RedisRecordStore(AbstractRecordStore):
    """Record store on top of a synchronous redis-py client.

    Attributes:
        collection: Key namespace for all records of this store.
    """

    def __init__(self, client: Redis, *, collection: str = "rate_limits") -> None:
        self._client = client
        self.collection = collection

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        collection: str = "rate_limits",
        timeout_seconds: float = 5.0,
    ) -> "RedisRecordStore":
        """Build a store from a Redis URL.

        redis-py connects lazily, so no I/O happens until the first command.
        """
        client = Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client, collection=collection)

    def _full_key(self, key: str) -> str:
        return f"{self.collection}:{key}"

    @contextmanager
    def _translate_errors(self, operation: str, key: str | None = None) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "store.unavailable",
                extra={"operation": operation, "key": key, "error_type": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Record store unavailable during {operation}",
                details={"backend": "redis", "key": key or ""},
            ) from exc

    def _decode(self, key: str, raw: str | bytes) -> Document:
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise RecordCorruptError(
                code="record_corrupt",
                message=f"Stored payload for '{key}' is not valid JSON",
                details={"key": key, "backend": "redis"},
            ) from exc
        if not isinstance(document, dict):
            raise RecordCorruptError(
                code="record_corrupt",
                message=f"Stored payload for '{key}' is not a JSON object",
                details={"key": key, "backend": "redis"},
            )
        return document

    @staticmethod
    def _encode(document: Document) -> str:
        return json.dumps(document, separators=(",", ":"), sort_keys=True)

    def get(self, key: str) -> Document | None:
        document, _ = self.get_versioned(key)
        return document

    def get_versioned(self, key: str) -> tuple[Document | None, str | None]:
        with self._translate_errors("get", key):
            raw = self._client.get(self._full_key(key))
        if raw is None:
            return None, None
        return self._decode(key, raw), _version_of(raw)

    def set(self, key: str, document: Document) -> None:
        with self._translate_errors("set", key):
            self._client.set(self._full_key(key), self._encode(document))

    def update(self, key: str, fields: Document) -> None:
        full_key = self._full_key(key)

        def _merge(pipe: Pipeline) -> None:
            raw = pipe.get(full_key)
            if raw is None:
                raise RecordNotFoundError(
                    code="record_not_found",
                    message=f"Cannot update missing record '{key}'",
                    details={"key": key, "backend": "redis"},
                )
            merged = {**self._decode(key, raw), **fields}
            pipe.multi()
            pipe.set(full_key, self._encode(merged))

        # transaction() re-runs _merge whenever the watched key changes underneath.
        with self._translate_errors("update", key):
            self._client.transaction(_merge, full_key)

    def compare_and_set(self, key: str, document: Document, expected_version: str | None) -> bool:
        full_key = self._full_key(key)
        with self._translate_errors("compare_and_set", key):
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(full_key)
                    if _version_of(pipe.get(full_key)) != expected_version:
                        return False
                    pipe.multi()
                    pipe.set(full_key, self._encode(document))
                    pipe.execute()
                except WatchError:
                    return False
        return True

    def delete(self, key: str) -> None:
        with self._translate_errors("delete", key):
            self._client.delete(self._full_key(key))

    def now(self) -> datetime:
        with self._translate_errors("time"):
            seconds, microseconds = self._client.time()
        return datetime.fromtimestamp(int(seconds) + int(microseconds) / 1_000_000, tz=timezone.utc)
