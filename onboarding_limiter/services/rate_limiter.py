"""Onboarding rate limiter backed by a shared record store.

Failed onboarding attempts are counted per chat in a record that every
process (webhook handler, worker) reads and writes through the store. A chat
moves through these states:

- Clean: no record.
- Accumulating: record with attempts below the threshold and no block.
- Blocked: blockedUntil lies in the future.

A block expires lazily: the next failure after blockedUntil starts a fresh
window. clear_rate_limit() returns any state to Clean.

By default writes are get-then-write, so two processes recording a failure
for the same chat at the same moment can lose one increment. Setting
atomic_updates switches to compare-and-set with bounded retries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Literal

from onboarding_limiter.adapters.store.base import AbstractRecordStore
from onboarding_limiter.core.errors import (
    ConcurrentUpdateError,
    RecordCorruptError,
    RecordNotFoundError,
)
from onboarding_limiter.schemas.rate_limit import RateLimitRecord, RateLimitStatus

logger = logging.getLogger(__name__)

Transition = Literal["created", "reset", "incremented", "blocked"]

# Fields touched by an increment; everything else stays as first written.
_INCREMENT_FIELDS = ("attempts", "lastAttemptAt", "blockedUntil")


def apply_failed_attempt(
    existing: RateLimitRecord | None,
    *,
    chat_id: int,
    now: datetime,
    max_attempts: int,
    block_duration: timedelta,
    extend_block_on_retry: bool = False,
) -> tuple[RateLimitRecord, Transition]:
    """Compute the record that results from one more failed attempt.

    Args:
        existing: Current record, or None when the chat is clean.
        chat_id: Chat identity.
        now: Store time of the attempt.
        max_attempts: Failures allowed before blocking.
        block_duration: Length of a block once triggered.
        extend_block_on_retry: Restart the block on failures while blocked.

    Returns:
        Tuple of (new_record, transition).
    """
    if existing is None:
        return RateLimitRecord.first_attempt(chat_id, now), "created"

    if existing.block_expired(now):
        return RateLimitRecord.first_attempt(chat_id, now), "reset"

    attempts = existing.attempts + 1
    blocked_until = existing.blocked_until
    if attempts >= max_attempts and (blocked_until is None or extend_block_on_retry):
        blocked_until = now + block_duration

    record = RateLimitRecord(
        chat_id=chat_id,
        attempts=attempts,
        first_attempt_at=existing.first_attempt_at,
        last_attempt_at=now,
        blocked_until=blocked_until,
    )
    transition: Transition = "blocked" if blocked_until != existing.blocked_until else "incremented"
    return record, transition


class OnboardingRateLimiter:
    """Throttle repeated failed onboarding attempts per chat.

    The limiter holds no per-chat state of its own; every call round-trips
    to the store so all processes see the same record.
    """

    def __init__(
        self,
        store: AbstractRecordStore,
        *,
        max_attempts: int = 3,
        block_duration: timedelta = timedelta(minutes=15),
        key_prefix: str = "onboard",
        atomic_updates: bool = False,
        max_retries: int = 5,
        extend_block_on_retry: bool = False,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared record store.
            max_attempts: Failures allowed before blocking.
            block_duration: How long a block lasts once triggered.
            key_prefix: Namespace for record keys.
            atomic_updates: Use compare-and-set instead of get-then-write.
            max_retries: Compare-and-set attempts per call (atomic mode only).
            extend_block_on_retry: Restart the block on every failure while blocked.

        Raises:
            ValueError: If thresholds are invalid.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if block_duration <= timedelta(0):
            raise ValueError("block_duration must be positive")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not key_prefix:
            raise ValueError("key_prefix must be a non-empty string")

        self._store = store
        self._max_attempts = max_attempts
        self._block_duration = block_duration
        self._key_prefix = key_prefix
        self._atomic_updates = atomic_updates
        self._max_retries = max_retries
        self._extend_block_on_retry = extend_block_on_retry

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def block_duration(self) -> timedelta:
        return self._block_duration

    def record_key(self, chat_id: int) -> str:
        """Derive the store key for a chat (e.g. "onboard_42")."""
        if isinstance(chat_id, bool) or not isinstance(chat_id, int):
            raise ValueError("chat_id must be an integer")
        return f"{self._key_prefix}_{chat_id}"

    def _read(self, key: str) -> tuple[RateLimitRecord | None, str | None, bool]:
        """Fetch and parse the record for key.

        Returns:
            Tuple of (record, version, corrupt). A corrupt record is reported
            as absent so the chat starts a fresh window rather than staying
            stuck behind a block it never earned.
        """
        try:
            document, version = self._store.get_versioned(key)
            if document is None:
                return None, None, False
            return RateLimitRecord.from_document(key, document), version, False
        except RecordCorruptError as exc:
            logger.warning(
                "rate_limit.record_corrupt",
                extra={"key": key, "error_code": exc.code, "error_message": exc.message},
            )
            return None, None, True

    def _next_record(
        self,
        existing: RateLimitRecord | None,
        chat_id: int,
        now: datetime,
    ) -> tuple[RateLimitRecord, Transition]:
        return apply_failed_attempt(
            existing,
            chat_id=chat_id,
            now=now,
            max_attempts=self._max_attempts,
            block_duration=self._block_duration,
            extend_block_on_retry=self._extend_block_on_retry,
        )

    def _log_transition(self, record: RateLimitRecord, transition: Transition) -> None:
        extra = {
            "chat_id": record.chat_id,
            "attempts": record.attempts,
            "max_attempts": self._max_attempts,
            "transition": transition,
        }
        if transition == "blocked":
            logger.warning(
                "rate_limit.blocked",
                extra={**extra, "blocked_until": record.blocked_until},
            )
        elif transition == "reset":
            logger.info("rate_limit.reset", extra=extra)
        else:
            logger.info("rate_limit.attempt_recorded", extra=extra)

    def record_failed_attempt(self, chat_id: int) -> None:
        """Record one failed onboarding attempt for chat_id.

        Always performs exactly one write to the store.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
            ConcurrentUpdateError: If atomic mode exhausts its retries.
        """
        key = self.record_key(chat_id)
        if self._atomic_updates:
            self._record_atomic(key, chat_id)
        else:
            self._record_unconditional(key, chat_id)

    def _record_unconditional(self, key: str, chat_id: int) -> None:
        existing, _, _ = self._read(key)
        now = self._store.now()
        record, transition = self._next_record(existing, chat_id, now)

        if transition in ("created", "reset"):
            self._store.set(key, record.to_document())
            self._log_transition(record, transition)
            return

        document = record.to_document()
        fields = {name: document[name] for name in _INCREMENT_FIELDS if name in document}
        try:
            self._store.update(key, fields)
        except RecordNotFoundError:
            # Cleared by another process between our read and write.
            record, transition = self._next_record(None, chat_id, now)
            self._store.set(key, record.to_document())
        self._log_transition(record, transition)

    def _record_atomic(self, key: str, chat_id: int) -> None:
        for attempt in range(1, self._max_retries + 1):
            existing, version, corrupt = self._read(key)
            now = self._store.now()
            record, transition = self._next_record(existing, chat_id, now)

            if corrupt:
                # No usable version token for an undecodable record; overwrite it.
                self._store.set(key, record.to_document())
                self._log_transition(record, transition)
                return

            if self._store.compare_and_set(key, record.to_document(), version):
                self._log_transition(record, transition)
                return

            logger.info(
                "rate_limit.cas_conflict",
                extra={"chat_id": chat_id, "attempt": attempt, "max_retries": self._max_retries},
            )

        raise ConcurrentUpdateError(
            code="concurrent_update",
            message=f"Could not record attempt for chat {chat_id} after {self._max_retries} retries",
            details={"key": key, "chat_id": chat_id, "retries": self._max_retries},
        )

    def clear_rate_limit(self, chat_id: int) -> None:
        """Delete the record for chat_id. Clearing a clean chat is a no-op.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        key = self.record_key(chat_id)
        self._store.delete(key)
        logger.info("rate_limit.cleared", extra={"chat_id": chat_id})

    def get_status(self, chat_id: int) -> RateLimitStatus:
        """Evaluate the current throttling state without mutating it.

        An expired block reads as a clean window, matching what the next
        record_failed_attempt() would do.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        key = self.record_key(chat_id)
        record, _, _ = self._read(key)
        if record is None:
            return RateLimitStatus.clean(chat_id, self._max_attempts)
        return RateLimitStatus.from_record(
            record,
            now=self._store.now(),
            max_attempts=self._max_attempts,
        )

    def is_rate_limited(self, chat_id: int) -> bool:
        """Return True while chat_id is blocked."""
        return self.get_status(chat_id).blocked
