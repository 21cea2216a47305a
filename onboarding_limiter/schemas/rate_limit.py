"""Pydantic schemas for onboarding rate limit records."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, model_validator

from onboarding_limiter.core.errors import RecordCorruptError


class RateLimitRecord(BaseModel):
    """Persisted failed-attempt counter for one chat.

    The stored document uses camelCase field names so records written by any
    process sharing the store have the same shape.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    chat_id: int = Field(..., alias="chatId")
    attempts: int = Field(
        ...,
        ge=1,
        description="Failed onboarding attempts since the current window started.",
    )
    first_attempt_at: AwareDatetime = Field(..., alias="firstAttemptAt")
    last_attempt_at: AwareDatetime = Field(..., alias="lastAttemptAt")
    blocked_until: AwareDatetime | None = Field(
        None,
        alias="blockedUntil",
        description="When set and in the future, the chat is blocked.",
    )

    @model_validator(mode="after")
    def _check_block_after_last_attempt(self) -> "RateLimitRecord":
        if self.blocked_until is not None and self.blocked_until < self.last_attempt_at:
            raise ValueError("blockedUntil must not precede lastAttemptAt")
        return self

    @classmethod
    def first_attempt(cls, chat_id: int, now: datetime) -> "RateLimitRecord":
        """Build the record for the first failure of a fresh window."""
        return cls(
            chat_id=chat_id,
            attempts=1,
            first_attempt_at=now,
            last_attempt_at=now,
        )

    @classmethod
    def from_document(cls, key: str, document: dict[str, Any]) -> "RateLimitRecord":
        """Parse a stored document.

        Raises:
            RecordCorruptError: If the document does not match the record shape.
        """
        try:
            return cls.model_validate(document)
        except ValidationError as exc:
            raise RecordCorruptError(
                code="record_corrupt",
                message=f"Rate limit record '{key}' has an unexpected shape",
                details={"key": key, "context": {"errors": exc.errors(include_url=False)}},
            ) from exc

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def block_expired(self, now: datetime) -> bool:
        return self.blocked_until is not None and now >= self.blocked_until


@dataclass(frozen=True)
class RateLimitStatus:
    """Read-only view of a chat's throttling state.

    Attributes:
        chat_id: Chat identity the status refers to.
        blocked: Whether onboarding is currently throttled.
        attempts: Failed attempts in the current window (0 when clean).
        remaining_attempts: Failures left before a block is triggered.
        blocked_until: End of the active block, if any.
        retry_after_seconds: Seconds until the block ends (None when not blocked).
    """

    chat_id: int
    blocked: bool
    attempts: int
    remaining_attempts: int
    blocked_until: datetime | None = None
    retry_after_seconds: int | None = None

    @classmethod
    def clean(cls, chat_id: int, max_attempts: int) -> "RateLimitStatus":
        return cls(chat_id=chat_id, blocked=False, attempts=0, remaining_attempts=max_attempts)

    @classmethod
    def from_record(
        cls,
        record: RateLimitRecord,
        *,
        now: datetime,
        max_attempts: int,
    ) -> "RateLimitStatus":
        """Evaluate a record at ``now``; an expired block reads as a clean window."""
        if record.block_expired(now):
            return cls.clean(record.chat_id, max_attempts)

        blocked = record.is_blocked(now)
        retry_after = None
        if blocked and record.blocked_until is not None:
            retry_after = max(0, int(math.ceil((record.blocked_until - now).total_seconds())))

        return cls(
            chat_id=record.chat_id,
            blocked=blocked,
            attempts=record.attempts,
            remaining_attempts=max(0, max_attempts - record.attempts),
            blocked_until=record.blocked_until,
            retry_after_seconds=retry_after,
        )
