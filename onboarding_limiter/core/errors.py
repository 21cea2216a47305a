"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling and logging in every process that shares the
rate limit store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and callers.

    Fields are optional to keep the shape stable across error types.
    """

    code: str
    message: str
    hint: str
    key: str
    chat_id: int
    backend: str
    retries: int
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class StoreAppError(AppError):
    """Base class for record store failures."""


class StoreUnavailableError(StoreAppError):
    """Raised when the record store cannot be reached or times out."""


class RecordNotFoundError(StoreAppError):
    """Raised when a partial update targets a record that does not exist."""


class RecordCorruptError(StoreAppError):
    """Raised when a stored record does not match the expected shape."""


class ConcurrentUpdateError(StoreAppError):
    """Raised when compare-and-set retries are exhausted."""
