"""Record store interface.

The limiter depends on this abstraction (not a concrete backend) so the
storage layer can be swapped without touching the state machine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

Document = dict[str, Any]


class AbstractRecordStore(ABC):
    """Interface for key/document stores shared across processes."""

    @abstractmethod
    def get(self, key: str) -> Document | None:
        """Fetch a document.

        Args:
            key: Record key (e.g., "onboard_42").

        Returns:
            A copy of the stored document, or None when absent.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
            RecordCorruptError: If the stored payload cannot be decoded.
        """
        raise NotImplementedError

    @abstractmethod
    def get_versioned(self, key: str) -> tuple[Document | None, str | None]:
        """Fetch a document together with an opaque version token.

        The token is passed back to compare_and_set(). Absent records have
        a None token.
        """
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, document: Document) -> None:
        """Create or fully replace a document."""
        raise NotImplementedError

    @abstractmethod
    def update(self, key: str, fields: Document) -> None:
        """Merge fields onto an existing document.

        Raises:
            RecordNotFoundError: If no document exists under key.
        """
        raise NotImplementedError

    @abstractmethod
    def compare_and_set(self, key: str, document: Document, expected_version: str | None) -> bool:
        """Replace a document only if it is still at expected_version.

        Args:
            key: Record key.
            document: Full replacement document.
            expected_version: Token from get_versioned(); None means
                "only if the record is still absent".

        Returns:
            True if written, False if another writer got there first.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a document. Deleting an absent key is not an error."""
        raise NotImplementedError

    @abstractmethod
    def now(self) -> datetime:
        """Return the store's authoritative current time (timezone-aware UTC)."""
        raise NotImplementedError
