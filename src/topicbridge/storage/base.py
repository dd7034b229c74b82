"""
Persistence backend contract used by the Mapping Store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..contracts.v1 import RECORD_KEY_FIELDS


class PersistenceStore(ABC):
    """
    Keyed record store.

    Records are `{type, data}` envelopes; `data[RECORD_KEY_FIELDS[type]]` is
    unique within a type and every write is an idempotent upsert on it.
    """

    def open(self) -> None:
        """Establish the connection / read backing state."""

    def close(self) -> None:
        """Release the connection."""

    def flush(self) -> None:
        """Make pending writes durable."""

    @abstractmethod
    def upsert(self, record_type: str, key: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def find_all(self, record_type: str) -> List[Dict[str, Any]]:
        """Return the `data` part of every record of a type."""
        pass

    @abstractmethod
    def delete(self, record_type: str, key: str) -> bool:
        """Delete one record. Returns True if it existed."""
        pass


def key_field(record_type: str) -> str:
    try:
        return RECORD_KEY_FIELDS[record_type]
    except KeyError:
        raise ValueError(f"unknown record type: {record_type}") from None
