"""Persistence adapter contract.

The engine never talks to storage directly. Whatever sits behind this
contract (REST, GraphQL, a database driver) must offer per-collection
snapshots, per-row writes and a change feed.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from rigalloc.models import ChangeEvent, Collection

ChangeCallback = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


class PersistenceAdapter(ABC):
    """Authoritative store as seen by the allocation engine."""

    @abstractmethod
    async def fetch_snapshot(self, collection: Collection) -> list[dict[str, Any]]:
        """Return every record of a collection.

        Raises:
            AdapterError: The store could not be reached.
        """

    @abstractmethod
    async def mutate(self, collection: Collection, row_id: str, patch: dict[str, Any] | None) -> None:
        """Insert, update (``patch`` merged into the row) or delete (``patch is None``).

        Raises:
            AdapterError: The write was rejected or the store is unreachable.
        """

    @abstractmethod
    def subscribe_changes(self, collection: Collection, callback: ChangeCallback) -> Unsubscribe:
        """Deliver remote changes to ``callback`` until unsubscribed.

        Delivery is at-least-once and unordered across collections.
        """

    async def close(self) -> None:
        """Release connections. Optional."""
        return None
