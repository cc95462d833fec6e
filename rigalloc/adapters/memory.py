"""In-memory persistence adapter.

Behaves like a remote store with a change feed: every write is echoed to
subscribers the way a realtime channel would echo it. Failures and latency
can be injected per row or per collection, which makes it the adapter of
choice for tests and local demos.
"""

import asyncio
import copy
from collections import Counter, defaultdict
from collections.abc import Iterable
from typing import Any

from rigalloc.adapters.base import ChangeCallback, PersistenceAdapter, Unsubscribe
from rigalloc.errors import AdapterError
from rigalloc.logging import get_logger
from rigalloc.models import ChangeEvent, ChangeEventType, Collection, Mutation

logger = get_logger(__name__)


class InMemoryAdapter(PersistenceAdapter):
    """Dict-backed store with a synchronous change feed.

    Args:
        seed: Initial records per collection.
        echo: Whether the adapter's own writes are published on the feed.
        latency: Seconds to sleep inside every call.
    """

    def __init__(
        self,
        seed: dict[Collection, Iterable[dict[str, Any]]] | None = None,
        echo: bool = True,
        latency: float = 0.0,
    ) -> None:
        self.echo = echo
        self.latency = latency
        self.fail_ids: set[str] = set()
        self.fail_collections: set[Collection] = set()
        self.fetch_calls: Counter[Collection] = Counter()
        self.writes: list[Mutation] = []
        self._rows: dict[Collection, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscribers: dict[Collection, list[ChangeCallback]] = defaultdict(list)
        for collection, records in (seed or {}).items():
            for record in records:
                self._rows[collection][record["id"]] = dict(record)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def fetch_snapshot(self, collection: Collection) -> list[dict[str, Any]]:
        self.fetch_calls[collection] += 1
        await asyncio.sleep(self.latency)
        if collection in self.fail_collections:
            raise AdapterError(f"Snapshot of '{collection.value}' failed")
        return [copy.deepcopy(r) for r in self._rows[collection].values()]

    async def mutate(self, collection: Collection, row_id: str, patch: dict[str, Any] | None) -> None:
        await asyncio.sleep(self.latency)
        if row_id in self.fail_ids or collection in self.fail_collections:
            raise AdapterError(f"Write to '{collection.value}/{row_id}' failed")
        self.writes.append(Mutation(collection, row_id, patch))
        event = self._apply(collection, row_id, patch)
        if self.echo and event is not None:
            self.publish(event)

    def subscribe_changes(self, collection: Collection, callback: ChangeCallback) -> Unsubscribe:
        self._subscribers[collection].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[collection]:
                self._subscribers[collection].remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Simulation helpers
    # -------------------------------------------------------------------------

    def external_write(self, collection: Collection, row_id: str, patch: dict[str, Any] | None) -> ChangeEvent | None:
        """Change a row as another client would, and publish the change."""
        event = self._apply(collection, row_id, patch)
        if event is not None:
            self.publish(event)
        return event

    def publish(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers[event.collection]):
            callback(event)

    def rows(self, collection: Collection) -> dict[str, dict[str, Any]]:
        return self._rows[collection]

    def subscriber_count(self, collection: Collection) -> int:
        return len(self._subscribers[collection])

    def _apply(self, collection: Collection, row_id: str, patch: dict[str, Any] | None) -> ChangeEvent | None:
        rows = self._rows[collection]
        if patch is None:
            if rows.pop(row_id, None) is None:
                return None
            return ChangeEvent(collection, ChangeEventType.DELETE, row_id)
        event_type = ChangeEventType.UPDATE if row_id in rows else ChangeEventType.INSERT
        rows[row_id] = {**rows.get(row_id, {}), **patch, "id": row_id}
        return ChangeEvent(collection, event_type, row_id, copy.deepcopy(rows[row_id]))
