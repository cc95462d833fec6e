"""SQL persistence adapter.

Stores inventory in the reference SQL database and publishes a
process-local change feed after every committed write. Writes made by
other processes are not observed; use ``sync_now`` for those.
"""

from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from rigalloc.adapters.base import ChangeCallback, PersistenceAdapter, Unsubscribe
from rigalloc.db import TABLES, close_db, get_session, init_db
from rigalloc.errors import AdapterError
from rigalloc.logging import get_logger
from rigalloc.models import ChangeEvent, ChangeEventType, Collection

logger = get_logger(__name__)


class SQLAdapter(PersistenceAdapter):
    """Adapter over the async SQLModel database."""

    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url
        self._subscribers: dict[Collection, list[ChangeCallback]] = defaultdict(list)

    async def initialize(self) -> None:
        """Create tables if needed."""
        await init_db(self.database_url)

    async def close(self) -> None:
        self._subscribers.clear()
        await close_db()

    async def fetch_snapshot(self, collection: Collection) -> list[dict[str, Any]]:
        _, table = TABLES[collection]
        try:
            async with get_session() as session:
                result = await session.execute(select(table))
                return [row.model_dump(mode="json") for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("snapshot_query_failed", collection=collection.value, error=str(e))
            raise AdapterError(f"Snapshot of '{collection.value}' failed: {e}") from e

    async def mutate(self, collection: Collection, row_id: str, patch: dict[str, Any] | None) -> None:
        model, table = TABLES[collection]
        try:
            async with get_session() as session:
                row = await session.get(table, row_id)
                if patch is None:
                    if row is None:
                        return
                    await session.delete(row)
                    event = ChangeEvent(collection, ChangeEventType.DELETE, row_id)
                else:
                    current = row.model_dump() if row is not None else {}
                    validated = model.model_validate({**current, **patch, "id": row_id})
                    if row is None:
                        row = table(**validated.model_dump())
                        session.add(row)
                        event_type = ChangeEventType.INSERT
                    else:
                        for name in model.model_fields:
                            setattr(row, name, getattr(validated, name))
                        event_type = ChangeEventType.UPDATE
                    event = ChangeEvent(collection, event_type, row_id, validated.model_dump(mode="json"))
        except (SQLAlchemyError, ValidationError) as e:
            logger.error("write_failed", collection=collection.value, row_id=row_id, error=str(e))
            raise AdapterError(f"Write to '{collection.value}/{row_id}' failed: {e}") from e

        self._publish(event)

    def subscribe_changes(self, collection: Collection, callback: ChangeCallback) -> Unsubscribe:
        self._subscribers[collection].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[collection]:
                self._subscribers[collection].remove(callback)

        return unsubscribe

    async def seed(self, collection: Collection, records: Iterable[dict[str, Any]]) -> int:
        """Upsert records, e.g. from a fixture file. Returns the count written."""
        count = 0
        for record in records:
            await self.mutate(collection, record["id"], record)
            count += 1
        logger.info("collection_seeded", collection=collection.value, count=count)
        return count

    def _publish(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers[event.collection]):
            callback(event)
