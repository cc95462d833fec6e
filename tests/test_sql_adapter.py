"""Tests for the SQL persistence adapter."""

import pytest
import pytest_asyncio

from rigalloc.adapters.sql import SQLAdapter
from rigalloc.db import close_db
from rigalloc.engine import AllocationEngine
from rigalloc.errors import AdapterError
from rigalloc.models import Availability, ChangeEventType, Collection

UNITS = Collection.INDIVIDUAL_EQUIPMENT
ITEMS = Collection.EQUIPMENT_ITEMS


@pytest_asyncio.fixture
async def sql_adapter(tmp_path, seed_data):
    """A fresh SQLite database file seeded with the test inventory."""
    await close_db()
    adapter = SQLAdapter(f"sqlite+aiosqlite:///{tmp_path / 'rigalloc.db'}")
    await adapter.initialize()
    for collection, records in seed_data.items():
        await adapter.seed(collection, records)
    yield adapter
    await adapter.close()


@pytest.mark.asyncio
class TestSQLAdapter:
    """Tests for snapshots, writes and the local change feed."""

    async def test_seed_and_fetch(self, sql_adapter):
        units = await sql_adapter.fetch_snapshot(UNITS)

        assert sorted(u["equipment_id"] for u in units) == ["PG-001", "PG-002", "PG-003", "PG-004"]
        by_id = {u["id"]: u for u in units}
        assert by_id["unit-4"]["status"] == "maintenance"

    async def test_update_merges_patch(self, sql_adapter):
        await sql_adapter.mutate(UNITS, "unit-1", {"status": "allocated", "job_id": "job-1"})

        row = {u["id"]: u for u in await sql_adapter.fetch_snapshot(UNITS)}["unit-1"]
        assert row["status"] == "allocated"
        assert row["job_id"] == "job-1"
        assert row["name"] == "Pressure Gauge 1"

    async def test_insert(self, sql_adapter):
        await sql_adapter.mutate(
            ITEMS,
            "alloc-1",
            {"type_id": "type-cable", "location_id": "loc-yard", "quantity": 3, "job_id": "job-1"},
        )

        items = {i["id"]: i for i in await sql_adapter.fetch_snapshot(ITEMS)}
        assert items["alloc-1"]["quantity"] == 3

    async def test_delete(self, sql_adapter):
        await sql_adapter.mutate(UNITS, "unit-2", None)
        await sql_adapter.mutate(UNITS, "unit-missing", None)

        ids = {u["id"] for u in await sql_adapter.fetch_snapshot(UNITS)}
        assert "unit-2" not in ids
        assert len(ids) == 3

    async def test_change_feed(self, sql_adapter):
        events = []
        unsubscribe = sql_adapter.subscribe_changes(UNITS, events.append)

        await sql_adapter.mutate(UNITS, "unit-1", {"notes": "recalibrated"})
        await sql_adapter.mutate(UNITS, "unit-1", None)
        unsubscribe()
        await sql_adapter.mutate(UNITS, "unit-2", None)

        assert [e.event_type for e in events] == [ChangeEventType.UPDATE, ChangeEventType.DELETE]
        assert events[0].payload["notes"] == "recalibrated"

    async def test_invalid_patch_raises_adapter_error(self, sql_adapter):
        with pytest.raises(AdapterError):
            await sql_adapter.mutate(ITEMS, "item-cable-yard", {"quantity": -1})

        items = {i["id"]: i for i in await sql_adapter.fetch_snapshot(ITEMS)}
        assert items["item-cable-yard"]["quantity"] == 20

    async def test_engine_over_sql(self, sql_adapter, settings):
        engine = AllocationEngine.create(sql_adapter, settings)
        await engine.start()
        try:
            await engine.allocate_equipment("PG-001", "job-1", "Job One")
            assert engine.get_equipment_status("PG-001") is Availability.ALLOCATED
        finally:
            await engine.stop()

        row = {u["id"]: u for u in await sql_adapter.fetch_snapshot(UNITS)}["unit-1"]
        assert row["status"] == "allocated"
        assert row["job_id"] == "job-1"
