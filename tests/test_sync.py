"""Tests for optimistic suppression and the realtime sync coordinator."""

import asyncio

import pytest
import pytest_asyncio

from rigalloc.allocation import AllocationStore, ConflictRegistry
from rigalloc.errors import ConflictError
from rigalloc.models import (
    Availability,
    Collection,
    Mutation,
    SyncState,
    SyncStatus,
)
from rigalloc.sync import EventBus, OptimisticMutation, SuppressionRegistry, SyncStatusChanged
from rigalloc.sync.coordinator import SyncCoordinator

UNITS = Collection.INDIVIDUAL_EQUIPMENT
ITEMS = Collection.EQUIPMENT_ITEMS


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestSuppressionRegistry:
    """Tests for TTL-bounded suppression entries."""

    def test_suppressed_within_ttl(self, clock):
        registry = SuppressionRegistry(2.0, clock=clock)
        registry.register(UNITS, "unit-1")
        clock.advance(1.9)
        assert registry.is_suppressed(UNITS, "unit-1")

    def test_expires_after_ttl(self, clock):
        registry = SuppressionRegistry(2.0, clock=clock)
        registry.register(UNITS, "unit-1")
        clock.advance(2.0)
        assert not registry.is_suppressed(UNITS, "unit-1")
        assert len(registry) == 0

    def test_keyed_by_collection_and_row(self, clock):
        registry = SuppressionRegistry(2.0, clock=clock)
        registry.register(UNITS, "unit-1")
        assert not registry.is_suppressed(UNITS, "unit-2")
        assert not registry.is_suppressed(ITEMS, "unit-1")

    def test_register_extends_deadline(self, clock):
        registry = SuppressionRegistry(2.0, clock=clock)
        registry.register(UNITS, "unit-1")
        clock.advance(1.5)
        registry.register(UNITS, "unit-1")
        clock.advance(1.5)
        assert registry.is_suppressed(UNITS, "unit-1")

    def test_purge(self, clock):
        registry = SuppressionRegistry(1.0, clock=clock)
        registry.register(UNITS, "unit-1")
        registry.register(UNITS, "unit-2", ttl_seconds=5.0)
        clock.advance(2.0)
        assert registry.purge() == 1
        assert len(registry) == 1

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValueError):
            SuppressionRegistry(0)


@pytest_asyncio.fixture
async def coordinator(adapter, clock):
    """A started coordinator with short debounce windows and a fake suppression clock."""
    store = AllocationStore()
    coordinator = SyncCoordinator(
        adapter,
        store,
        conflicts=ConflictRegistry(),
        bus=EventBus(),
        suppression=SuppressionRegistry(1.0, clock=clock),
        debounce_seconds=0.04,
        individual_debounce_seconds=0.02,
    )
    await coordinator.start()
    yield coordinator
    await coordinator.stop()


@pytest.mark.asyncio
class TestSyncCoordinator:
    """Tests for the per-collection sync state machine."""

    async def test_initial_sync_loads_store(self, coordinator, adapter):
        assert coordinator.store.get_status("PG-001") is Availability.AVAILABLE
        assert all(adapter.fetch_calls[c] == 1 for c in Collection)
        assert coordinator.sync_status is SyncStatus.IDLE
        assert coordinator.last_sync_time is not None

    async def test_external_change_is_refetched(self, coordinator, adapter):
        adapter.external_write(UNITS, "unit-2", {"status": "deployed", "job_id": "job-9"})
        assert coordinator.state(UNITS) is SyncState.PENDING_REFETCH

        await coordinator.wait_idle()

        assert coordinator.store.get_status("PG-002") is Availability.DEPLOYED
        assert coordinator.store.get_allocation("PG-002").job_id == "job-9"

    async def test_burst_collapses_into_one_refetch(self, coordinator, adapter):
        for quantity in range(10, 15):
            adapter.external_write(ITEMS, "item-cable-yard", {"quantity": quantity})

        await coordinator.wait_idle()

        assert adapter.fetch_calls[ITEMS] == 2
        assert coordinator.store.available_quantity("type-cable", "loc-yard") == 14

    async def test_collections_debounce_independently(self, coordinator, adapter):
        adapter.external_write(ITEMS, "item-cable-yard", {"quantity": 3})
        adapter.external_write(UNITS, "unit-1", {"name": "Renamed"})

        await coordinator.wait_idle()

        assert adapter.fetch_calls[ITEMS] == 2
        assert adapter.fetch_calls[UNITS] == 2
        assert adapter.fetch_calls[Collection.EQUIPMENT_TYPES] == 1

    async def test_suppressed_within_ttl(self, coordinator, adapter):
        coordinator.suppression.register(UNITS, "unit-1")

        adapter.external_write(UNITS, "unit-1", {"status": "allocated", "job_id": "job-1"})
        await coordinator.wait_idle()

        assert adapter.fetch_calls[UNITS] == 1
        assert coordinator.state(UNITS) is SyncState.IDLE

    async def test_refetched_after_ttl(self, coordinator, adapter, clock):
        coordinator.suppression.register(UNITS, "unit-1")
        clock.advance(1.5)

        adapter.external_write(UNITS, "unit-1", {"status": "allocated", "job_id": "job-1"})
        await coordinator.wait_idle()

        assert adapter.fetch_calls[UNITS] == 2
        assert coordinator.store.get_allocation("PG-001").job_id == "job-1"

    async def test_optimistic_event_registers_suppression(self, coordinator):
        coordinator.bus.publish(OptimisticMutation(Mutation(UNITS, "unit-3", {"status": "available"})))
        assert coordinator.suppression.is_suppressed(UNITS, "unit-3")

    async def test_fetch_failure_keeps_state(self, coordinator, adapter):
        adapter.fail_collections.add(UNITS)
        adapter.external_write(UNITS, "unit-1", {"status": "deployed", "job_id": "job-9"})

        await coordinator.wait_idle()

        assert coordinator.store.get_status("PG-001") is Availability.AVAILABLE
        assert coordinator.store.contains("PG-002")
        assert coordinator.sync_status is SyncStatus.ERROR
        assert coordinator.state(UNITS) is SyncState.IDLE

        adapter.fail_collections.clear()
        report = await coordinator.sync_now()

        assert report.ok
        assert coordinator.sync_status is SyncStatus.IDLE
        assert coordinator.store.get_status("PG-001") is Availability.DEPLOYED

    async def test_change_during_refetch_marks_dirty(self, coordinator, adapter):
        adapter.latency = 0.05
        adapter.external_write(ITEMS, "item-cable-yard", {"quantity": 7})
        while coordinator.state(ITEMS) is not SyncState.REFETCHING:
            await asyncio.sleep(0.005)

        adapter.external_write(ITEMS, "item-cable-yard", {"quantity": 6})
        assert coordinator.state(ITEMS) is SyncState.REFETCHING

        await coordinator.wait_idle()

        assert adapter.fetch_calls[ITEMS] == 3
        assert coordinator.store.available_quantity("type-cable", "loc-yard") == 6

    async def test_refetch_revalidates_conflicts(self, coordinator, adapter):
        store = coordinator.store
        store.allocate("PG-001", "job-1")
        adapter.external_write(UNITS, "unit-1", {"status": "allocated", "job_id": "job-1"})
        await coordinator.wait_idle()
        with pytest.raises(ConflictError) as exc_info:
            store.allocate("PG-001", "job-2")
        coordinator.conflicts.add(exc_info.value.conflict)

        adapter.external_write(UNITS, "unit-1", {"status": "available", "job_id": None})
        await coordinator.wait_idle()

        assert len(coordinator.conflicts) == 0

    async def test_sync_now_cancels_pending_timer(self, coordinator, adapter):
        adapter.external_write(ITEMS, "item-cable-yard", {"quantity": 9})
        assert coordinator.state(ITEMS) is SyncState.PENDING_REFETCH

        report = await coordinator.sync_now()
        await asyncio.sleep(0.06)

        assert ITEMS in report.refreshed
        assert adapter.fetch_calls[ITEMS] == 2

    async def test_status_events(self, coordinator, adapter):
        statuses = []
        coordinator.bus.subscribe(SyncStatusChanged, lambda e: statuses.append(e.status))

        await coordinator.sync_now()

        assert statuses == [SyncStatus.SYNCING, SyncStatus.IDLE]

    async def test_stop_unsubscribes(self, coordinator, adapter):
        await coordinator.stop()

        assert not coordinator.is_running
        assert all(adapter.subscriber_count(c) == 0 for c in Collection)
        adapter.external_write(UNITS, "unit-1", {"name": "ignored"})
        assert coordinator.state(UNITS) is SyncState.IDLE

    async def test_refetch_keeps_in_flight_write(self, coordinator, adapter):
        store = coordinator.store
        transition = store.allocate("PG-001", "job-1")
        store.begin_write(transition)

        adapter.external_write(UNITS, "unit-2", {"name": "Renamed"})
        await coordinator.wait_idle()

        assert adapter.fetch_calls[UNITS] == 2
        assert store.get_allocation("PG-001").job_id == "job-1"
        store.end_write(transition)

    async def test_stop_cancels_running_refetch(self, coordinator, adapter):
        adapter.latency = 0.2
        adapter.external_write(UNITS, "unit-1", {"status": "deployed", "job_id": "job-9"})
        while coordinator.state(UNITS) is not SyncState.REFETCHING:
            await asyncio.sleep(0.005)

        await coordinator.stop()
        await asyncio.sleep(0.25)

        assert coordinator.store.get_status("PG-001") is Availability.AVAILABLE
        assert coordinator.refetch_counts[UNITS] == 1
        assert coordinator.state(UNITS) is SyncState.IDLE
        assert coordinator.sync_status is SyncStatus.IDLE

    async def test_start_is_idempotent(self, coordinator, adapter):
        assert await coordinator.start() is None
        assert adapter.subscriber_count(UNITS) == 1
