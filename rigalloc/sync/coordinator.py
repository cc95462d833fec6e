"""Realtime sync coordinator.

Each watched collection runs a small state machine::

    IDLE --notification--> PENDING_REFETCH --debounce elapsed--> REFETCHING --> IDLE

A notification restarts the debounce timer, so a burst collapses into one
refetch. A notification that arrives while the collection is being
refetched marks it dirty and schedules another pass once the fetch ends.
Notifications for rows this client just wrote are dropped while their
optimistic suppression entry is alive.

A failed fetch leaves the store untouched: stale but consistent beats
empty. A snapshot that raced one of this client's own writes gets that
write re-applied by the store, since its echo will be suppressed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rigalloc.adapters.base import PersistenceAdapter, Unsubscribe
from rigalloc.allocation.conflicts import ConflictRegistry
from rigalloc.allocation.store import AllocationStore
from rigalloc.config import Settings
from rigalloc.errors import AdapterError
from rigalloc.logging import get_logger
from rigalloc.metrics import record_refetch, record_suppressed
from rigalloc.models import ChangeEvent, Collection, SyncState, SyncStatus, utc_now
from rigalloc.sync.events import EventBus, OptimisticMutation, SyncStatusChanged
from rigalloc.sync.suppression import SuppressionRegistry

logger = get_logger(__name__)

# Reference data first so bulk records can be named on load
COLLECTION_ORDER = (
    Collection.EQUIPMENT_TYPES,
    Collection.STORAGE_LOCATIONS,
    Collection.EQUIPMENT_ITEMS,
    Collection.INDIVIDUAL_EQUIPMENT,
)


@dataclass
class SyncReport:
    """Outcome of a forced reconciliation."""

    refreshed: list[Collection] = field(default_factory=list)
    failed: list[Collection] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


class SyncCoordinator:
    """Keeps an ``AllocationStore`` reconciled with the authoritative store.

    Construct once at startup and inject; ``start()`` subscribes to the
    change feed and ``stop()`` tears everything down.

    Args:
        adapter: Persistence adapter providing snapshots and the change feed.
        store: Store to load snapshots into.
        conflicts: Open conflicts, revalidated after every refetch.
        bus: Event bus; ``OptimisticMutation`` events register suppression.
        suppression: Suppression registry (created from ``suppression_ttl`` if omitted).
        debounce_seconds: Debounce window for most collections.
        individual_debounce_seconds: Shorter window for tracked units.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        store: AllocationStore,
        conflicts: ConflictRegistry | None = None,
        bus: EventBus | None = None,
        suppression: SuppressionRegistry | None = None,
        debounce_seconds: float = 0.3,
        individual_debounce_seconds: float = 0.15,
        suppression_ttl: float = 2.0,
        collections: tuple[Collection, ...] = COLLECTION_ORDER,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.conflicts = conflicts if conflicts is not None else ConflictRegistry(bus)
        self.bus = bus if bus is not None else EventBus()
        self.suppression = suppression if suppression is not None else SuppressionRegistry(suppression_ttl)
        self.collections = collections
        self._windows = {c: debounce_seconds for c in collections}
        if Collection.INDIVIDUAL_EQUIPMENT in self._windows:
            self._windows[Collection.INDIVIDUAL_EQUIPMENT] = individual_debounce_seconds

        self._states: dict[Collection, SyncState] = {c: SyncState.IDLE for c in collections}
        self._timers: dict[Collection, asyncio.Task[None]] = {}
        self._refetching: set[asyncio.Task[Any]] = set()
        self._dirty: set[Collection] = set()
        self._unsubscribers: list[Unsubscribe] = []
        self._running = False
        self._status = SyncStatus.IDLE
        self._failed: set[Collection] = set()
        self._full_sync = False
        self.last_sync_time: datetime | None = None
        self.refetch_counts: dict[Collection, int] = {c: 0 for c in collections}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        adapter: PersistenceAdapter,
        store: AllocationStore,
        conflicts: ConflictRegistry | None = None,
        bus: EventBus | None = None,
    ) -> SyncCoordinator:
        return cls(
            adapter,
            store,
            conflicts=conflicts,
            bus=bus,
            debounce_seconds=settings.debounce_ms / 1000,
            individual_debounce_seconds=settings.individual_debounce_ms / 1000,
            suppression_ttl=settings.suppression_ttl_seconds,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sync_status(self) -> SyncStatus:
        return self._status

    def state(self, collection: Collection) -> SyncState:
        return self._states[collection]

    async def start(self, initial_sync: bool = True) -> SyncReport | None:
        """Subscribe to the change feed and optionally load every collection."""
        if self._running:
            return None
        self._running = True
        for collection in self.collections:
            self._unsubscribers.append(self.adapter.subscribe_changes(collection, self.notify))
        self._unsubscribers.append(self.bus.subscribe(OptimisticMutation, self._on_optimistic))
        logger.info("sync_started", collections=[c.value for c in self.collections])
        if initial_sync:
            return await self.sync_now()
        return None

    async def stop(self) -> None:
        """Unsubscribe and cancel pending timers and running refetches."""
        if not self._running:
            return
        self._running = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        tasks = [*self._timers.values(), *self._refetching]
        self._timers.clear()
        self._refetching.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._dirty.clear()
        self.suppression.clear()
        self._states = {c: SyncState.IDLE for c in self.collections}
        self._set_status(SyncStatus.ERROR if self._failed else SyncStatus.IDLE)
        logger.info("sync_stopped")

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    def notify(self, event: ChangeEvent) -> None:
        """Change-feed callback."""
        if not self._running or event.collection not in self._states:
            return
        if self.suppression.is_suppressed(event.collection, event.id):
            logger.debug(
                "notification_suppressed",
                collection=event.collection.value,
                row_id=event.id,
                event_type=event.event_type.value,
            )
            record_suppressed(event.collection.value)
            return
        if self._states[event.collection] is SyncState.REFETCHING:
            self._dirty.add(event.collection)
            return
        self._schedule(event.collection)

    async def wait_idle(self) -> None:
        """Wait until no collection has a pending or running refetch."""
        while self._timers or any(s is not SyncState.IDLE for s in self._states.values()):
            await asyncio.sleep(0.005)

    async def sync_now(self) -> SyncReport:
        """Refetch every collection immediately, cancelling pending timers."""
        for collection, task in list(self._timers.items()):
            task.cancel()
            self._timers.pop(collection, None)
            self._states[collection] = SyncState.IDLE

        start = time.perf_counter()
        outcomes = []
        self._full_sync = True
        try:
            for collection in self.collections:
                outcomes.append(await self._refetch(collection))
        finally:
            self._full_sync = False
        self._set_status(SyncStatus.ERROR if self._failed else SyncStatus.IDLE)

        report = SyncReport(
            refreshed=[c for c, ok in zip(self.collections, outcomes) if ok],
            failed=[c for c, ok in zip(self.collections, outcomes) if not ok],
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            "sync_completed",
            refreshed=[c.value for c in report.refreshed],
            failed=[c.value for c in report.failed],
            duration_ms=report.duration_ms,
        )
        return report

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _on_optimistic(self, event: OptimisticMutation) -> None:
        self.suppression.register(event.mutation.collection, event.mutation.id)

    def _schedule(self, collection: Collection) -> None:
        pending = self._timers.pop(collection, None)
        if pending is not None:
            pending.cancel()
        self._states[collection] = SyncState.PENDING_REFETCH
        self._timers[collection] = asyncio.get_running_loop().create_task(self._debounced(collection))

    async def _debounced(self, collection: Collection) -> None:
        await asyncio.sleep(self._windows[collection])
        self._timers.pop(collection, None)
        task = asyncio.current_task()
        if task is not None:
            self._refetching.add(task)
        try:
            await self._refetch(collection)
        finally:
            self._refetching.discard(task)

    async def _refetch(self, collection: Collection) -> bool:
        self._states[collection] = SyncState.REFETCHING
        self._set_status(SyncStatus.SYNCING)
        start = time.perf_counter()
        ok = False
        mark = self.store.begin_fetch()
        try:
            records = await self.adapter.fetch_snapshot(collection)
        except AdapterError as e:
            logger.warning("refetch_failed", collection=collection.value, error=str(e))
        except Exception:
            logger.exception("refetch_crashed", collection=collection.value)
        else:
            self.store.load_snapshot(collection, records, since=mark)
            self.conflicts.revalidate(self.store)
            self.last_sync_time = utc_now()
            self.refetch_counts[collection] += 1
            ok = True
        finally:
            self.store.end_fetch()
            self._states[collection] = SyncState.IDLE

        duration = time.perf_counter() - start
        record_refetch(collection.value, "success" if ok else "error", duration)
        if ok:
            self._failed.discard(collection)
        else:
            self._failed.add(collection)

        if collection in self._dirty and self._running:
            self._dirty.discard(collection)
            self._schedule(collection)

        if not self._full_sync and not any(s is SyncState.REFETCHING for s in self._states.values()):
            self._set_status(SyncStatus.ERROR if self._failed else SyncStatus.IDLE)
        return ok

    def _set_status(self, status: SyncStatus) -> None:
        if status is not self._status:
            self._status = status
            self.bus.publish(SyncStatusChanged(status=status))
