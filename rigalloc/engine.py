"""Allocation engine.

The facade UI code and the HTTP layer talk to. It owns no state of its
own: the store, the conflict registry and the sync coordinator are built
once (``AllocationEngine.create``) and injected, and every single-item
write follows the optimistic protocol: apply to the store, announce,
persist, roll back on failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from rigalloc.adapters.base import PersistenceAdapter
from rigalloc.allocation.conflicts import ConflictRegistry, resolve
from rigalloc.allocation.store import AllocationStore
from rigalloc.allocation.writer import TransitionWriter
from rigalloc.bulk.actions import BulkActions, BulkStatusUpdateParams, BulkTransferParams
from rigalloc.bulk.executor import BatchExecutor
from rigalloc.bulk.operations import AuditEntry, AuditTrail, BulkOperationManager
from rigalloc.config import Settings, get_settings
from rigalloc.errors import AdapterError, ConflictError, StaleReferenceError
from rigalloc.logging import get_logger
from rigalloc.models import (
    Allocation,
    AllocationStatus,
    Availability,
    BulkOperation,
    Conflict,
    ConflictResolution,
    SyncStatus,
)
from rigalloc.sync.coordinator import SyncCoordinator, SyncReport
from rigalloc.sync.events import EventBus

logger = get_logger(__name__)


class AllocationEngine:
    """Equipment allocation with conflict detection and realtime sync.

    Args:
        store: Allocation store shared with the coordinator.
        conflicts: Open conflict registry.
        coordinator: Sync coordinator; ``start()``/``stop()`` drive it.
        writer: Persists store transitions.
        bulk: Bulk actions bound to the same store.
        bus: Event bus UI collaborators subscribe to.
    """

    def __init__(
        self,
        store: AllocationStore,
        conflicts: ConflictRegistry,
        coordinator: SyncCoordinator,
        writer: TransitionWriter,
        bulk: BulkActions,
        bus: EventBus,
    ) -> None:
        self.store = store
        self.registry = conflicts
        self.coordinator = coordinator
        self.writer = writer
        self.bulk = bulk
        self.bus = bus

    @classmethod
    def create(
        cls,
        adapter: PersistenceAdapter,
        settings: Settings | None = None,
        bus: EventBus | None = None,
    ) -> AllocationEngine:
        """Wire an engine and its components around one adapter."""
        settings = settings or get_settings()
        bus = bus or EventBus()
        store = AllocationStore(bus)
        conflicts = ConflictRegistry(bus)
        coordinator = SyncCoordinator.from_settings(settings, adapter, store, conflicts, bus)
        writer = TransitionWriter(adapter, store, bus)
        bulk = BulkActions(
            store,
            conflicts,
            writer,
            BatchExecutor(settings.batch_size),
            BulkOperationManager(settings.operation_history_limit, bus),
            AuditTrail(settings.audit_limit),
        )
        return cls(store, conflicts, coordinator, writer, bulk, bus)

    async def start(self) -> SyncReport | None:
        return await self.coordinator.start()

    async def stop(self) -> None:
        await self.coordinator.stop()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_equipment_status(self, equipment_id: str) -> Availability:
        return self.store.get_status(equipment_id)

    def validate_equipment_availability(
        self, equipment_id: str, job_id: str, quantity: int | None = None
    ) -> bool:
        return self.store.validate_availability(equipment_id, job_id, quantity)

    def get_allocation(self, equipment_id: str) -> Allocation | None:
        return self.store.get_allocation(equipment_id)

    def get_job_equipment(self, job_id: str) -> list[str]:
        return self.store.get_job_equipment(job_id)

    @property
    def conflicts(self) -> list[Conflict]:
        return self.registry.list_conflicts()

    @property
    def sync_status(self) -> SyncStatus:
        return self.coordinator.sync_status

    @property
    def last_sync_time(self) -> datetime | None:
        return self.coordinator.last_sync_time

    # -------------------------------------------------------------------------
    # Single-item writes
    # -------------------------------------------------------------------------

    async def allocate_equipment(
        self,
        equipment_id: str,
        job_id: str,
        job_name: str | None = None,
        status: AllocationStatus = AllocationStatus.ALLOCATED,
        quantity: int | None = None,
    ) -> Allocation | None:
        """Allocate equipment to a job.

        Returns the allocation, or ``None`` when the id is unknown.

        Raises:
            ConflictError: Held by another job. The conflict is recorded
                before raising.
            CapacityError: Not enough bulk stock.
            UnavailableError: Maintenance, red-tagged or retired.
            AdapterError: The write failed; the store was rolled back.
        """
        try:
            transition = self.store.allocate(equipment_id, job_id, job_name, status, quantity)
        except ConflictError as e:
            self.registry.add(e.conflict)
            raise
        except StaleReferenceError:
            logger.warning("allocate_stale_reference", equipment_id=equipment_id, job_id=job_id)
            return None

        await self.writer.write(transition)
        # The requester now holds the unit, so any claim it had is settled
        self.registry.revalidate(self.store)
        return transition.result

    async def release_equipment(self, equipment_id: str, job_id: str) -> Allocation | None:
        """Release a hold if ``job_id`` is the holder.

        Returns the released allocation, or ``None`` when nothing changed.
        """
        try:
            transition = self.store.release(equipment_id, job_id)
        except StaleReferenceError:
            logger.warning("release_stale_reference", equipment_id=equipment_id, job_id=job_id)
            return None

        await self.writer.write(transition)
        self.registry.revalidate(self.store)
        return transition.result

    async def resolve_conflict(
        self,
        conflict: Conflict | str,
        resolution: ConflictResolution | str,
    ) -> Allocation | None:
        """Resolve an open conflict.

        ``current`` keeps the existing holder; ``requested`` moves the unit
        to the requesting job. Returns the resulting allocation, or ``None``
        when the conflict or the unit is unknown.

        Raises:
            ConflictError: A third job took the unit in the meantime.
            AdapterError: The reassignment could not be written; the store
                is rolled back and the conflict restored.
        """
        resolution = ConflictResolution(resolution)
        if isinstance(conflict, str):
            found = self.registry.get(conflict)
            if found is None:
                logger.warning("resolve_unknown_conflict", equipment_id=conflict)
                return None
            conflict = found

        try:
            transition = resolve(self.store, self.registry, conflict, resolution)
        except ConflictError as e:
            self.registry.add(e.conflict)
            raise
        except StaleReferenceError:
            logger.warning("resolve_stale_reference", equipment_id=conflict.equipment_id)
            self.registry.remove(conflict.equipment_id)
            return None

        if transition is not None:
            try:
                await self.writer.write(transition)
            except AdapterError:
                self.registry.restore(conflict)
                raise
        return self.store.get_allocation(conflict.equipment_id)

    def withdraw_conflict(self, equipment_id: str, job_id: str) -> bool:
        return self.registry.withdraw(equipment_id, job_id)

    async def sync_inventory_status(self) -> SyncReport:
        """Force a refetch of every collection."""
        return await self.coordinator.sync_now()

    # -------------------------------------------------------------------------
    # Bulk
    # -------------------------------------------------------------------------

    async def bulk_update_status(
        self, equipment_ids: Sequence[str], params: BulkStatusUpdateParams
    ) -> BulkOperation:
        return await self.bulk.bulk_update_status(equipment_ids, params)

    async def bulk_transfer_equipment(
        self, type_ids: Sequence[str], params: BulkTransferParams
    ) -> BulkOperation:
        return await self.bulk.bulk_transfer_equipment(type_ids, params)

    async def bulk_deploy_equipment(
        self, equipment_ids: Sequence[str], job_id: str, job_name: str | None = None
    ) -> BulkOperation:
        return await self.bulk.bulk_deploy_equipment(equipment_ids, job_id, job_name)

    async def bulk_return_equipment(self, equipment_ids: Sequence[str]) -> BulkOperation:
        return await self.bulk.bulk_return_equipment(equipment_ids)

    async def bulk_delete_equipment(self, equipment_ids: Sequence[str]) -> BulkOperation:
        return await self.bulk.bulk_delete_equipment(equipment_ids)

    @property
    def is_processing(self) -> bool:
        return self.bulk.operations.is_processing

    def operation_history(self) -> list[BulkOperation]:
        return self.bulk.operations.history()

    def clear_completed_operations(self) -> int:
        return self.bulk.operations.clear_completed()

    def audit_log(self, limit: int = 50) -> list[AuditEntry]:
        return self.bulk.audit.recent(limit)
