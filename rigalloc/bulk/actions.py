"""Multi-item inventory actions.

Each action creates a bulk operation record, applies one store transition
per item and persists it through the transition writer, all under the
batch executor. Item failures are counted and never abort the run.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from rigalloc.allocation.conflicts import ConflictRegistry
from rigalloc.allocation.store import AllocationStore
from rigalloc.allocation.writer import TransitionWriter
from rigalloc.bulk.executor import BatchExecutor
from rigalloc.bulk.operations import AuditAction, AuditTrail, BulkOperationManager
from rigalloc.errors import ConflictError
from rigalloc.logging import get_logger
from rigalloc.metrics import record_batch
from rigalloc.models import (
    HOLDING_STATUSES,
    AllocationStatus,
    BulkOperation,
    BulkOperationType,
    EquipmentStatus,
)

logger = get_logger(__name__)


class BulkStatusUpdateParams(BaseModel):
    """Status to apply to every selected record."""

    new_status: EquipmentStatus
    reason: str | None = None

    @field_validator("new_status")
    @classmethod
    def status_without_job(cls, v: EquipmentStatus) -> EquipmentStatus:
        if v in HOLDING_STATUSES:
            raise ValueError(f"'{v.value}' requires a job; use bulk deploy instead")
        return v


class BulkTransferParams(BaseModel):
    """Quantity of each selected type to move between two locations."""

    from_location_id: str
    to_location_id: str
    quantity: int = Field(gt=0)

    @model_validator(mode="after")
    def distinct_locations(self) -> BulkTransferParams:
        if self.from_location_id == self.to_location_id:
            raise ValueError("Source and destination locations must differ")
        return self


class BulkActions:
    """Bulk status updates, transfers, deployments, returns and deletes."""

    def __init__(
        self,
        store: AllocationStore,
        conflicts: ConflictRegistry,
        writer: TransitionWriter,
        executor: BatchExecutor,
        operations: BulkOperationManager,
        audit: AuditTrail,
    ) -> None:
        self.store = store
        self.conflicts = conflicts
        self.writer = writer
        self.executor = executor
        self.operations = operations
        self.audit = audit

    async def bulk_update_status(
        self, equipment_ids: Sequence[str], params: BulkStatusUpdateParams
    ) -> BulkOperation:
        async def apply(equipment_id: str) -> None:
            before = self.store.get_status(equipment_id).value
            await self.writer.write(self.store.set_status(equipment_id, params.new_status, params.reason))
            self.audit.add(
                AuditAction.MODIFY,
                self._entity_type(equipment_id),
                equipment_id,
                before=before,
                after=params.new_status.value,
                reason=params.reason,
            )

        return await self._run(
            BulkOperationType.UPDATE_STATUS,
            self._known(equipment_ids),
            params.model_dump(mode="json"),
            apply,
        )

    async def bulk_transfer_equipment(
        self, type_ids: Sequence[str], params: BulkTransferParams
    ) -> BulkOperation:
        """Transfer ``params.quantity`` of every listed type."""

        async def apply(type_id: str) -> None:
            await self.writer.write(
                self.store.transfer_quantity(
                    type_id, params.from_location_id, params.to_location_id, params.quantity
                )
            )
            self.audit.add(
                AuditAction.TRANSFER,
                "equipment_type",
                type_id,
                from_location_id=params.from_location_id,
                to_location_id=params.to_location_id,
                quantity=params.quantity,
            )

        return await self._run(
            BulkOperationType.TRANSFER, list(type_ids), params.model_dump(mode="json"), apply
        )

    async def bulk_deploy_equipment(
        self,
        equipment_ids: Sequence[str],
        job_id: str,
        job_name: str | None = None,
    ) -> BulkOperation:
        """Deploy every listed unit to a job.

        Units held by another job fail with a recorded conflict; the rest
        of the batch still deploys.
        """

        async def apply(equipment_id: str) -> None:
            try:
                transition = self.store.allocate(
                    equipment_id, job_id, job_name, AllocationStatus.DEPLOYED
                )
            except ConflictError as e:
                self.conflicts.add(e.conflict)
                raise
            await self.writer.write(transition)
            self.audit.add(
                AuditAction.DEPLOY,
                self._entity_type(equipment_id),
                equipment_id,
                job_id=job_id,
                quantity=transition.result.quantity,
            )

        return await self._run(
            BulkOperationType.DEPLOY,
            self._known(equipment_ids),
            {"job_id": job_id, "job_name": job_name},
            apply,
        )

    async def bulk_return_equipment(self, equipment_ids: Sequence[str]) -> BulkOperation:
        """Release every listed hold and send tracked units to the default location."""
        default = self.store.default_location()

        async def apply(equipment_id: str) -> None:
            entity_type = self._entity_type(equipment_id)
            allocation = self.store.get_allocation(equipment_id)
            location_id = None
            if default is not None and entity_type == "individual_equipment":
                location_id = default.id
            # Release and relocation land in one row update
            if allocation is not None:
                await self.writer.write(self.store.release(equipment_id, allocation.job_id, location_id))
            elif location_id is not None:
                await self.writer.write(self.store.move_to_location(equipment_id, location_id))
            self.audit.add(
                AuditAction.RETURN,
                entity_type,
                equipment_id,
                job_id=allocation.job_id if allocation else None,
                location_id=default.id if default else None,
            )

        return await self._run(
            BulkOperationType.RETURN,
            self._known(equipment_ids),
            {"location_id": default.id if default else None},
            apply,
        )

    async def bulk_delete_equipment(self, equipment_ids: Sequence[str]) -> BulkOperation:
        async def apply(equipment_id: str) -> None:
            entity_type = self._entity_type(equipment_id)
            await self.writer.write(self.store.delete(equipment_id))
            self.audit.add(AuditAction.DELETE, entity_type, equipment_id)

        return await self._run(BulkOperationType.DELETE, self._known(equipment_ids), {}, apply)

    async def _run(
        self,
        operation_type: BulkOperationType,
        items: list[str],
        params: dict[str, Any],
        apply: Callable[[str], Awaitable[None]],
    ) -> BulkOperation:
        operation = self.operations.create(operation_type, items, params)
        self.operations.start(operation.id)
        start = time.perf_counter()
        try:
            result = await self.executor.run(items, apply)
        except Exception as e:
            logger.exception("bulk_operation_crashed", operation_id=operation.id)
            return self.operations.fail(operation.id, str(e))
        finally:
            # Returns, deletes and status changes can end a double-booking
            self.conflicts.revalidate(self.store)

        record_batch(
            operation_type.value,
            result.success_count,
            result.failure_count,
            time.perf_counter() - start,
        )
        return self.operations.complete(operation.id, result)

    def _known(self, equipment_ids: Sequence[str]) -> list[str]:
        known = []
        for equipment_id in dict.fromkeys(equipment_ids):
            if self.store.contains(equipment_id):
                known.append(equipment_id)
            else:
                logger.warning("bulk_item_stale", equipment_id=equipment_id)
        return known

    def _entity_type(self, equipment_id: str) -> str:
        return "individual_equipment" if self.store.is_unit(equipment_id) else "equipment_item"
