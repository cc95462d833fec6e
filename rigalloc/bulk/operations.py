"""Bulk operation records and the audit trail.

Bulk operations move ``pending -> processing -> completed | failed``. An
operation whose executor ran to the end is ``completed`` even if some items
failed; the per-item outcome lives in its success/failure counts.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rigalloc.bulk.executor import BatchResult
from rigalloc.logging import get_logger
from rigalloc.models import (
    BulkOperation,
    BulkOperationStatus,
    BulkOperationType,
    generate_id,
    utc_now,
)
from rigalloc.sync.events import BulkOperationUpdated, EventBus

logger = get_logger(__name__)

_ALLOWED = {
    BulkOperationStatus.PENDING: {BulkOperationStatus.PROCESSING, BulkOperationStatus.FAILED},
    BulkOperationStatus.PROCESSING: {BulkOperationStatus.COMPLETED, BulkOperationStatus.FAILED},
    BulkOperationStatus.COMPLETED: set(),
    BulkOperationStatus.FAILED: set(),
}


class BulkOperationManager:
    """Owns bulk operation records and their bounded history."""

    def __init__(self, history_limit: int = 100, bus: EventBus | None = None) -> None:
        self.history_limit = history_limit
        self._bus = bus
        self._operations: dict[str, BulkOperation] = {}

    @property
    def is_processing(self) -> bool:
        return any(op.status is BulkOperationStatus.PROCESSING for op in self._operations.values())

    def create(
        self,
        operation_type: BulkOperationType,
        equipment_ids: list[str],
        params: dict[str, Any] | None = None,
    ) -> BulkOperation:
        operation = BulkOperation(
            id=generate_id("bulk"),
            type=operation_type,
            equipment_ids=list(equipment_ids),
            params=dict(params or {}),
            created_at=utc_now(),
        )
        self._operations[operation.id] = operation
        self._evict()
        logger.info(
            "bulk_operation_created",
            operation_id=operation.id,
            operation_type=operation_type.value,
            items=len(equipment_ids),
        )
        self._publish(operation)
        return operation.model_copy(deep=True)

    def get(self, operation_id: str) -> BulkOperation | None:
        operation = self._operations.get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    def start(self, operation_id: str) -> BulkOperation:
        return self._transition(operation_id, BulkOperationStatus.PROCESSING)

    def complete(self, operation_id: str, result: BatchResult[Any]) -> BulkOperation:
        return self._transition(
            operation_id,
            BulkOperationStatus.COMPLETED,
            success_count=result.success_count,
            failure_count=result.failure_count,
            duration_ms=result.duration_ms,
            failures={str(f.item): f.error for f in result.failures},
        )

    def fail(self, operation_id: str, error: str) -> BulkOperation:
        return self._transition(operation_id, BulkOperationStatus.FAILED, error=error)

    def history(self) -> list[BulkOperation]:
        """All retained operations, newest first."""
        return [op.model_copy(deep=True) for op in reversed(self._operations.values())]

    def clear_completed(self) -> int:
        """Drop terminal operations; pending and processing ones stay."""
        terminal = [op_id for op_id, op in self._operations.items() if op.is_terminal]
        for op_id in terminal:
            del self._operations[op_id]
        logger.info("bulk_operations_cleared", removed=len(terminal))
        return len(terminal)

    def _transition(self, operation_id: str, status: BulkOperationStatus, **changes: Any) -> BulkOperation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise KeyError(f"Bulk operation '{operation_id}' not found")
        if status not in _ALLOWED[operation.status]:
            raise ValueError(
                f"Bulk operation '{operation_id}' cannot move from "
                f"{operation.status.value} to {status.value}"
            )
        if status in (BulkOperationStatus.COMPLETED, BulkOperationStatus.FAILED):
            changes["completed_at"] = utc_now()
        updated = operation.model_copy(update={"status": status, **changes})
        self._operations[operation_id] = updated
        logger.info(
            "bulk_operation_status",
            operation_id=operation_id,
            status=status.value,
            error=changes.get("error"),
        )
        self._publish(updated)
        return updated.model_copy(deep=True)

    def _evict(self) -> None:
        overflow = len(self._operations) - self.history_limit
        if overflow <= 0:
            return
        for op_id in [op_id for op_id, op in self._operations.items() if op.is_terminal][:overflow]:
            del self._operations[op_id]

    def _publish(self, operation: BulkOperation) -> None:
        if self._bus is not None:
            self._bus.publish(BulkOperationUpdated(operation=operation.model_copy(deep=True)))


# =============================================================================
# Audit trail
# =============================================================================


class AuditAction(str, Enum):
    DEPLOY = "deploy"
    RETURN = "return"
    TRANSFER = "transfer"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass(frozen=True)
class AuditEntry:
    """What a bulk action did to one entity."""

    action: AuditAction
    entity_type: str
    entity_id: str
    details: dict[str, Any] = field(default_factory=dict)
    source: str = "manual"
    id: str = field(default_factory=lambda: generate_id("audit"))
    timestamp: datetime = field(default_factory=utc_now)


class AuditTrail:
    """Newest-first, bounded log of audit entries."""

    def __init__(self, limit: int = 1000) -> None:
        self._entries: deque[AuditEntry] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        source: str = "manual",
        **details: Any,
    ) -> AuditEntry:
        entry = AuditEntry(action, entity_type, entity_id, details=details, source=source)
        self._entries.appendleft(entry)
        return entry

    def recent(self, limit: int = 50) -> list[AuditEntry]:
        return list(self._entries)[:limit]

    def for_entity(self, entity_type: str, entity_id: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.entity_type == entity_type and e.entity_id == entity_id]

    def by_action(self, action: AuditAction) -> list[AuditEntry]:
        return [e for e in self._entries if e.action is action]
