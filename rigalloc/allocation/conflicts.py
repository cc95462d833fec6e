"""Conflict detection and resolution.

A conflict exists when a tracked unit is held by one job and requested by
another. The existing holder wins by default: nothing is reassigned until
someone resolves the conflict explicitly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rigalloc.logging import get_logger
from rigalloc.metrics import record_conflict
from rigalloc.models import Conflict, ConflictResolution, utc_now
from rigalloc.sync.events import ConflictsChanged, EventBus

if TYPE_CHECKING:
    from rigalloc.allocation.store import AllocationStore, Transition
    from rigalloc.models import Allocation

logger = get_logger(__name__)


def detect_conflict(
    store: AllocationStore,
    equipment_id: str,
    requested_job_id: str,
    requested_job_name: str | None = None,
) -> Conflict | None:
    """Return the conflict a request would cause, or ``None``.

    Pure over the store's current state.
    """
    current = store.get_allocation(equipment_id)
    if current is None or current.job_id == requested_job_id:
        return None
    return Conflict(
        equipment_id=equipment_id,
        equipment_name=store.describe(equipment_id),
        current_job_id=current.job_id,
        current_job_name=current.job_name,
        requested_job_id=requested_job_id,
        requested_job_name=requested_job_name or store.job_name(requested_job_id),
        timestamp=utc_now(),
    )


class ConflictRegistry:
    """Open conflicts, at most one per equipment id."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._conflicts: dict[str, Conflict] = {}

    def __len__(self) -> int:
        return len(self._conflicts)

    def __contains__(self, equipment_id: object) -> bool:
        return equipment_id in self._conflicts

    def list_conflicts(self) -> list[Conflict]:
        return list(self._conflicts.values())

    def get(self, equipment_id: str) -> Conflict | None:
        return self._conflicts.get(equipment_id)

    def add(self, conflict: Conflict) -> None:
        """Record a conflict, replacing any older one for the same unit."""
        replaced = conflict.equipment_id in self._conflicts
        self._conflicts[conflict.equipment_id] = conflict
        logger.warning(
            "conflict_detected",
            equipment_id=conflict.equipment_id,
            current_job_id=conflict.current_job_id,
            requested_job_id=conflict.requested_job_id,
            replaced=replaced,
        )
        record_conflict("detected")
        self._publish()

    def restore(self, conflict: Conflict) -> None:
        """Put back a conflict whose resolution could not be persisted.

        Not counted as a new detection.
        """
        self._conflicts[conflict.equipment_id] = conflict
        logger.info("conflict_restored", equipment_id=conflict.equipment_id)
        self._publish()

    def remove(self, equipment_id: str) -> Conflict | None:
        conflict = self._conflicts.pop(equipment_id, None)
        if conflict is not None:
            self._publish()
        return conflict

    def withdraw(self, equipment_id: str, job_id: str) -> bool:
        """Drop a conflict because the requesting job gave up its claim."""
        conflict = self._conflicts.get(equipment_id)
        if conflict is None or conflict.requested_job_id != job_id:
            return False
        self.remove(equipment_id)
        logger.info("conflict_withdrawn", equipment_id=equipment_id, job_id=job_id)
        record_conflict("withdrawn")
        return True

    def clear(self) -> None:
        if self._conflicts:
            self._conflicts.clear()
            self._publish()

    def revalidate(self, store: AllocationStore) -> list[Conflict]:
        """Re-run detection after reconciliation.

        Conflicts whose double-booking no longer exists are dropped; those
        whose holder changed are refreshed. Returns the dropped conflicts.
        """
        dropped: list[Conflict] = []
        changed = False
        for equipment_id, conflict in list(self._conflicts.items()):
            current = detect_conflict(
                store, equipment_id, conflict.requested_job_id, conflict.requested_job_name
            )
            if current is None:
                del self._conflicts[equipment_id]
                dropped.append(conflict)
                changed = True
            elif current.current_job_id != conflict.current_job_id:
                self._conflicts[equipment_id] = current
                changed = True

        if dropped:
            logger.info("conflicts_cleared_by_sync", equipment_ids=[c.equipment_id for c in dropped])
        if changed:
            self._publish()
        return dropped

    def _publish(self) -> None:
        if self._bus is not None:
            self._bus.publish(ConflictsChanged(conflicts=tuple(self._conflicts.values())))


def resolve(
    store: AllocationStore,
    registry: ConflictRegistry,
    conflict: Conflict,
    resolution: ConflictResolution,
) -> Transition[Allocation] | None:
    """Apply a resolution synchronously.

    ``CURRENT`` discards the request and returns ``None``. ``REQUESTED``
    releases the current holder and allocates to the requester in a single
    store transition, which the caller persists (and rolls back on failure).
    """
    transition = None
    if resolution is ConflictResolution.REQUESTED:
        transition = store.reassign(
            conflict.equipment_id,
            conflict.current_job_id,
            conflict.requested_job_id,
            conflict.requested_job_name,
        )
    registry.remove(conflict.equipment_id)
    logger.info(
        "conflict_resolved",
        equipment_id=conflict.equipment_id,
        resolution=resolution.value,
        holder=conflict.requested_job_id
        if resolution is ConflictResolution.REQUESTED
        else conflict.current_job_id,
    )
    record_conflict(f"resolved_{resolution.value}")
    return transition
