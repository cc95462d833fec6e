"""Exceptions raised by the allocation engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rigalloc.models import Conflict


class AllocationError(Exception):
    """Base exception for allocation engine errors."""

    pass


class ConflictError(AllocationError):
    """Raised when a unit is already held by a different job."""

    def __init__(self, conflict: Conflict):
        self.conflict = conflict
        super().__init__(
            f"Equipment '{conflict.equipment_id}' is held by job "
            f"'{conflict.current_job_id}', requested by '{conflict.requested_job_id}'"
        )


class CapacityError(AllocationError):
    """Raised when a bulk request exceeds the available quantity."""

    def __init__(self, equipment_id: str, requested: int, available: int):
        self.equipment_id = equipment_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Requested {requested} of '{equipment_id}' but only {available} available"
        )


class UnavailableError(AllocationError):
    """Raised when a unit is in maintenance, red-tagged or retired."""

    def __init__(self, equipment_id: str, status: str):
        self.equipment_id = equipment_id
        self.status = status
        super().__init__(f"Equipment '{equipment_id}' is not available (status: {status})")


class StaleReferenceError(AllocationError):
    """Raised when a mutation targets an id the store no longer knows."""

    def __init__(self, equipment_id: str):
        self.equipment_id = equipment_id
        super().__init__(f"Equipment '{equipment_id}' is not known to the allocation store")


class AdapterError(AllocationError):
    """Raised when the persistence adapter fails a request."""

    pass
