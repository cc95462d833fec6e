"""HTTP request and response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from rigalloc.bulk.actions import BulkStatusUpdateParams, BulkTransferParams
from rigalloc.models import (
    Allocation,
    AllocationStatus,
    Availability,
    BulkOperation,
    Conflict,
    ConflictResolution,
    SyncStatus,
)


class EquipmentStatusResponse(BaseModel):
    """Current status of one equipment id."""

    equipment_id: str
    status: Availability
    allocation: Allocation | None = None


class AvailabilityResponse(BaseModel):
    """Whether an allocation request would be accepted now."""

    equipment_id: str
    job_id: str
    available: bool


class AllocateRequest(BaseModel):
    """Request to allocate equipment to a job."""

    equipment_id: str = Field(..., description="Tracked unit id (e.g. PG-003) or bulk record id")
    job_id: str
    job_name: str | None = None
    status: AllocationStatus = AllocationStatus.ALLOCATED
    quantity: int | None = Field(default=None, gt=0, description="Bulk quantity; whole record if omitted")


class ReleaseResponse(BaseModel):
    """Outcome of a release request."""

    equipment_id: str
    released: bool
    allocation: Allocation | None = None


class JobEquipmentResponse(BaseModel):
    job_id: str
    equipment_ids: list[str]


class ConflictListResponse(BaseModel):
    conflicts: list[Conflict]
    count: int


class ResolveConflictRequest(BaseModel):
    resolution: ConflictResolution


class ResolveConflictResponse(BaseModel):
    equipment_id: str
    resolution: ConflictResolution
    allocation: Allocation | None = None


class SyncResponse(BaseModel):
    """Result of a forced reconciliation."""

    status: SyncStatus
    refreshed: list[str]
    failed: list[str]
    duration_ms: int
    last_sync_time: datetime | None = None


class BulkStatusRequest(BaseModel):
    equipment_ids: list[str]
    params: BulkStatusUpdateParams


class BulkTransferRequest(BaseModel):
    type_ids: list[str]
    params: BulkTransferParams


class BulkDeployRequest(BaseModel):
    equipment_ids: list[str]
    job_id: str
    job_name: str | None = None


class BulkIdsRequest(BaseModel):
    """Request carrying only equipment ids (return, delete)."""

    equipment_ids: list[str]


class OperationHistoryResponse(BaseModel):
    operations: list[BulkOperation]
    count: int
    is_processing: bool = False


class ClearCompletedResponse(BaseModel):
    removed: int


class ErrorDetail(BaseModel):
    """Structured ``detail`` body for domain errors."""

    error: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
