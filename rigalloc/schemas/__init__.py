"""HTTP API schemas."""

from rigalloc.schemas.api import (
    AllocateRequest,
    AvailabilityResponse,
    BulkDeployRequest,
    BulkIdsRequest,
    BulkStatusRequest,
    BulkTransferRequest,
    ClearCompletedResponse,
    ConflictListResponse,
    EquipmentStatusResponse,
    ErrorDetail,
    JobEquipmentResponse,
    OperationHistoryResponse,
    ReleaseResponse,
    ResolveConflictRequest,
    ResolveConflictResponse,
    SyncResponse,
)

__all__ = [
    "AllocateRequest",
    "AvailabilityResponse",
    "BulkDeployRequest",
    "BulkIdsRequest",
    "BulkStatusRequest",
    "BulkTransferRequest",
    "ClearCompletedResponse",
    "ConflictListResponse",
    "EquipmentStatusResponse",
    "ErrorDetail",
    "JobEquipmentResponse",
    "OperationHistoryResponse",
    "ReleaseResponse",
    "ResolveConflictRequest",
    "ResolveConflictResponse",
    "SyncResponse",
]
