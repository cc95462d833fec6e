"""Bulk operations over many equipment records."""

from rigalloc.bulk.actions import BulkActions, BulkStatusUpdateParams, BulkTransferParams
from rigalloc.bulk.executor import BatchExecutor, BatchFailure, BatchResult
from rigalloc.bulk.operations import (
    AuditAction,
    AuditEntry,
    AuditTrail,
    BulkOperationManager,
)

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditTrail",
    "BatchExecutor",
    "BatchFailure",
    "BatchResult",
    "BulkActions",
    "BulkOperationManager",
    "BulkStatusUpdateParams",
    "BulkTransferParams",
]
