"""Realtime synchronisation: internal events, optimistic suppression and
the change-feed coordinator (``rigalloc.sync.coordinator``)."""

from rigalloc.sync.events import (
    BulkOperationUpdated,
    ConflictsChanged,
    EventBus,
    OptimisticMutation,
    StoreChanged,
    SyncStatusChanged,
)
from rigalloc.sync.suppression import SuppressionRegistry

__all__ = [
    "BulkOperationUpdated",
    "ConflictsChanged",
    "EventBus",
    "OptimisticMutation",
    "StoreChanged",
    "SuppressionRegistry",
    "SyncStatusChanged",
]
