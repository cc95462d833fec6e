"""Allocation store and conflict handling."""

from rigalloc.allocation.conflicts import ConflictRegistry, detect_conflict, resolve
from rigalloc.allocation.store import AllocationStore, Transition

__all__ = [
    "AllocationStore",
    "ConflictRegistry",
    "Transition",
    "detect_conflict",
    "resolve",
]
