"""Persistence adapters consumed by the allocation engine."""

from rigalloc.adapters.base import ChangeCallback, PersistenceAdapter, Unsubscribe
from rigalloc.adapters.memory import InMemoryAdapter

__all__ = [
    "ChangeCallback",
    "InMemoryAdapter",
    "PersistenceAdapter",
    "Unsubscribe",
]
