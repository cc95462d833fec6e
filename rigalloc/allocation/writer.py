"""Persisting store transitions.

A transition is already applied to the store when it reaches the writer.
The writer announces each mutation on the bus (which registers optimistic
suppression), marks the transition in flight so snapshot loads keep it,
and then writes the rows one by one. If a write fails the whole transition
is rolled back locally and ``AdapterError`` is raised; rows written before
the failure are left for the next refetch to reconcile.
"""

from typing import Any

from rigalloc.adapters.base import PersistenceAdapter
from rigalloc.allocation.store import AllocationStore, Transition
from rigalloc.errors import AdapterError
from rigalloc.logging import get_logger
from rigalloc.sync.events import EventBus, OptimisticMutation

logger = get_logger(__name__)


class TransitionWriter:
    """Writes transitions through the persistence adapter."""

    def __init__(self, adapter: PersistenceAdapter, store: AllocationStore, bus: EventBus) -> None:
        self.adapter = adapter
        self.store = store
        self.bus = bus

    async def write(self, transition: Transition[Any]) -> None:
        if not transition.changed:
            return
        for mutation in transition.mutations:
            self.bus.publish(OptimisticMutation(mutation))

        self.store.begin_write(transition)
        persisted = False
        try:
            for index, mutation in enumerate(transition.mutations):
                try:
                    await self.adapter.mutate(mutation.collection, mutation.id, mutation.patch)
                except Exception as e:
                    logger.error(
                        "transition_write_failed",
                        collection=mutation.collection.value,
                        row_id=mutation.id,
                        written=index,
                        error=str(e),
                    )
                    self.store.rollback(transition)
                    if isinstance(e, AdapterError):
                        raise
                    raise AdapterError(str(e)) from e
            persisted = True
        finally:
            self.store.end_write(transition, persisted)
