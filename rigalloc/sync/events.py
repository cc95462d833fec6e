"""Typed internal events and the local bus that carries them.

Components never reach each other through ambient globals: the store,
conflict registry, bulk machinery and sync coordinator publish events here
and whoever owns the bus decides who listens.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from rigalloc.logging import get_logger
from rigalloc.models import (
    BulkOperation,
    Collection,
    Conflict,
    Mutation,
    SyncStatus,
)

logger = get_logger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class OptimisticMutation:
    """The client applied a mutation locally and is persisting it."""

    mutation: Mutation


@dataclass(frozen=True)
class StoreChanged:
    """Store contents changed for the given ids (empty for a full reload)."""

    collection: Collection | None
    ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConflictsChanged:
    """The list of open conflicts changed."""

    conflicts: tuple[Conflict, ...]


@dataclass(frozen=True)
class SyncStatusChanged:
    """The sync coordinator's overall status changed."""

    status: SyncStatus


@dataclass(frozen=True)
class BulkOperationUpdated:
    """A bulk operation was created or changed state."""

    operation: BulkOperation


class EventBus:
    """Synchronous publish/subscribe keyed by event class.

    Handlers run in publish order. A failing handler is logged and does not
    prevent delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler and return a function that unregisters it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[event_type]

        return unsubscribe

    def publish(self, event: object) -> None:
        """Deliver an event to every handler registered for its class."""
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed", event_type=type(event).__name__)

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))
