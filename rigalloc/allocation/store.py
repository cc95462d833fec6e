"""Allocation store.

The single choke point for "who has what" as observed by this client.
Inventory records are held in private maps; allocations are never stored
separately but projected from each record's status and job reference, so a
reloaded snapshot and the allocation view cannot drift apart.

Every mutating operation is synchronous and returns a ``Transition``
carrying its result, the per-row ``Mutation`` list to persist and an undo
journal. ``rollback`` restores exactly the keys a transition touched, which
is how a failed remote write leaves the store in its last known-good state.
Journal entries name the map they touched rather than holding it, so they
stay valid after a snapshot replaces that map.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from rigalloc.allocation.conflicts import detect_conflict
from rigalloc.errors import (
    AllocationError,
    CapacityError,
    ConflictError,
    StaleReferenceError,
    UnavailableError,
)
from rigalloc.logging import get_logger
from rigalloc.models import (
    BLOCKED_STATUSES,
    HOLDING_STATUSES,
    UNKNOWN_JOB_NAME,
    Allocation,
    AllocationStatus,
    Availability,
    Collection,
    EquipmentItem,
    EquipmentStatus,
    EquipmentType,
    IndividualEquipment,
    Mutation,
    StorageLocation,
    generate_id,
    utc_now,
)
from rigalloc.sync.events import EventBus, StoreChanged

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()

Record = EquipmentItem | IndividualEquipment

# Private maps each collection is loaded into
_COLLECTION_MAPS = {
    Collection.EQUIPMENT_TYPES: ("_types",),
    Collection.STORAGE_LOCATIONS: ("_locations",),
    Collection.EQUIPMENT_ITEMS: ("_items",),
    Collection.INDIVIDUAL_EQUIPMENT: ("_units", "_unit_rows"),
}


@dataclass
class Transition(Generic[T]):
    """Outcome of one synchronous store operation."""

    result: T
    mutations: list[Mutation] = field(default_factory=list)
    undo: list[tuple[str, str, Any, Any]] = field(default_factory=list, repr=False)

    @property
    def changed(self) -> bool:
        return bool(self.mutations)


class AllocationStore:
    """In-memory inventory view with allocation rules enforced on write."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._types: dict[str, EquipmentType] = {}
        self._locations: dict[str, StorageLocation] = {}
        self._items: dict[str, EquipmentItem] = {}
        self._units: dict[str, IndividualEquipment] = {}
        self._unit_rows: dict[str, str] = {}
        self._job_names: dict[str, str] = {}
        self._writes: list[Transition[Any]] = []
        self._settled: list[tuple[int, Transition[Any]]] = []
        self._write_seq = 0
        self._open_fetches = 0

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def load_snapshot(
        self,
        collection: Collection,
        records: Iterable[dict[str, Any]],
        since: int | None = None,
    ) -> int:
        """Replace one collection with authoritative records.

        Records that fail validation are skipped with a warning. Writes still
        in flight are re-applied over the snapshot, as are writes
        acknowledged after ``since`` (a mark from ``begin_fetch``), because
        the snapshot may predate them and their echoes are suppressed.
        Returns the number of records loaded.
        """
        model = {
            Collection.EQUIPMENT_TYPES: EquipmentType,
            Collection.STORAGE_LOCATIONS: StorageLocation,
            Collection.EQUIPMENT_ITEMS: EquipmentItem,
            Collection.INDIVIDUAL_EQUIPMENT: IndividualEquipment,
        }[collection]

        parsed = []
        for raw in records:
            try:
                parsed.append(model.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "snapshot_record_invalid",
                    collection=collection.value,
                    record_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )

        if collection is Collection.EQUIPMENT_TYPES:
            self._types = {r.id: r for r in parsed}
        elif collection is Collection.STORAGE_LOCATIONS:
            self._locations = {r.id: r for r in parsed}
        elif collection is Collection.EQUIPMENT_ITEMS:
            self._items = {r.id: r for r in parsed}
        else:
            self._units = {r.equipment_id: r for r in parsed}
            self._unit_rows = {r.id: r.equipment_id for r in parsed}

        reapplied = self._reapply_in_flight(collection, since)
        logger.debug(
            "snapshot_loaded",
            collection=collection.value,
            count=len(parsed),
            reapplied=reapplied,
        )
        self._notify(collection)
        return len(parsed)

    # -------------------------------------------------------------------------
    # Write and fetch tracking
    # -------------------------------------------------------------------------

    def begin_write(self, transition: Transition[Any]) -> None:
        """Mark a transition as being persisted."""
        self._writes.append(transition)

    def end_write(self, transition: Transition[Any], persisted: bool = True) -> None:
        """Mark a transition's write as finished.

        A persisted transition stays eligible for re-application while a
        fetch that started before it landed is still open.
        """
        self._writes = [t for t in self._writes if t is not transition]
        if persisted and self._open_fetches:
            self._write_seq += 1
            self._settled.append((self._write_seq, transition))

    def begin_fetch(self) -> int:
        """Open a snapshot fetch; pass the returned mark to ``load_snapshot``."""
        self._open_fetches += 1
        return self._write_seq

    def end_fetch(self) -> None:
        self._open_fetches = max(self._open_fetches - 1, 0)
        if not self._open_fetches:
            self._settled.clear()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_status(self, equipment_id: str) -> Availability:
        """Status for UI display. Never fails; unknown ids are unavailable."""
        record = self._lookup(equipment_id)
        if record is None:
            return Availability.UNAVAILABLE
        if record.status is EquipmentStatus.AVAILABLE:
            return Availability.AVAILABLE
        if record.status in HOLDING_STATUSES and record.job_id:
            return Availability(record.status.value)
        return Availability.UNAVAILABLE

    def get_allocation(self, equipment_id: str) -> Allocation | None:
        record = self._lookup(equipment_id)
        if record is None:
            return None
        return self._project(record)

    def allocations(self) -> list[Allocation]:
        """Every active allocation, tracked units first."""
        projected = (self._project(r) for r in self._records())
        return [a for a in projected if a is not None]

    def get_job_equipment(self, job_id: str) -> list[str]:
        """Ids of units and bulk records held by a job."""
        return [a.equipment_id for a in self.allocations() if a.job_id == job_id]

    def validate_availability(
        self,
        equipment_id: str,
        job_id: str,
        quantity: int | None = None,
    ) -> bool:
        """Whether ``allocate`` would accept this request right now."""
        try:
            self._check(equipment_id, job_id, None, quantity)
        except AllocationError:
            return False
        return True

    def available_quantity(self, type_id: str, location_id: str) -> int:
        return sum(r.quantity for r in self._available_stock(type_id, location_id))

    def total_quantity(self, type_id: str, location_id: str) -> int:
        return sum(
            r.quantity
            for r in self._items.values()
            if r.type_id == type_id and r.location_id == location_id
        )

    def contains(self, equipment_id: str) -> bool:
        return self._lookup(equipment_id) is not None

    def is_unit(self, equipment_id: str) -> bool:
        return isinstance(self._lookup(equipment_id), IndividualEquipment)

    def describe(self, equipment_id: str) -> str:
        """Human-readable name for an id."""
        record = self._lookup(equipment_id)
        if isinstance(record, IndividualEquipment):
            return record.name
        if isinstance(record, EquipmentItem):
            equipment_type = self._types.get(record.type_id)
            return equipment_type.name if equipment_type else record.type_id
        return equipment_id

    def job_name(self, job_id: str) -> str:
        return self._job_names.get(job_id, UNKNOWN_JOB_NAME)

    def remember_job(self, job_id: str, job_name: str | None) -> None:
        if job_name:
            self._job_names[job_id] = job_name

    def default_location(self) -> StorageLocation | None:
        return next((loc for loc in self._locations.values() if loc.is_default), None)

    def row_id(self, equipment_id: str) -> str | None:
        """Persistence row id for a user-facing or row id."""
        record = self._lookup(equipment_id)
        return record.id if record is not None else None

    def units(self) -> list[IndividualEquipment]:
        return list(self._units.values())

    def items(self) -> list[EquipmentItem]:
        return list(self._items.values())

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def allocate(
        self,
        equipment_id: str,
        job_id: str,
        job_name: str | None = None,
        status: AllocationStatus = AllocationStatus.ALLOCATED,
        quantity: int | None = None,
    ) -> Transition[Allocation]:
        """Allocate a unit (or bulk quantity) to a job.

        Raises:
            ConflictError: A tracked unit is held by a different job.
            CapacityError: Not enough bulk stock at the record's location.
            UnavailableError: The record is in maintenance, red-tagged or retired.
            StaleReferenceError: The id is unknown.
        """
        record = self._check(equipment_id, job_id, job_name, quantity)
        self.remember_job(job_id, job_name)
        transition: Transition[Allocation] = Transition(result=None)  # type: ignore[arg-type]

        if isinstance(record, IndividualEquipment):
            held = record.status in HOLDING_STATUSES and record.job_id == job_id
            if held and not _upgrades(record.status, status):
                transition.result = self._project(record)
                return transition
            updated = self._put_unit(transition, record, status=EquipmentStatus(status.value), job_id=job_id)
            transition.result = self._project(updated)
        else:
            transition.result = self._allocate_stock(transition, record, job_id, status, quantity)

        self._finish(transition, "allocation_applied", equipment_id=equipment_id, job_id=job_id)
        return transition

    def release(
        self,
        equipment_id: str,
        job_id: str,
        location_id: str | None = None,
    ) -> Transition[Allocation | None]:
        """Release a hold, only if ``job_id`` is the current holder.

        A tracked unit is also moved to ``location_id`` when given, in the
        same row update. Returns the released allocation, or ``None`` when
        nothing changed.
        """
        record = self._lookup(equipment_id)
        if record is None:
            raise StaleReferenceError(equipment_id)

        transition: Transition[Allocation | None] = Transition(result=None)
        allocation = self._project(record)
        if allocation is None or allocation.job_id != job_id:
            logger.debug(
                "release_ignored",
                equipment_id=equipment_id,
                job_id=job_id,
                holder=allocation.job_id if allocation else None,
            )
            return transition

        if isinstance(record, IndividualEquipment):
            changes: dict[str, Any] = {"status": EquipmentStatus.AVAILABLE, "job_id": None}
            if location_id is not None:
                changes["location_id"] = location_id
            self._put_unit(transition, record, **changes)
        else:
            self._return_stock(transition, record)

        transition.result = allocation
        self._finish(transition, "allocation_released", equipment_id=equipment_id, job_id=job_id)
        return transition

    def reassign(
        self,
        equipment_id: str,
        from_job_id: str,
        to_job_id: str,
        to_job_name: str | None = None,
    ) -> Transition[Allocation]:
        """Move a tracked unit from one job to another in one transition.

        If the unit is already free the request becomes a plain allocation.
        If a third job took it in the meantime, a fresh ConflictError is
        raised.
        """
        record = self._lookup(equipment_id)
        if not isinstance(record, IndividualEquipment):
            raise StaleReferenceError(equipment_id)

        holder = record.job_id if record.status in HOLDING_STATUSES else None
        if holder not in (None, from_job_id, to_job_id):
            conflict = detect_conflict(self, equipment_id, to_job_id, to_job_name)
            raise ConflictError(conflict)
        if record.status in BLOCKED_STATUSES:
            raise UnavailableError(equipment_id, record.status.value)

        self.remember_job(to_job_id, to_job_name)
        transition: Transition[Allocation] = Transition(result=None)  # type: ignore[arg-type]
        status = record.status if holder is not None else EquipmentStatus.ALLOCATED
        updated = self._put_unit(transition, record, status=status, job_id=to_job_id)
        transition.result = self._project(updated)
        self._finish(
            transition,
            "allocation_reassigned",
            equipment_id=equipment_id,
            from_job_id=holder,
            to_job_id=to_job_id,
        )
        return transition

    def set_status(
        self,
        equipment_id: str,
        new_status: EquipmentStatus,
        reason: str | None = None,
    ) -> Transition[Record]:
        """Set a lifecycle status outside the allocation flow.

        Holding statuses need a job and must go through ``allocate``.
        Any other status clears the job reference.
        """
        if new_status in HOLDING_STATUSES:
            raise ValueError(f"Status '{new_status.value}' requires a job; use allocate()")
        record = self._lookup(equipment_id)
        if record is None:
            raise StaleReferenceError(equipment_id)

        transition: Transition[Record] = Transition(result=record)
        changes: dict[str, Any] = {"status": new_status, "job_id": None}
        if new_status is EquipmentStatus.RED_TAGGED:
            changes["red_tag_reason"] = reason
        if isinstance(record, IndividualEquipment):
            transition.result = self._put_unit(transition, record, **changes)
        else:
            transition.result = self._put_item(transition, record, **changes)
        self._finish(transition, "status_set", equipment_id=equipment_id, status=new_status.value)
        return transition

    def move_to_location(self, equipment_id: str, location_id: str) -> Transition[Record]:
        """Relocate a tracked unit or bulk record without touching its status."""
        record = self._lookup(equipment_id)
        if record is None:
            raise StaleReferenceError(equipment_id)
        transition: Transition[Record] = Transition(result=record)
        if record.location_id == location_id:
            return transition
        if isinstance(record, IndividualEquipment):
            transition.result = self._put_unit(transition, record, location_id=location_id)
        else:
            transition.result = self._put_item(transition, record, location_id=location_id)
        self._finish(transition, "location_set", equipment_id=equipment_id, location_id=location_id)
        return transition

    def transfer_quantity(
        self,
        type_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
    ) -> Transition[int]:
        """Move available bulk stock of one type between locations."""
        if quantity <= 0:
            raise ValueError("Transfer quantity must be positive")
        available = self.available_quantity(type_id, from_location_id)
        if quantity > available:
            raise CapacityError(type_id, quantity, available)

        transition: Transition[int] = Transition(result=quantity)
        self._draw_stock(transition, type_id, from_location_id, quantity)
        self._add_stock(transition, type_id, to_location_id, quantity)
        self._finish(
            transition,
            "stock_transferred",
            type_id=type_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            quantity=quantity,
        )
        return transition

    def delete(self, equipment_id: str) -> Transition[Record]:
        """Remove a record, dropping any allocation it carried."""
        record = self._lookup(equipment_id)
        if record is None:
            raise StaleReferenceError(equipment_id)

        transition: Transition[Record] = Transition(result=record)
        if isinstance(record, IndividualEquipment):
            self._set(transition, "_units", record.equipment_id, _MISSING)
            self._set(transition, "_unit_rows", record.id, _MISSING)
            transition.mutations.append(Mutation(Collection.INDIVIDUAL_EQUIPMENT, record.id, None))
        else:
            self._set(transition, "_items", record.id, _MISSING)
            transition.mutations.append(Mutation(Collection.EQUIPMENT_ITEMS, record.id, None))
        self._finish(transition, "equipment_deleted", equipment_id=equipment_id)
        return transition

    def rollback(self, transition: Transition[Any]) -> None:
        """Undo a transition whose remote write failed."""
        skipped = 0
        for name, key, previous, applied in reversed(transition.undo):
            target = getattr(self, name)
            if target.get(key, _MISSING) is not applied:
                skipped += 1
                continue
            _assign(target, key, previous)
        if transition.undo:
            logger.info(
                "transition_rolled_back",
                mutations=len(transition.mutations),
                superseded=skipped,
            )
            self._notify(None, tuple(m.id for m in transition.mutations))
        transition.undo.clear()

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _check(
        self,
        equipment_id: str,
        job_id: str,
        job_name: str | None,
        quantity: int | None,
    ) -> Record:
        """The allocation rule shared by ``allocate`` and ``validate_availability``."""
        record = self._lookup(equipment_id)
        if record is None:
            raise StaleReferenceError(equipment_id)
        if record.status in BLOCKED_STATUSES:
            raise UnavailableError(equipment_id, record.status.value)

        if isinstance(record, IndividualEquipment):
            conflict = detect_conflict(self, equipment_id, job_id, job_name)
            if conflict is not None:
                raise ConflictError(conflict)
            return record

        if record.status in HOLDING_STATUSES and record.job_id == job_id and quantity is None:
            return record
        requested = quantity if quantity is not None else record.quantity
        available = self.available_quantity(record.type_id, record.location_id)
        if requested <= 0 or requested > available:
            raise CapacityError(equipment_id, requested, available)
        return record

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _lookup(self, equipment_id: str) -> Record | None:
        unit = self._units.get(equipment_id)
        if unit is not None:
            return unit
        row_key = self._unit_rows.get(equipment_id)
        if row_key is not None:
            return self._units.get(row_key)
        return self._items.get(equipment_id)

    def _records(self) -> Iterator[Record]:
        yield from self._units.values()
        yield from self._items.values()

    def _project(self, record: Record) -> Allocation | None:
        if record.status not in HOLDING_STATUSES or not record.job_id:
            return None
        return Allocation(
            equipment_id=record.equipment_id if isinstance(record, IndividualEquipment) else record.id,
            job_id=record.job_id,
            job_name=self.job_name(record.job_id),
            status=AllocationStatus(record.status.value),
            quantity=1 if isinstance(record, IndividualEquipment) else record.quantity,
            timestamp=record.last_updated,
        )

    def _available_stock(self, type_id: str, location_id: str) -> list[EquipmentItem]:
        return [
            r
            for r in self._items.values()
            if r.type_id == type_id
            and r.location_id == location_id
            and r.status is EquipmentStatus.AVAILABLE
        ]

    def _allocate_stock(
        self,
        transition: Transition[Any],
        record: EquipmentItem,
        job_id: str,
        status: AllocationStatus,
        quantity: int | None,
    ) -> Allocation:
        holding = EquipmentStatus(status.value)
        if record.status in HOLDING_STATUSES and record.job_id == job_id and quantity is None:
            if _upgrades(record.status, status):
                record = self._put_item(transition, record, status=holding)
            return self._project(record)  # type: ignore[return-value]

        requested = quantity if quantity is not None else record.quantity
        self._draw_stock(transition, record.type_id, record.location_id, requested, prefer=record.id)

        existing = next(
            (
                r
                for r in self._items.values()
                if r.type_id == record.type_id
                and r.location_id == record.location_id
                and r.status is holding
                and r.job_id == job_id
            ),
            None,
        )
        if existing is not None:
            held = self._put_item(transition, existing, quantity=existing.quantity + requested)
        else:
            held = EquipmentItem(
                id=generate_id("alloc"),
                type_id=record.type_id,
                location_id=record.location_id,
                quantity=requested,
                status=holding,
                job_id=job_id,
            )
            self._insert_item(transition, held)
        return self._project(held)  # type: ignore[return-value]

    def _return_stock(self, transition: Transition[Any], record: EquipmentItem) -> None:
        target = next(iter(self._available_stock(record.type_id, record.location_id)), None)
        if target is None:
            self._put_item(transition, record, status=EquipmentStatus.AVAILABLE, job_id=None)
            return
        self._put_item(transition, target, quantity=target.quantity + record.quantity)
        self._set(transition, "_items", record.id, _MISSING)
        transition.mutations.append(Mutation(Collection.EQUIPMENT_ITEMS, record.id, None))

    def _draw_stock(
        self,
        transition: Transition[Any],
        type_id: str,
        location_id: str,
        quantity: int,
        prefer: str | None = None,
    ) -> None:
        stock = sorted(self._available_stock(type_id, location_id), key=lambda r: r.id != prefer)
        remaining = quantity
        for source in stock:
            if remaining == 0:
                break
            taken = min(source.quantity, remaining)
            if taken:
                self._put_item(transition, source, quantity=source.quantity - taken)
                remaining -= taken

    def _add_stock(self, transition: Transition[Any], type_id: str, location_id: str, quantity: int) -> None:
        target = next(iter(self._available_stock(type_id, location_id)), None)
        if target is not None:
            self._put_item(transition, target, quantity=target.quantity + quantity)
            return
        self._insert_item(
            transition,
            EquipmentItem(
                id=generate_id("stock"),
                type_id=type_id,
                location_id=location_id,
                quantity=quantity,
            ),
        )

    def _put_unit(self, transition: Transition[Any], record: IndividualEquipment, **changes: Any) -> IndividualEquipment:
        updated = record.model_copy(update={**changes, "last_updated": utc_now()})
        self._set(transition, "_units", record.equipment_id, updated)
        transition.mutations.append(
            Mutation(Collection.INDIVIDUAL_EQUIPMENT, record.id, updated.model_dump(mode="json"))
        )
        return updated

    def _put_item(self, transition: Transition[Any], record: EquipmentItem, **changes: Any) -> EquipmentItem:
        updated = record.model_copy(update={**changes, "last_updated": utc_now()})
        self._set(transition, "_items", record.id, updated)
        transition.mutations.append(
            Mutation(Collection.EQUIPMENT_ITEMS, record.id, updated.model_dump(mode="json"))
        )
        return updated

    def _insert_item(self, transition: Transition[Any], record: EquipmentItem) -> None:
        self._set(transition, "_items", record.id, record)
        transition.mutations.append(
            Mutation(Collection.EQUIPMENT_ITEMS, record.id, record.model_dump(mode="json"))
        )

    def _set(self, transition: Transition[Any], name: str, key: str, value: Any) -> None:
        target = getattr(self, name)
        transition.undo.append((name, key, target.get(key, _MISSING), value))
        _assign(target, key, value)

    def _reapply_in_flight(self, collection: Collection, since: int | None) -> int:
        """Put unacknowledged and just-acknowledged writes back over a fresh snapshot.

        Each re-applied journal entry takes the snapshot value as its new
        ``previous``, so a later rollback restores what the server sent.
        """
        names = _COLLECTION_MAPS[collection]
        pending = [t for seq, t in self._settled if since is not None and seq > since]
        pending += self._writes

        reapplied = 0
        for transition in pending:
            journal = []
            for name, key, previous, applied in transition.undo:
                if name in names:
                    target = getattr(self, name)
                    previous = target.get(key, _MISSING)
                    _assign(target, key, applied)
                    reapplied += 1
                journal.append((name, key, previous, applied))
            transition.undo = journal
        return reapplied

    def _finish(self, transition: Transition[Any], event: str, **context: Any) -> None:
        if not transition.changed:
            return
        logger.info(event, mutations=len(transition.mutations), **context)
        self._notify(None, tuple(m.id for m in transition.mutations))

    def _notify(self, collection: Collection | None, ids: tuple[str, ...] = ()) -> None:
        if self._bus is not None:
            self._bus.publish(StoreChanged(collection=collection, ids=ids))


def _assign(target: dict[str, Any], key: str, value: Any) -> None:
    if value is _MISSING:
        target.pop(key, None)
    else:
        target[key] = value


def _upgrades(current: EquipmentStatus, requested: AllocationStatus) -> bool:
    return current is EquipmentStatus.ALLOCATED and requested is AllocationStatus.DEPLOYED
