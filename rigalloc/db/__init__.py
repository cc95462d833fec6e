"""Reference SQL persistence for the allocation engine."""

from rigalloc.db.engine import close_db, get_session, init_db
from rigalloc.db.models import (
    TABLES,
    EquipmentItemRow,
    EquipmentTypeRow,
    IndividualEquipmentRow,
    StorageLocationRow,
)

__all__ = [
    "TABLES",
    "close_db",
    "get_session",
    "init_db",
    "EquipmentItemRow",
    "EquipmentTypeRow",
    "IndividualEquipmentRow",
    "StorageLocationRow",
]
