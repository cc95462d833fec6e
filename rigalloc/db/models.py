"""Tables for the reference SQL store.

Each table reuses the matching domain model as its column definition.
"""

from sqlmodel import SQLModel

from rigalloc.models import (
    Collection,
    EquipmentItem,
    EquipmentType,
    IndividualEquipment,
    StorageLocation,
)


class EquipmentTypeRow(EquipmentType, table=True):
    __tablename__ = "equipment_types"
    __table_args__ = {"extend_existing": True}


class StorageLocationRow(StorageLocation, table=True):
    __tablename__ = "storage_locations"
    __table_args__ = {"extend_existing": True}


class EquipmentItemRow(EquipmentItem, table=True):
    __tablename__ = "equipment_items"
    __table_args__ = {"extend_existing": True}


class IndividualEquipmentRow(IndividualEquipment, table=True):
    __tablename__ = "individual_equipment"
    __table_args__ = {"extend_existing": True}


# Collection -> (domain model, table)
TABLES: dict[Collection, tuple[type[SQLModel], type[SQLModel]]] = {
    Collection.EQUIPMENT_TYPES: (EquipmentType, EquipmentTypeRow),
    Collection.STORAGE_LOCATIONS: (StorageLocation, StorageLocationRow),
    Collection.EQUIPMENT_ITEMS: (EquipmentItem, EquipmentItemRow),
    Collection.INDIVIDUAL_EQUIPMENT: (IndividualEquipment, IndividualEquipmentRow),
}
