"""Domain models for equipment allocation.

Inventory records (types, locations, bulk items and individually tracked
units) are SQLModel classes so the reference SQL store can reuse them as
table bases. Allocations, conflicts and bulk operations are derived,
client-side records and never become tables.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlmodel import Field, SQLModel

UNKNOWN_JOB_NAME = "Unknown Job"


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``bulk-3f2a...``."""
    return f"{prefix}-{uuid4().hex[:12]}"


# =============================================================================
# Enumerations
# =============================================================================


class EquipmentStatus(str, Enum):
    """Lifecycle status of a bulk record or tracked unit."""

    AVAILABLE = "available"
    ALLOCATED = "allocated"
    DEPLOYED = "deployed"
    MAINTENANCE = "maintenance"
    RED_TAGGED = "red-tagged"
    RETIRED = "retired"


HOLDING_STATUSES = frozenset({EquipmentStatus.ALLOCATED, EquipmentStatus.DEPLOYED})
BLOCKED_STATUSES = frozenset(
    {EquipmentStatus.MAINTENANCE, EquipmentStatus.RED_TAGGED, EquipmentStatus.RETIRED}
)


class Availability(str, Enum):
    """Status as reported to UI collaborators."""

    AVAILABLE = "available"
    ALLOCATED = "allocated"
    DEPLOYED = "deployed"
    UNAVAILABLE = "unavailable"


class AllocationStatus(str, Enum):
    """Status of an active allocation."""

    ALLOCATED = "allocated"
    DEPLOYED = "deployed"


class EquipmentCategory(str, Enum):
    """Equipment type categories."""

    CABLES = "cables"
    GAUGES = "gauges"
    ADAPTERS = "adapters"
    COMMUNICATION = "communication"
    POWER = "power"
    OTHER = "other"


class Collection(str, Enum):
    """Entity collections watched on the change feed."""

    EQUIPMENT_TYPES = "equipment_types"
    STORAGE_LOCATIONS = "storage_locations"
    EQUIPMENT_ITEMS = "equipment_items"
    INDIVIDUAL_EQUIPMENT = "individual_equipment"


class ChangeEventType(str, Enum):
    """Kind of remote change."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ConflictResolution(str, Enum):
    """Which side of a conflict keeps the unit."""

    CURRENT = "current"
    REQUESTED = "requested"


class BulkOperationType(str, Enum):
    """Kinds of multi-item actions."""

    TRANSFER = "transfer"
    DEPLOY = "deploy"
    RETURN = "return"
    UPDATE_STATUS = "update_status"
    DELETE = "delete"


class BulkOperationStatus(str, Enum):
    """Status of a bulk operation."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncState(str, Enum):
    """Per-collection realtime sync state."""

    IDLE = "idle"
    PENDING_REFETCH = "pending_refetch"
    REFETCHING = "refetching"


class SyncStatus(str, Enum):
    """Overall sync status shown to users."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


# =============================================================================
# Inventory records
# =============================================================================


class EquipmentType(SQLModel):
    """A kind of equipment, e.g. "100ft Cable" or "Pressure Gauge"."""

    id: str = Field(primary_key=True)
    name: str
    category: EquipmentCategory = Field(default=EquipmentCategory.OTHER)
    description: str | None = Field(default=None)
    requires_individual_tracking: bool = Field(default=False)
    default_id_prefix: str | None = Field(default=None)


class StorageLocation(SQLModel):
    """A yard, shop or truck where equipment is stored."""

    id: str = Field(primary_key=True)
    name: str
    address: str | None = Field(default=None)
    is_default: bool = Field(default=False)


class EquipmentItem(SQLModel):
    """Fungible stock of one type at one location."""

    id: str = Field(primary_key=True)
    type_id: str = Field(index=True)
    location_id: str = Field(index=True)
    quantity: int = Field(default=0, ge=0)
    status: EquipmentStatus = Field(default=EquipmentStatus.AVAILABLE)
    job_id: str | None = Field(default=None, index=True)
    notes: str | None = Field(default=None)
    red_tag_reason: str | None = Field(default=None)
    last_updated: datetime = Field(default_factory=utc_now)


class IndividualEquipment(SQLModel):
    """A single physical unit with a user-facing id such as ``PG-003``."""

    id: str = Field(primary_key=True)
    equipment_id: str = Field(index=True, unique=True)
    name: str
    type_id: str = Field(index=True)
    location_id: str | None = Field(default=None)
    status: EquipmentStatus = Field(default=EquipmentStatus.AVAILABLE)
    job_id: str | None = Field(default=None, index=True)
    serial_number: str | None = Field(default=None)
    notes: str | None = Field(default=None)
    red_tag_reason: str | None = Field(default=None)
    last_updated: datetime = Field(default_factory=utc_now)


# =============================================================================
# Derived records
# =============================================================================


class Allocation(BaseModel):
    """The current job holding a unit (or a quantity of bulk stock)."""

    model_config = ConfigDict(frozen=True)

    equipment_id: str
    job_id: str
    job_name: str
    status: AllocationStatus = AllocationStatus.ALLOCATED
    quantity: int = 1
    timestamp: datetime


class Conflict(BaseModel):
    """A double-booking awaiting manual resolution."""

    model_config = ConfigDict(frozen=True)

    equipment_id: str
    equipment_name: str
    current_job_id: str
    current_job_name: str
    requested_job_id: str
    requested_job_name: str
    timestamp: datetime


class BulkOperation(BaseModel):
    """A multi-item action and its outcome."""

    id: str
    type: BulkOperationType
    equipment_ids: list[str]
    params: dict[str, Any] = {}
    status: BulkOperationStatus = BulkOperationStatus.PENDING
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    success_count: int = 0
    failure_count: int = 0
    duration_ms: int = 0
    failures: dict[str, str] = {}

    @property
    def is_terminal(self) -> bool:
        return self.status in (BulkOperationStatus.COMPLETED, BulkOperationStatus.FAILED)


@dataclass(frozen=True)
class ChangeEvent:
    """A notification from the change feed."""

    collection: Collection
    event_type: ChangeEventType
    id: str
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class Mutation:
    """A per-row write the store wants persisted. ``patch=None`` deletes."""

    collection: Collection
    id: str
    patch: dict[str, Any] | None = field(default=None)

    @property
    def is_delete(self) -> bool:
        return self.patch is None
