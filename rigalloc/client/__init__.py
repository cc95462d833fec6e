"""Client library for the allocation server."""

from rigalloc.client.allocation_client import (
    AllocationClient,
    AllocationClientError,
    EquipmentConflictError,
    EquipmentNotFoundError,
)

__all__ = [
    "AllocationClient",
    "AllocationClientError",
    "EquipmentConflictError",
    "EquipmentNotFoundError",
]
