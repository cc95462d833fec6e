"""HTTP client for the allocation server.

Usage:
    from rigalloc.client import AllocationClient

    client = AllocationClient("http://localhost:3344")

    # Allocate a gauge to a job
    allocation = client.allocate("PG-003", "job-1", job_name="Well 7 frac")

    # Another job asks for it
    try:
        client.allocate("PG-003", "job-2")
    except EquipmentConflictError as e:
        print(e.conflict["current_job_name"])

    # Hand it over
    client.resolve_conflict("PG-003", "requested")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


class AllocationClientError(Exception):
    """Base exception for allocation client errors."""

    def __init__(self, message: str, status_code: int | None = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class EquipmentNotFoundError(AllocationClientError):
    """Raised when the server does not know an equipment id or conflict."""

    pass


class EquipmentConflictError(AllocationClientError):
    """Raised when equipment is held by another job."""

    @property
    def conflict(self) -> dict[str, Any]:
        if isinstance(self.detail, dict):
            return self.detail.get("context", {})
        return {}


@dataclass
class Allocation:
    """An active allocation."""

    equipment_id: str
    job_id: str
    job_name: str
    status: str
    quantity: int
    timestamp: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Allocation:
        return cls(
            equipment_id=data["equipment_id"],
            job_id=data["job_id"],
            job_name=data["job_name"],
            status=data["status"],
            quantity=data.get("quantity", 1),
            timestamp=data["timestamp"],
        )


@dataclass
class Conflict:
    """An open double-booking."""

    equipment_id: str
    equipment_name: str
    current_job_id: str
    current_job_name: str
    requested_job_id: str
    requested_job_name: str
    timestamp: str


@dataclass
class BulkOperation:
    """Outcome of a bulk action."""

    id: str
    type: str
    status: str
    equipment_ids: list[str]
    success_count: int
    failure_count: int
    duration_ms: int
    created_at: str
    completed_at: str | None = None
    error: str | None = None
    failures: dict[str, str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BulkOperation:
        return cls(
            id=data["id"],
            type=data["type"],
            status=data["status"],
            equipment_ids=data["equipment_ids"],
            success_count=data["success_count"],
            failure_count=data["failure_count"],
            duration_ms=data["duration_ms"],
            created_at=data["created_at"],
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            failures=data.get("failures"),
        )


class AllocationClient:
    """Synchronous HTTP client for the allocation server.

    Args:
        base_url: Server URL (e.g. "http://localhost:3344").
        timeout: Request timeout in seconds.
        http_client: Pre-built ``httpx.Client`` to use instead, e.g. a
            FastAPI ``TestClient``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3344",
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def __enter__(self) -> AllocationClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, str]:
        response = self._client.get("/health")
        response.raise_for_status()
        return response.json()

    # -------------------------------------------------------------------------
    # Equipment and allocations
    # -------------------------------------------------------------------------

    def get_status(self, equipment_id: str) -> str:
        """Display status: available, allocated, deployed or unavailable."""
        data = self._request("GET", f"/v1/equipment/{equipment_id}/status")
        return data["status"]

    def is_available(self, equipment_id: str, job_id: str, quantity: int | None = None) -> bool:
        params: dict[str, Any] = {"job_id": job_id}
        if quantity is not None:
            params["quantity"] = quantity
        data = self._request("GET", f"/v1/equipment/{equipment_id}/availability", params=params)
        return data["available"]

    def allocate(
        self,
        equipment_id: str,
        job_id: str,
        job_name: str | None = None,
        status: str = "allocated",
        quantity: int | None = None,
    ) -> Allocation:
        """Allocate equipment to a job.

        Raises:
            EquipmentConflictError: Held by another job.
            EquipmentNotFoundError: Unknown equipment id.
            AllocationClientError: Unavailable, insufficient quantity or a
                persistence failure.
        """
        payload: dict[str, Any] = {"equipment_id": equipment_id, "job_id": job_id, "status": status}
        if job_name:
            payload["job_name"] = job_name
        if quantity is not None:
            payload["quantity"] = quantity
        return Allocation.from_dict(self._request("POST", "/v1/allocations", json=payload))

    def release(self, equipment_id: str, job_id: str) -> bool:
        """Release a hold. Returns False when ``job_id`` was not the holder."""
        data = self._request("DELETE", f"/v1/allocations/{equipment_id}", params={"job_id": job_id})
        return data["released"]

    def job_equipment(self, job_id: str) -> list[str]:
        return self._request("GET", f"/v1/jobs/{job_id}/equipment")["equipment_ids"]

    # -------------------------------------------------------------------------
    # Conflicts
    # -------------------------------------------------------------------------

    def list_conflicts(self) -> list[Conflict]:
        data = self._request("GET", "/v1/conflicts")
        return [Conflict(**c) for c in data["conflicts"]]

    def resolve_conflict(self, equipment_id: str, resolution: str) -> Allocation | None:
        """Resolve a conflict with ``"current"`` or ``"requested"``."""
        data = self._request(
            "POST",
            f"/v1/conflicts/{equipment_id}/resolve",
            json={"resolution": resolution},
        )
        allocation = data.get("allocation")
        return Allocation.from_dict(allocation) if allocation else None

    def withdraw_conflict(self, equipment_id: str, job_id: str) -> None:
        self._request("DELETE", f"/v1/conflicts/{equipment_id}", params={"job_id": job_id})

    # -------------------------------------------------------------------------
    # Sync and bulk
    # -------------------------------------------------------------------------

    def sync(self) -> dict[str, Any]:
        """Force a refetch of every collection."""
        return self._request("POST", "/v1/sync")

    def bulk_update_status(
        self, equipment_ids: list[str], new_status: str, reason: str | None = None
    ) -> BulkOperation:
        payload = {
            "equipment_ids": equipment_ids,
            "params": {"new_status": new_status, "reason": reason},
        }
        return BulkOperation.from_dict(self._request("POST", "/v1/bulk/status", json=payload))

    def bulk_transfer(
        self,
        type_ids: list[str],
        from_location_id: str,
        to_location_id: str,
        quantity: int,
    ) -> BulkOperation:
        payload = {
            "type_ids": type_ids,
            "params": {
                "from_location_id": from_location_id,
                "to_location_id": to_location_id,
                "quantity": quantity,
            },
        }
        return BulkOperation.from_dict(self._request("POST", "/v1/bulk/transfer", json=payload))

    def bulk_deploy(
        self, equipment_ids: list[str], job_id: str, job_name: str | None = None
    ) -> BulkOperation:
        payload = {"equipment_ids": equipment_ids, "job_id": job_id, "job_name": job_name}
        return BulkOperation.from_dict(self._request("POST", "/v1/bulk/deploy", json=payload))

    def bulk_return(self, equipment_ids: list[str]) -> BulkOperation:
        payload = {"equipment_ids": equipment_ids}
        return BulkOperation.from_dict(self._request("POST", "/v1/bulk/return", json=payload))

    def bulk_delete(self, equipment_ids: list[str]) -> BulkOperation:
        payload = {"equipment_ids": equipment_ids}
        return BulkOperation.from_dict(self._request("POST", "/v1/bulk/delete", json=payload))

    def operation_history(self) -> list[BulkOperation]:
        data = self._request("GET", "/v1/bulk/operations")
        return [BulkOperation.from_dict(op) for op in data["operations"]]

    def clear_completed_operations(self) -> int:
        return self._request("DELETE", "/v1/bulk/operations/completed")["removed"]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._client.request(method, path, **kwargs)
        if response.is_success:
            return response.json()

        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        message = detail.get("message") if isinstance(detail, dict) else str(detail)

        if response.status_code == 409:
            raise EquipmentConflictError(message, response.status_code, detail)
        if response.status_code == 404:
            raise EquipmentNotFoundError(message, response.status_code, detail)
        raise AllocationClientError(message, response.status_code, detail)
