"""Tests for the allocation HTTP server."""

from rigalloc.models import Collection


def allocate(client, equipment_id, job_id, **extra):
    return client.post("/v1/allocations", json={"equipment_id": equipment_id, "job_id": job_id, **extra})


class TestHealth:
    """Tests for health and metrics endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sync_status"] == "idle"
        assert "version" in data

    def test_request_headers(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "corr-1"})
        assert response.headers["X-Correlation-ID"] == "corr-1"
        assert len(response.headers["X-Request-ID"]) == 8

    def test_metrics(self, client):
        client.get("/v1/equipment/PG-001/status")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rigalloc_http_requests_total" in response.text
        assert 'path="/v1/equipment/{equipment_id}/status"' in response.text

    def test_metrics_json(self, client):
        client.get("/health")
        data = client.get("/metrics/json").json()
        assert "counters" in data
        assert "histograms" in data


class TestEquipment:
    """Tests for status and availability endpoints."""

    def test_status(self, client):
        data = client.get("/v1/equipment/PG-001/status").json()
        assert data["status"] == "available"
        assert data["allocation"] is None

    def test_unknown_status(self, client):
        response = client.get("/v1/equipment/PG-404/status")
        assert response.status_code == 200
        assert response.json()["status"] == "unavailable"

    def test_availability(self, client):
        allocate(client, "PG-001", "job-1")

        ok = client.get("/v1/equipment/PG-001/availability", params={"job_id": "job-1"}).json()
        blocked = client.get("/v1/equipment/PG-001/availability", params={"job_id": "job-2"}).json()

        assert ok["available"] is True
        assert blocked["available"] is False

    def test_availability_requires_job(self, client):
        response = client.get("/v1/equipment/PG-001/availability")
        assert response.status_code == 422


class TestAllocations:
    """Tests for allocate and release."""

    def test_allocate(self, client):
        response = allocate(client, "PG-001", "job-1", job_name="Job One")

        assert response.status_code == 201
        data = response.json()
        assert data["job_id"] == "job-1"
        assert data["job_name"] == "Job One"
        assert data["status"] == "allocated"

        status = client.get("/v1/equipment/PG-001/status").json()
        assert status["allocation"]["job_id"] == "job-1"

    def test_conflict(self, client):
        allocate(client, "PG-001", "job-1")
        response = allocate(client, "PG-001", "job-2")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "ConflictError"
        assert detail["context"]["current_job_id"] == "job-1"
        assert client.get("/v1/conflicts").json()["count"] == 1

    def test_unavailable(self, client):
        response = allocate(client, "PG-004", "job-1")
        assert response.status_code == 422
        assert response.json()["detail"]["context"]["status"] == "maintenance"

    def test_capacity(self, client):
        response = allocate(client, "item-cable-shop", "job-1", quantity=50)
        assert response.status_code == 422
        assert response.json()["detail"]["context"]["available"] == 5

    def test_unknown(self, client):
        response = allocate(client, "PG-404", "job-1")
        assert response.status_code == 404

    def test_adapter_failure(self, client, adapter):
        adapter.fail_ids.add("unit-1")

        response = allocate(client, "PG-001", "job-1")

        assert response.status_code == 502
        assert client.get("/v1/equipment/PG-001/status").json()["status"] == "available"

    def test_bulk_quantity(self, client):
        response = allocate(client, "item-cable-yard", "job-1", quantity=4)

        assert response.status_code == 201
        assert response.json()["quantity"] == 4

    def test_release(self, client):
        allocate(client, "PG-001", "job-1")

        response = client.delete("/v1/allocations/PG-001", params={"job_id": "job-1"})

        assert response.status_code == 200
        assert response.json()["released"] is True
        assert client.get("/v1/equipment/PG-001/status").json()["status"] == "available"

    def test_release_by_other_job(self, client):
        allocate(client, "PG-001", "job-1")

        response = client.delete("/v1/allocations/PG-001", params={"job_id": "job-2"})

        assert response.json()["released"] is False

    def test_job_equipment(self, client):
        allocate(client, "PG-001", "job-1")
        allocate(client, "PG-002", "job-1")

        data = client.get("/v1/jobs/job-1/equipment").json()
        assert sorted(data["equipment_ids"]) == ["PG-001", "PG-002"]


class TestConflicts:
    """Tests for conflict endpoints."""

    def test_resolve_requested(self, client):
        allocate(client, "PG-003", "job-1", job_name="Job One")
        allocate(client, "PG-003", "job-2", job_name="Job Two")

        response = client.post("/v1/conflicts/PG-003/resolve", json={"resolution": "requested"})

        assert response.status_code == 200
        assert response.json()["allocation"]["job_id"] == "job-2"
        assert client.get("/v1/conflicts").json()["count"] == 0

    def test_resolve_unknown(self, client):
        response = client.post("/v1/conflicts/PG-001/resolve", json={"resolution": "current"})
        assert response.status_code == 404

    def test_resolve_invalid_resolution(self, client):
        response = client.post("/v1/conflicts/PG-001/resolve", json={"resolution": "both"})
        assert response.status_code == 422

    def test_withdraw(self, client):
        allocate(client, "PG-003", "job-1")
        allocate(client, "PG-003", "job-2")

        wrong = client.delete("/v1/conflicts/PG-003", params={"job_id": "job-1"})
        right = client.delete("/v1/conflicts/PG-003", params={"job_id": "job-2"})

        assert wrong.status_code == 404
        assert right.status_code == 200
        assert client.get("/v1/conflicts").json()["conflicts"] == []


class TestSyncAndBulk:
    """Tests for sync and bulk endpoints."""

    def test_sync(self, client):
        data = client.post("/v1/sync").json()

        assert data["status"] == "idle"
        assert len(data["refreshed"]) == 4
        assert data["failed"] == []
        assert data["last_sync_time"] is not None

    def test_sync_picks_up_external_change(self, client, adapter):
        adapter.rows(Collection.INDIVIDUAL_EQUIPMENT)["unit-2"]["status"] = "retired"

        client.post("/v1/sync")

        assert client.get("/v1/equipment/PG-002/status").json()["status"] == "unavailable"

    def test_bulk_deploy(self, client):
        response = client.post(
            "/v1/bulk/deploy",
            json={"equipment_ids": ["PG-001", "PG-002", "PG-004"], "job_id": "job-1"},
        )

        data = response.json()
        assert data["status"] == "completed"
        assert data["success_count"] == 2
        assert data["failure_count"] == 1
        assert "PG-004" in data["failures"]

    def test_bulk_status(self, client):
        response = client.post(
            "/v1/bulk/status",
            json={"equipment_ids": ["PG-001"], "params": {"new_status": "red-tagged", "reason": "bent"}},
        )
        assert response.json()["success_count"] == 1
        assert client.get("/v1/equipment/PG-001/status").json()["status"] == "unavailable"

    def test_bulk_status_rejects_holding_status(self, client):
        response = client.post(
            "/v1/bulk/status",
            json={"equipment_ids": ["PG-001"], "params": {"new_status": "deployed"}},
        )
        assert response.status_code == 422

    def test_bulk_transfer(self, client):
        response = client.post(
            "/v1/bulk/transfer",
            json={
                "type_ids": ["type-cable"],
                "params": {"from_location_id": "loc-yard", "to_location_id": "loc-shop", "quantity": 2},
            },
        )
        assert response.json()["success_count"] == 1

    def test_bulk_transfer_invalid_quantity(self, client):
        response = client.post(
            "/v1/bulk/transfer",
            json={
                "type_ids": ["type-cable"],
                "params": {"from_location_id": "loc-yard", "to_location_id": "loc-shop", "quantity": 0},
            },
        )
        assert response.status_code == 422

    def test_bulk_return_and_delete(self, client):
        client.post("/v1/bulk/deploy", json={"equipment_ids": ["PG-001"], "job_id": "job-1"})

        returned = client.post("/v1/bulk/return", json={"equipment_ids": ["PG-001"]}).json()
        deleted = client.post("/v1/bulk/delete", json={"equipment_ids": ["PG-002"]}).json()

        assert returned["success_count"] == 1
        assert deleted["success_count"] == 1
        assert client.get("/v1/equipment/PG-002/status").json()["status"] == "unavailable"

    def test_history_and_clear(self, client):
        client.post("/v1/bulk/deploy", json={"equipment_ids": ["PG-001"], "job_id": "job-1"})

        history = client.get("/v1/bulk/operations").json()
        assert history["count"] == 1
        assert history["is_processing"] is False
        assert history["operations"][0]["type"] == "deploy"

        cleared = client.delete("/v1/bulk/operations/completed").json()
        assert cleared["removed"] == 1
        assert client.get("/v1/bulk/operations").json()["count"] == 0
