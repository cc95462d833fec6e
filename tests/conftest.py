"""Shared test fixtures for pytest."""

import copy

import pytest
import pytest_asyncio

from rigalloc.adapters import InMemoryAdapter
from rigalloc.allocation import AllocationStore
from rigalloc.config import Settings
from rigalloc.engine import AllocationEngine
from rigalloc.metrics import metrics
from rigalloc.models import Collection

SEED = {
    Collection.EQUIPMENT_TYPES: [
        {
            "id": "type-gauge",
            "name": "Pressure Gauge",
            "category": "gauges",
            "requires_individual_tracking": True,
            "default_id_prefix": "PG",
        },
        {"id": "type-cable", "name": "100ft Cable", "category": "cables"},
    ],
    Collection.STORAGE_LOCATIONS: [
        {"id": "loc-yard", "name": "Main Yard", "is_default": True},
        {"id": "loc-shop", "name": "Shop"},
    ],
    Collection.EQUIPMENT_ITEMS: [
        {
            "id": "item-cable-yard",
            "type_id": "type-cable",
            "location_id": "loc-yard",
            "quantity": 20,
            "status": "available",
        },
        {
            "id": "item-cable-shop",
            "type_id": "type-cable",
            "location_id": "loc-shop",
            "quantity": 5,
            "status": "available",
        },
    ],
    Collection.INDIVIDUAL_EQUIPMENT: [
        {
            "id": f"unit-{n}",
            "equipment_id": f"PG-00{n}",
            "name": f"Pressure Gauge {n}",
            "type_id": "type-gauge",
            "location_id": "loc-shop",
            "status": "maintenance" if n == 4 else "available",
        }
        for n in range(1, 5)
    ],
}


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty metrics."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def seed_data():
    """A fresh copy of the seed inventory."""
    return copy.deepcopy(SEED)


@pytest.fixture
def adapter(seed_data):
    """In-memory adapter holding the seed inventory."""
    return InMemoryAdapter(seed=seed_data)


@pytest.fixture
def store(seed_data):
    """Allocation store loaded straight from the seed inventory."""
    store = AllocationStore()
    for collection, records in seed_data.items():
        store.load_snapshot(collection, records)
    return store


@pytest.fixture
def settings():
    """Settings with short timers so sync tests stay fast."""
    return Settings(
        _env_file=None,
        debounce_ms=40,
        individual_debounce_ms=20,
        suppression_ttl_seconds=0.5,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def engine(adapter, settings):
    """A started engine over the in-memory adapter."""
    engine = AllocationEngine.create(adapter, settings)
    await engine.start()
    yield engine
    await engine.stop()


@pytest.fixture
def client(adapter, settings):
    """Test client for the server over the in-memory adapter."""
    from fastapi.testclient import TestClient

    from rigalloc.server import create_app

    app = create_app(adapter=adapter, settings=settings)
    with TestClient(app) as test_client:
        yield test_client
