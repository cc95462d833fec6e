"""Tests for metrics and observability features."""

import pytest

from rigalloc.errors import ConflictError
from rigalloc.metrics import (
    Histogram,
    MetricsRegistry,
    metrics,
    record_batch,
    record_conflict,
    record_refetch,
    record_suppressed,
)
from rigalloc.models import Collection


class TestHistogram:
    """Tests for the Histogram class."""

    def test_observe(self):
        hist = Histogram()
        hist.observe(0.01)
        hist.observe(0.02)
        hist.observe(0.03)
        assert hist.count == 3
        assert hist.sum == pytest.approx(0.06)

    def test_bucket_counts(self):
        """Each value increments every bucket it fits into."""
        hist = Histogram()
        hist.observe(0.001)
        hist.observe(0.008)
        hist.observe(0.02)

        assert hist.counts[0.005] == 1
        assert hist.counts[0.01] == 2
        assert hist.counts[0.025] == 3

    def test_render(self):
        hist = Histogram()
        hist.observe(0.01)
        output = "\n".join(hist.render("test_histogram", 'collection="units"'))

        assert 'test_histogram_bucket{le="+Inf", collection="units"} 1' in output
        assert 'test_histogram_sum{collection="units"}' in output
        assert 'test_histogram_count{collection="units"} 1' in output


class TestMetricsRegistry:
    """Tests for the MetricsRegistry class."""

    def test_counter_with_labels(self):
        registry = MetricsRegistry()
        registry.inc_counter("test_counter", {"method": "GET"})
        registry.inc_counter("test_counter", {"method": "POST"})
        registry.inc_counter("test_counter", {"method": "GET"})

        assert registry.counter_value("test_counter", {"method": "GET"}) == 2
        assert registry.counter_value("test_counter", {"method": "PUT"}) == 0
        assert registry.counter_value("missing") == 0

    def test_histogram_stats(self):
        registry = MetricsRegistry()
        registry.observe_histogram("test_hist", 0.1)
        registry.observe_histogram("test_hist", 0.2)

        stats = registry.get_stats()
        assert stats["histograms"]["test_hist"][""]["count"] == 2
        assert stats["histograms"]["test_hist"][""]["sum"] == pytest.approx(0.3)

    def test_prometheus_output(self):
        registry = MetricsRegistry()
        registry.inc_counter("requests_total", {"path": "/test"})
        registry.inc_counter("plain_total")
        registry.observe_histogram("request_duration", 0.1)

        output = registry.to_prometheus()
        assert "# TYPE requests_total counter" in output
        assert 'requests_total{path="/test"} 1' in output
        assert "plain_total 1" in output
        assert "# TYPE request_duration histogram" in output

    def test_reset(self):
        registry = MetricsRegistry()
        registry.inc_counter("test_counter")
        registry.reset()
        assert registry.get_stats() == {"counters": {}, "histograms": {}}


class TestRecorders:
    """Tests for the domain recording helpers."""

    def test_record_batch(self):
        record_batch("deploy", 24, 1, 0.5)

        assert metrics.counter_value(
            "rigalloc_batch_items_total", {"operation": "deploy", "outcome": "success"}
        ) == 24
        assert metrics.counter_value(
            "rigalloc_batch_items_total", {"operation": "deploy", "outcome": "failure"}
        ) == 1

    def test_record_refetch_and_suppressed(self):
        record_refetch("equipment_items", "success", 0.01)
        record_suppressed("equipment_items")

        assert metrics.counter_value(
            "rigalloc_refetches_total", {"collection": "equipment_items", "outcome": "success"}
        ) == 1
        assert metrics.counter_value(
            "rigalloc_notifications_suppressed_total", {"collection": "equipment_items"}
        ) == 1

    def test_record_conflict(self):
        record_conflict("detected")
        assert metrics.counter_value("rigalloc_conflicts_total", {"action": "detected"}) == 1


@pytest.mark.asyncio
class TestEngineMetrics:
    """Metrics emitted by the engine during normal work."""

    async def test_conflict_lifecycle_counted(self, engine):
        await engine.allocate_equipment("PG-003", "job-1")
        with pytest.raises(ConflictError):
            await engine.allocate_equipment("PG-003", "job-2")
        await engine.resolve_conflict("PG-003", "requested")

        assert metrics.counter_value("rigalloc_conflicts_total", {"action": "detected"}) == 1
        assert metrics.counter_value("rigalloc_conflicts_total", {"action": "resolved_requested"}) == 1

    async def test_suppressed_echo_counted(self, engine):
        await engine.allocate_equipment("PG-001", "job-1")
        await engine.coordinator.wait_idle()

        assert metrics.counter_value(
            "rigalloc_notifications_suppressed_total",
            {"collection": Collection.INDIVIDUAL_EQUIPMENT.value},
        ) >= 1


class TestRequestTracing:
    """Tests for request tracing middleware."""

    def test_correlation_id_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Correlation-ID"] == response.headers["X-Request-ID"]

    def test_requests_counted_by_route(self, client):
        client.get("/v1/conflicts")
        client.get("/metrics")

        assert metrics.counter_value(
            "rigalloc_http_requests_total",
            {"method": "GET", "path": "/v1/conflicts", "status": "200"},
        ) == 1
        assert "/metrics" not in str(metrics.get_stats()["counters"])
