"""
Unit tests for analysis/metrics.py
"""

from datetime import timedelta

import pytest

from promotion_engine.analysis.metrics import (
    ERROR_RATE_CRITICAL,
    EventStore,
    MetricsAggregator,
    generate_alerts,
    percentile,
)
from promotion_engine.core.data_types import RequestEvent, ResponseEvent, Severity, Variant
from promotion_engine.core.exceptions import DataSourceError
from promotion_engine.monitoring.alerting import AlertType


class FakeEventStore(EventStore):
    """In-memory event store."""

    def __init__(self, requests=None, responses=None, fail=False):
        self.requests = requests or []
        self.responses = responses or []
        self.fail = fail

    def get_request_events(self, variant_id, start, end):
        if self.fail:
            raise ConnectionError("connection reset")
        return [r for r in self.requests if r.variant_id == variant_id and start <= r.created_at < end]

    def get_response_events(self, request_ids):
        wanted = set(request_ids)
        return [r for r in self.responses if r.request_id in wanted]


def _variant(name, traffic=50.0):
    return Variant(variant_id=f"{name}-id", experiment_id="exp-1", name=name, traffic_percentage=traffic)


class TestPercentile:
    """Tests for linear-interpolation percentiles."""

    def test_empty(self):
        """An empty sample yields 0."""
        assert percentile([], 95) == 0.0

    def test_interpolation(self):
        """Values between order statistics are interpolated."""
        assert percentile([10, 20, 30, 40], 50) == pytest.approx(25.0)
        assert percentile([10, 20, 30, 40], 100) == pytest.approx(40.0)

    def test_unsorted_input(self):
        """Input order does not matter."""
        assert percentile([40, 10, 30, 20], 50) == pytest.approx(25.0)


class TestMetricsAggregator:
    """Tests for MetricsAggregator."""

    def _store(self, fixed_now):
        at = fixed_now - timedelta(hours=1)
        requests = [
            RequestEvent(request_id=f"r{i}", variant_id="treatment-id", user_id=f"u{i % 3}", created_at=at)
            for i in range(4)
        ]
        responses = [
            ResponseEvent(request_id="r0", latency_ms=100.0),
            ResponseEvent(request_id="r1", latency_ms=200.0),
            ResponseEvent(request_id="r2", latency_ms=300.0, error="timeout"),
        ]
        return FakeEventStore(requests, responses)

    def test_collect_variant_metrics(self, fixed_now):
        """Requests without responses count toward totals only."""
        aggregator = MetricsAggregator(self._store(fixed_now))
        metrics = aggregator.collect_variant_metrics(_variant("treatment"), "checkout_flow", end=fixed_now)

        assert metrics.total_requests == 4
        assert metrics.sample_size == 4
        assert metrics.unique_users == 3
        assert metrics.error_count == 1
        assert metrics.error_rate == pytest.approx(0.25)
        assert metrics.success_rate == pytest.approx(0.75)
        assert metrics.avg_latency_ms == pytest.approx(200.0)
        assert metrics.p50_latency_ms == pytest.approx(200.0)
        assert metrics.window_end == fixed_now
        assert metrics.window_start == fixed_now - timedelta(hours=24)

    def test_no_requests(self, fixed_now):
        """A variant without requests has zeroed metrics."""
        aggregator = MetricsAggregator(FakeEventStore())
        metrics = aggregator.collect_variant_metrics(_variant("control"), "checkout_flow", end=fixed_now)
        assert metrics.total_requests == 0
        assert metrics.success_rate == 0.0
        assert metrics.p95_latency_ms == 0.0

    def test_window_excludes_old_events(self, fixed_now):
        """Events before the window start are ignored."""
        store = self._store(fixed_now)
        aggregator = MetricsAggregator(store, default_window_hours=0.5)
        metrics = aggregator.collect_variant_metrics(_variant("treatment"), "checkout_flow", end=fixed_now)
        assert metrics.total_requests == 0

    def test_store_failure_propagates(self, fixed_now):
        """Event store failures are raised as DataSourceError, never zero activity."""
        aggregator = MetricsAggregator(FakeEventStore(fail=True))
        with pytest.raises(DataSourceError) as exc_info:
            aggregator.collect_variant_metrics(_variant("control"), "checkout_flow", end=fixed_now)
        assert exc_info.value.source == "event_store"

    def test_traffic_share(self, fixed_now):
        """Observed traffic shares are filled in across variants."""
        at = fixed_now - timedelta(minutes=5)
        requests = [
            RequestEvent(request_id=f"c{i}", variant_id="control-id", created_at=at) for i in range(3)
        ] + [RequestEvent(request_id="t0", variant_id="treatment-id", created_at=at)]
        aggregator = MetricsAggregator(FakeEventStore(requests))
        metrics = aggregator.collect_experiment_metrics(
            [_variant("control"), _variant("treatment")], "checkout_flow", end=fixed_now
        )
        shares = {m.variant_name: m.traffic_share for m in metrics}
        assert shares == {"control": pytest.approx(0.75), "treatment": pytest.approx(0.25)}


class TestGenerateAlerts:
    """Tests for threshold alerts."""

    def test_critical_error_rate(self, metrics_factory, fixed_now):
        """An error rate at the critical threshold raises a critical alert."""
        metrics = [metrics_factory("treatment", requests=100, errors=10)]
        alerts = generate_alerts(metrics, fixed_now)
        errors = [a for a in alerts if a.alert_type == AlertType.ERRORS]
        assert len(errors) == 1
        assert errors[0].level == Severity.CRITICAL
        assert errors[0].threshold == ERROR_RATE_CRITICAL

    def test_warning_latency(self, metrics_factory, fixed_now):
        """A p95 between the warning and critical thresholds warns."""
        alerts = generate_alerts([metrics_factory("treatment", requests=500, p95=2500.0)], fixed_now)
        assert [(a.alert_type, a.level) for a in alerts] == [(AlertType.PERFORMANCE, Severity.WARNING)]

    def test_starved_variant(self, metrics_factory, fixed_now):
        """A variant far below its configured share raises a traffic alert."""
        metrics = [
            metrics_factory("control", requests=980, share=0.98),
            metrics_factory("treatment", requests=20, share=0.02),
        ]
        alerts = generate_alerts(metrics, fixed_now)
        traffic = [a for a in alerts if a.alert_type == AlertType.TRAFFIC]
        assert len(traffic) == 1
        assert traffic[0].variant_name == "treatment"

    def test_low_sample_info(self, metrics_factory, fixed_now):
        """Small samples raise an info alert."""
        alerts = generate_alerts([metrics_factory("control", requests=50, share=1.0, traffic=100.0)], fixed_now)
        assert any(a.alert_type == AlertType.SIGNIFICANCE and a.level == Severity.INFO for a in alerts)

    def test_healthy_variants(self, metrics_factory, fixed_now):
        """Healthy variants raise nothing."""
        metrics = [metrics_factory("control"), metrics_factory("treatment")]
        assert generate_alerts(metrics, fixed_now) == []
