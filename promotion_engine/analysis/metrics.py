"""
Per-variant performance metrics over a time window.

Joins request events with their responses and reduces them to sample
size, error and success rates, and latency percentiles. Also derives the
threshold alerts shown on the monitoring dashboard.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np
from pydantic import BaseModel, Field

from promotion_engine.core.data_types import (
    RequestEvent,
    ResponseEvent,
    Severity,
    SignificanceResult,
    Variant,
    VariantMetrics,
    ensure_utc,
    utc_now,
)
from promotion_engine.core.exceptions import DataSourceError
from promotion_engine.monitoring.alerting import Alert, AlertType

if TYPE_CHECKING:
    from promotion_engine.database.connection import DatabaseManager

logger = logging.getLogger(__name__)


# Alert thresholds
ERROR_RATE_CRITICAL = 0.10
ERROR_RATE_WARNING = 0.05
P95_LATENCY_CRITICAL_MS = 5000.0
P95_LATENCY_WARNING_MS = 2000.0
TRAFFIC_SHARE_FLOOR = 0.10
LOW_SAMPLE_SIZE = 100


# =============================================================================
# Event Store
# =============================================================================


class EventStore(ABC):
    """Read-only access to request and response events."""

    @abstractmethod
    def get_request_events(self, variant_id: str, start: datetime, end: datetime) -> list[RequestEvent]:
        """Requests served by a variant in [start, end)."""

    @abstractmethod
    def get_response_events(self, request_ids: Sequence[str]) -> list[ResponseEvent]:
        """Responses recorded for the given requests."""


class SqlEventStore(EventStore):
    """Event store backed by the ai_requests and ai_responses tables."""

    def __init__(self, db_manager: "DatabaseManager") -> None:
        from promotion_engine.database.repository import EventRepository

        self._db = db_manager
        self._repo = EventRepository()

    def get_request_events(self, variant_id: str, start: datetime, end: datetime) -> list[RequestEvent]:
        with self._db.session() as session:
            rows = self._repo.get_requests(session, variant_id, start, end)
            return [
                RequestEvent(
                    request_id=row.request_id,
                    variant_id=row.variant_id,
                    user_id=row.user_id,
                    created_at=ensure_utc(row.created_at),
                )
                for row in rows
            ]

    def get_response_events(self, request_ids: Sequence[str]) -> list[ResponseEvent]:
        if not request_ids:
            return []
        with self._db.session() as session:
            rows = self._repo.get_responses(session, request_ids)
            return [
                ResponseEvent(
                    request_id=row.request_id,
                    latency_ms=row.latency_ms,
                    error=row.error,
                    created_at=ensure_utc(row.created_at) if row.created_at else None,
                )
                for row in rows
            ]


# =============================================================================
# Aggregation
# =============================================================================


def percentile(values: Sequence[float], pct: float) -> float:
    """Percentile with linear interpolation between order statistics.

    Args:
        values: Sample values, any order.
        pct: Percentile in 0..100.

    Returns:
        The interpolated percentile, or 0.0 for an empty sample.
    """
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), pct, method="linear"))


class MetricsAggregator:
    """Computes VariantMetrics from raw events."""

    def __init__(self, event_store: EventStore, default_window_hours: float = 24.0) -> None:
        """Initialize aggregator.

        Args:
            event_store: Source of request/response events.
            default_window_hours: Trailing window used when no start is given.
        """
        self.event_store = event_store
        self.default_window_hours = default_window_hours

    def _resolve_window(self, start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
        end = ensure_utc(end) if end else utc_now()
        start = ensure_utc(start) if start else end - timedelta(hours=self.default_window_hours)
        return start, end

    def collect_variant_metrics(
        self,
        variant: Variant,
        experiment_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> VariantMetrics:
        """Aggregate one variant's events in [start, end).

        Requests without a response count toward the totals but add
        neither latency nor errors.

        Raises:
            DataSourceError: The event store could not be read.
        """
        start, end = self._resolve_window(start, end)

        try:
            requests = self.event_store.get_request_events(variant.variant_id, start, end)
            responses = self.event_store.get_response_events([r.request_id for r in requests]) if requests else []
        except DataSourceError:
            raise
        except Exception as e:
            raise DataSourceError(
                f"Failed to read events for variant {variant.name}: {e}",
                source="event_store",
            ) from e

        metrics = VariantMetrics(
            variant_id=variant.variant_id,
            variant_name=variant.name,
            experiment_name=experiment_name,
            traffic_percentage=variant.traffic_percentage,
            window_start=start,
            window_end=end,
        )
        total = len(requests)
        if total == 0:
            return metrics

        by_request = {r.request_id: r for r in responses}
        latencies: list[float] = []
        error_count = 0
        for request in requests:
            response = by_request.get(request.request_id)
            if response is None:
                continue
            if response.error is not None:
                error_count += 1
            if response.latency_ms is not None:
                latencies.append(response.latency_ms)

        metrics.total_requests = total
        metrics.sample_size = total
        metrics.unique_users = len({r.user_id for r in requests if r.user_id})
        metrics.error_count = error_count
        metrics.error_rate = error_count / total
        metrics.success_rate = (total - error_count) / total
        metrics.avg_latency_ms = float(np.mean(latencies)) if latencies else 0.0
        metrics.p50_latency_ms = percentile(latencies, 50)
        metrics.p95_latency_ms = percentile(latencies, 95)
        metrics.p99_latency_ms = percentile(latencies, 99)
        metrics.last_request_at = max(r.created_at for r in requests)
        return metrics

    def collect_experiment_metrics(
        self,
        variants: Sequence[Variant],
        experiment_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[VariantMetrics]:
        """Metrics for every variant, with observed traffic shares filled in."""
        start, end = self._resolve_window(start, end)
        results = [self.collect_variant_metrics(v, experiment_name, start, end) for v in variants]

        total = sum(m.total_requests for m in results)
        if total > 0:
            for m in results:
                m.traffic_share = m.total_requests / total

        logger.debug(
            f"Collected metrics for {experiment_name}: {len(results)} variants, {total} requests",
        )
        return results


# =============================================================================
# Threshold Alerts
# =============================================================================


def generate_alerts(metrics: Sequence[VariantMetrics], now: datetime | None = None) -> list[Alert]:
    """Threshold alerts for an experiment's variants.

    Args:
        metrics: Metrics for all variants of one experiment.
        now: Alert timestamp.

    Returns:
        Alerts ordered by variant, most severe first within a variant.
    """
    now = now or utc_now()
    alerts: list[Alert] = []
    experiment_total = sum(m.total_requests for m in metrics)

    for m in metrics:
        common = {"experiment_name": m.experiment_name, "variant_name": m.variant_name, "timestamp": now}

        if m.total_requests > 0:
            if m.error_rate >= ERROR_RATE_CRITICAL:
                alerts.append(
                    Alert(
                        level=Severity.CRITICAL,
                        alert_type=AlertType.ERRORS,
                        message=f"Critical error rate: {m.error_rate * 100:.2f}% ({m.error_count}/{m.total_requests})",
                        metric="error_rate",
                        value=m.error_rate,
                        threshold=ERROR_RATE_CRITICAL,
                        **common,
                    )
                )
            elif m.error_rate >= ERROR_RATE_WARNING:
                alerts.append(
                    Alert(
                        level=Severity.WARNING,
                        alert_type=AlertType.ERRORS,
                        message=f"Elevated error rate: {m.error_rate * 100:.2f}% ({m.error_count}/{m.total_requests})",
                        metric="error_rate",
                        value=m.error_rate,
                        threshold=ERROR_RATE_WARNING,
                        **common,
                    )
                )

            if m.p95_latency_ms >= P95_LATENCY_CRITICAL_MS:
                alerts.append(
                    Alert(
                        level=Severity.CRITICAL,
                        alert_type=AlertType.PERFORMANCE,
                        message=f"Critical p95 latency: {m.p95_latency_ms:.0f}ms",
                        metric="p95_latency_ms",
                        value=m.p95_latency_ms,
                        threshold=P95_LATENCY_CRITICAL_MS,
                        **common,
                    )
                )
            elif m.p95_latency_ms >= P95_LATENCY_WARNING_MS:
                alerts.append(
                    Alert(
                        level=Severity.WARNING,
                        alert_type=AlertType.PERFORMANCE,
                        message=f"High p95 latency: {m.p95_latency_ms:.0f}ms",
                        metric="p95_latency_ms",
                        value=m.p95_latency_ms,
                        threshold=P95_LATENCY_WARNING_MS,
                        **common,
                    )
                )

        expected_share = m.traffic_percentage / 100.0
        if experiment_total > 0 and expected_share > 0 and m.traffic_share < expected_share * TRAFFIC_SHARE_FLOOR:
            alerts.append(
                Alert(
                    level=Severity.WARNING,
                    alert_type=AlertType.TRAFFIC,
                    message=(
                        f"Traffic share {m.traffic_share * 100:.1f}% is far below "
                        f"configured {m.traffic_percentage:.1f}%"
                    ),
                    metric="traffic_share",
                    value=m.traffic_share,
                    threshold=expected_share * TRAFFIC_SHARE_FLOOR,
                    **common,
                )
            )

        if 0 < m.sample_size < LOW_SAMPLE_SIZE:
            alerts.append(
                Alert(
                    level=Severity.INFO,
                    alert_type=AlertType.SIGNIFICANCE,
                    message=f"Sample size {m.sample_size} is below {LOW_SAMPLE_SIZE}; results are not yet meaningful",
                    metric="sample_size",
                    value=float(m.sample_size),
                    threshold=float(LOW_SAMPLE_SIZE),
                    **common,
                )
            )

    return alerts


class ExperimentComparison(BaseModel):
    """Side-by-side view of an experiment's variants for dashboards."""

    experiment_id: str
    experiment_name: str
    variants: list[VariantMetrics] = Field(default_factory=list)
    total_requests: int = 0
    significance: SignificanceResult = Field(default_factory=SignificanceResult)
    alerts: list[Alert] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def critical_alerts(self) -> list[Alert]:
        return [a for a in self.alerts if a.level == Severity.CRITICAL]
