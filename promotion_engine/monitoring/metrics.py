"""
Prometheus metrics collection for the promotion engine.

Provides metrics for:
- Eligibility evaluations (recommendation counts, duration)
- Promotions and rollbacks
- Notification delivery
- Scheduler runs and remaining promotion quota
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry(auto_describe=True)


# =============================================================================
# System Metrics
# =============================================================================

ENGINE_INFO = Info(
    "promotion_engine",
    "Promotion engine information",
    registry=REGISTRY,
)

ERRORS_TOTAL = Counter(
    "promotion_engine_errors_total",
    "Total number of errors",
    ["error_type", "component"],
    registry=REGISTRY,
)


# =============================================================================
# Evaluation Metrics
# =============================================================================

EVALUATIONS_TOTAL = Counter(
    "promotion_evaluations_total",
    "Eligibility evaluations by recommendation",
    ["recommendation"],
    registry=REGISTRY,
)

EVALUATION_DURATION = Histogram(
    "promotion_evaluation_duration_seconds",
    "Time spent evaluating one experiment",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

SAFETY_CHECK_FAILURES = Counter(
    "promotion_safety_check_failures_total",
    "Failed safety checks by name and severity",
    ["check", "severity"],
    registry=REGISTRY,
)


# =============================================================================
# Promotion Metrics
# =============================================================================

PROMOTIONS_TOTAL = Counter(
    "promotions_total",
    "Promotion attempts by outcome and trigger",
    ["action", "trigger"],
    registry=REGISTRY,
)

ROLLBACKS_TOTAL = Counter(
    "promotion_rollbacks_total",
    "Rollbacks executed",
    registry=REGISTRY,
)

LOCK_CONFLICTS_TOTAL = Counter(
    "promotion_lock_conflicts_total",
    "Promotion or rollback attempts rejected by a held experiment lock",
    registry=REGISTRY,
)


# =============================================================================
# Notification Metrics
# =============================================================================

NOTIFICATIONS_TOTAL = Counter(
    "promotion_notifications_total",
    "Notification deliveries by status",
    ["status"],
    registry=REGISTRY,
)


# =============================================================================
# Scheduler Metrics
# =============================================================================

SCHEDULER_RUNS_TOTAL = Counter(
    "promotion_scheduler_runs_total",
    "Scheduler runs by outcome",
    ["outcome"],
    registry=REGISTRY,
)

SCHEDULER_RUN_DURATION = Histogram(
    "promotion_scheduler_run_duration_seconds",
    "Duration of a full scheduler scan",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
    registry=REGISTRY,
)

PROMOTION_QUOTA_REMAINING = Gauge(
    "promotion_quota_remaining",
    "Promotions still allowed in the current rolling window",
    registry=REGISTRY,
)


# =============================================================================
# Metrics Collector Class
# =============================================================================

class MetricsCollector:
    """Central metrics collector for the promotion engine.

    Provides convenient methods for updating metrics and generating
    Prometheus-compatible output.
    """

    _instance: "MetricsCollector | None" = None

    def __new__(cls) -> "MetricsCollector":
        """Singleton pattern for metrics collector."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def set_engine_info(self, version: str, environment: str) -> None:
        """Set engine version and environment labels."""
        ENGINE_INFO.info({"version": version, "environment": environment})

    def record_error(self, error_type: str, component: str) -> None:
        ERRORS_TOTAL.labels(error_type=error_type, component=component).inc()

    def record_evaluation(self, recommendation: str, duration_seconds: float) -> None:
        """Record one eligibility evaluation.

        Args:
            recommendation: Recommendation value.
            duration_seconds: Evaluation time.
        """
        EVALUATIONS_TOTAL.labels(recommendation=recommendation).inc()
        EVALUATION_DURATION.observe(duration_seconds)

    def record_safety_check_failure(self, check: str, severity: str) -> None:
        SAFETY_CHECK_FAILURES.labels(check=check, severity=severity).inc()

    def record_promotion(self, action: str, trigger: str) -> None:
        """Record a promotion attempt outcome."""
        PROMOTIONS_TOTAL.labels(action=action, trigger=trigger).inc()

    def record_rollback(self) -> None:
        ROLLBACKS_TOTAL.inc()

    def record_lock_conflict(self) -> None:
        LOCK_CONFLICTS_TOTAL.inc()

    def record_notifications(self, sent: int, failed: int) -> None:
        """Record notification delivery counts from one dispatch."""
        if sent:
            NOTIFICATIONS_TOTAL.labels(status="sent").inc(sent)
        if failed:
            NOTIFICATIONS_TOTAL.labels(status="failed").inc(failed)

    def record_scheduler_run(self, outcome: str, duration_seconds: float) -> None:
        SCHEDULER_RUNS_TOTAL.labels(outcome=outcome).inc()
        SCHEDULER_RUN_DURATION.observe(duration_seconds)

    def set_quota_remaining(self, remaining: int) -> None:
        PROMOTION_QUOTA_REMAINING.set(max(remaining, 0))

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics output.

        Returns:
            Prometheus metrics in text format.
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


def get_metrics_collector() -> MetricsCollector:
    """Get the singleton metrics collector instance.

    Returns:
        MetricsCollector instance.
    """
    return MetricsCollector()
