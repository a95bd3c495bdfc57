"""
Core data types for the promotion engine.

Provides pydantic models for:
- Experiments, variants and the raw request/response events behind them
- Derived per-variant metrics and significance results
- Safety check results and promotion eligibility
- Promotion audit records and operation results
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


CONTROL_VARIANT_NAME = "control"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to UTC. Naive datetimes (as returned by SQLite) are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enumerations
# =============================================================================


class Severity(str, Enum):
    """Severity shared by safety checks and alerts."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordering used for minimum-level filtering."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class Recommendation(str, Enum):
    """Outcome of an eligibility evaluation."""

    PROMOTE = "promote"
    WAIT = "wait"
    MANUAL_REVIEW = "manual_review"
    NOT_READY = "not_ready"


class TriggerType(str, Enum):
    """Who initiated a promotion or rollback."""

    AUTO = "auto"
    MANUAL = "manual"


class AuditAction(str, Enum):
    """Audit record type."""

    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


class PromotionAction(str, Enum):
    """Outcome of a promotion attempt."""

    PROMOTED = "promoted"
    ALREADY_PROMOTED = "already_promoted"
    INELIGIBLE = "ineligible"
    DRY_RUN = "dry_run"


class SafetyCheckName(str, Enum):
    """Safety checks in evaluation order."""

    EXCLUSION_LIST = "exclusion_list"
    WINNER_SAMPLE_SIZE = "winner_sample_size"
    CONTROL_SAMPLE_SIZE = "control_sample_size"
    STATISTICAL_CONFIDENCE = "statistical_confidence"
    IMPROVEMENT_THRESHOLD = "improvement_threshold"
    WINNER_ERROR_RATE = "winner_error_rate"
    ERROR_RATE_COMPARISON = "error_rate_comparison"
    WINNER_LATENCY = "winner_latency"
    LATENCY_COMPARISON = "latency_comparison"
    MIN_TEST_DURATION = "min_test_duration"
    MAX_TEST_DURATION = "max_test_duration"
    TRAFFIC_BALANCE = "traffic_balance"
    RECENT_ALERTS = "recent_alerts"
    MANUAL_APPROVAL_REQUIRED = "manual_approval_required"


# =============================================================================
# Experiment Data
# =============================================================================


class Experiment(BaseModel):
    """A/B experiment as stored by the experiment service."""

    experiment_id: str
    name: str
    is_active: bool = True
    start_date: datetime
    end_date: datetime | None = None

    def duration_hours(self, now: datetime | None = None) -> float:
        """Hours elapsed since the experiment started."""
        now = now or utc_now()
        return (ensure_utc(now) - ensure_utc(self.start_date)).total_seconds() / 3600.0

    def is_running(self, now: datetime | None = None) -> bool:
        """Active flag set and end date not yet reached."""
        now = ensure_utc(now or utc_now())
        if not self.is_active:
            return False
        return self.end_date is None or ensure_utc(self.end_date) > now


class Variant(BaseModel):
    """One arm of an experiment."""

    variant_id: str
    experiment_id: str
    name: str
    traffic_percentage: float = Field(ge=0, le=100)
    config_overrides: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_control(self) -> bool:
        return self.name == CONTROL_VARIANT_NAME


class RequestEvent(BaseModel):
    """A request served by a variant."""

    request_id: str
    variant_id: str
    user_id: str | None = None
    created_at: datetime


class ResponseEvent(BaseModel):
    """The response recorded for a request."""

    request_id: str
    latency_ms: float | None = None
    error: str | None = None
    created_at: datetime | None = None


# =============================================================================
# Derived Metrics
# =============================================================================


class VariantMetrics(BaseModel):
    """Performance statistics for one variant over a time window."""

    variant_id: str
    variant_name: str
    experiment_name: str
    traffic_percentage: float = 0.0
    traffic_share: float = 0.0
    total_requests: int = 0
    unique_users: int = 0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    error_count: int = 0
    error_rate: float = 0.0
    success_rate: float = 0.0
    sample_size: int = 0
    window_start: datetime | None = None
    window_end: datetime | None = None
    last_request_at: datetime | None = None


class SignificanceResult(BaseModel):
    """Result of comparing the best variant against the baseline."""

    has_significance: bool = False
    winner: str | None = None
    control: str | None = None
    contender: str | None = None
    confidence_level: float = 0.0
    z_score: float | None = None
    p_value: float | None = None


class SafetyCheckResult(BaseModel):
    """Outcome of a single safety check."""

    name: SafetyCheckName
    passed: bool
    message: str
    severity: Severity
    value: Any = None
    threshold: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return self.model_dump(mode="json")


class PromotionEligibility(BaseModel):
    """Combined significance and safety verdict for an experiment."""

    eligible: bool
    experiment_id: str | None = None
    experiment_name: str
    winning_variant: str | None = None
    control_variant: str | None = None
    confidence_level: float = 0.0
    improvement: float | None = None
    sample_size: int = 0
    safety_checks: list[SafetyCheckResult] = Field(default_factory=list)
    recommendation: Recommendation
    reason: str
    evaluated_at: datetime = Field(default_factory=utc_now)

    @property
    def failed_checks(self) -> list[SafetyCheckResult]:
        return [check for check in self.safety_checks if not check.passed]


# =============================================================================
# Audit and Results
# =============================================================================


class PromotionAuditRecord(BaseModel):
    """Immutable record of a promotion or rollback."""

    audit_id: str
    experiment_id: str
    experiment_name: str
    action: AuditAction
    promoted_variant_id: str | None = None
    promoted_variant_name: str | None = None
    previous_variant_id: str | None = None
    previous_variant_name: str | None = None
    triggered_by: TriggerType
    operator_id: str | None = None
    confidence_level: float | None = None
    improvement: float | None = None
    sample_size: int | None = None
    safety_checks: list[SafetyCheckResult] = Field(default_factory=list)
    reason: str | None = None
    forced: bool = False
    promoted_at: datetime
    rolled_back_at: datetime | None = None
    rollback_reason: str | None = None
    reverts_audit_id: str | None = None

    @property
    def is_active_promotion(self) -> bool:
        return self.action == AuditAction.PROMOTED and self.rolled_back_at is None


class DispatchStats(BaseModel):
    """Counts from one alert dispatch."""

    total_alerts: int = 0
    sent: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: "DispatchStats") -> "DispatchStats":
        return DispatchStats(
            total_alerts=self.total_alerts + other.total_alerts,
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )


class PromotionResult(BaseModel):
    """Outcome of a promotion attempt."""

    success: bool
    action: PromotionAction
    experiment_name: str
    winning_variant: str | None = None
    message: str
    audit_record: PromotionAuditRecord | None = None
    eligibility: PromotionEligibility | None = None
    notification_stats: DispatchStats | None = None


class RollbackResult(BaseModel):
    """Outcome of a rollback."""

    experiment_name: str
    rolled_back_variant: str | None = None
    restored_traffic: dict[str, float] = Field(default_factory=dict)
    audit_record: PromotionAuditRecord
    reverted_record: PromotionAuditRecord
    message: str
    notification_stats: DispatchStats | None = None


__all__ = [
    "CONTROL_VARIANT_NAME",
    "utc_now",
    "ensure_utc",
    "Severity",
    "Recommendation",
    "TriggerType",
    "AuditAction",
    "PromotionAction",
    "SafetyCheckName",
    "Experiment",
    "Variant",
    "RequestEvent",
    "ResponseEvent",
    "VariantMetrics",
    "SignificanceResult",
    "SafetyCheckResult",
    "PromotionEligibility",
    "PromotionAuditRecord",
    "DispatchStats",
    "PromotionResult",
    "RollbackResult",
]
