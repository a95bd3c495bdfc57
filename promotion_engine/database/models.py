"""
SQLAlchemy ORM models for the promotion engine.

Defines the tables the engine reads and writes:
- Experiments and variants (read; variant traffic is written by promotion/rollback)
- Request and response events (read-only, used for metrics)
- Promotion audit log (append, rollback fields updated once)
- Alert subscriptions and alert delivery history
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


# =============================================================================
# Experiment Models
# =============================================================================


class ABExperiment(TimestampMixin, Base):
    """A/B experiment definition."""

    __tablename__ = "ab_experiments"

    experiment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    variants: Mapped[list["ABVariant"]] = relationship(
        back_populates="experiment",
        order_by="ABVariant.name",
    )

    def __repr__(self) -> str:
        return f"<ABExperiment({self.name}, active={self.is_active})>"


class ABVariant(TimestampMixin, Base):
    """Variant of an experiment. traffic_percentage is the only mutable field."""

    __tablename__ = "ab_variants"
    __table_args__ = (
        UniqueConstraint("experiment_id", "name", name="uq_variant_experiment_name"),
    )

    variant_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ab_experiments.experiment_id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    traffic_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    config_overrides: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    experiment: Mapped[ABExperiment] = relationship(back_populates="variants")

    def __repr__(self) -> str:
        return f"<ABVariant({self.name}, {self.traffic_percentage}%)>"


# =============================================================================
# Event Models
# =============================================================================


class AIRequest(Base):
    """Request served under a variant."""

    __tablename__ = "ai_requests"
    __table_args__ = (Index("ix_ai_requests_variant_created", "variant_id", "created_at"),)

    request_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    variant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ab_variants.variant_id"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class AIResponse(Base):
    """Response recorded for a request. A non-null error marks a failure."""

    __tablename__ = "ai_responses"

    response_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ai_requests.request_id"), nullable=False, unique=True
    )
    latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# =============================================================================
# Audit Models
# =============================================================================


class PromotionAuditLog(Base):
    """Promotion and rollback audit trail.

    Rows are never deleted. Only rolled_back_at and rollback_reason are
    written after insert.
    """

    __tablename__ = "promotion_audit_log"
    __table_args__ = (
        Index("ix_promotion_audit_experiment_promoted", "experiment_id", "promoted_at"),
    )

    audit_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ab_experiments.experiment_id"), nullable=False
    )
    experiment_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    promoted_variant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    promoted_variant_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    previous_variant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    previous_variant_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(10), nullable=False)
    operator_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence_level: Mapped[float | None] = mapped_column(Float, nullable=True)
    improvement: Mapped[float | None] = mapped_column(Float, nullable=True)
    sample_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    safety_checks: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    forced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    promoted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rollback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reverts_audit_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("promotion_audit_log.audit_id"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<PromotionAuditLog({self.experiment_name}, {self.action}, {self.promoted_variant_name})>"


# =============================================================================
# Alert Models
# =============================================================================


class AlertSubscription(Base):
    """Operator subscription to experiment alerts."""

    __tablename__ = "alert_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    experiment_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    levels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: ["warning", "critical"])
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AlertHistory(Base):
    """Delivered alert bookkeeping."""

    __tablename__ = "alert_history"
    __table_args__ = (
        Index("ix_alert_history_lookup", "experiment_name", "variant_name", "level", "created_at"),
    )

    alert_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    variant_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metric: Mapped[str | None] = mapped_column(String(50), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notifications_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


__all__ = [
    "Base",
    "TimestampMixin",
    "ABExperiment",
    "ABVariant",
    "AIRequest",
    "AIResponse",
    "PromotionAuditLog",
    "AlertSubscription",
    "AlertHistory",
]
