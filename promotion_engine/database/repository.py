"""
Data access patterns and repository implementations.

Provides a clean interface for database operations, abstracting
the SQLAlchemy query building. Every method takes the caller's session so
that promotion and rollback can span several repositories in one
transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from promotion_engine.core.data_types import (
    AuditAction,
    Experiment,
    PromotionAuditRecord,
    SafetyCheckResult,
    TriggerType,
    Variant,
    ensure_utc,
)

from .models import (
    ABExperiment,
    ABVariant,
    AIRequest,
    AIResponse,
    AlertHistory,
    AlertSubscription,
    Base,
    PromotionAuditLog,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_IN_CLAUSE_CHUNK = 500


class BaseRepository(Generic[T]):
    """Base repository with common CRUD operations.

    Provides a generic interface for database operations that can
    be extended by specific model repositories.
    """

    model: type[T]

    def create(self, session: Session, **kwargs: Any) -> T:
        """Create a new record.

        Args:
            session: Database session.
            **kwargs: Model field values.

        Returns:
            Created model instance.
        """
        instance = self.model(**kwargs)
        session.add(instance)
        session.flush()
        return instance

    def get_by_id(self, session: Session, id_value: Any) -> T | None:
        """Get a record by primary key.

        Args:
            session: Database session.
            id_value: Primary key value.

        Returns:
            Model instance or None.
        """
        return session.get(self.model, id_value)


# =============================================================================
# Experiments and Variants
# =============================================================================


class ExperimentRepository(BaseRepository[ABExperiment]):
    """Read access to experiments."""

    model = ABExperiment

    def get_by_name(self, session: Session, name: str) -> ABExperiment | None:
        """Get an experiment by its unique name."""
        stmt = select(ABExperiment).where(ABExperiment.name == name)
        return session.scalars(stmt).first()

    def list_active(self, session: Session, now: datetime) -> list[ABExperiment]:
        """Active experiments whose end date has not passed, oldest first.

        Args:
            session: Database session.
            now: Reference time.

        Returns:
            Experiments ordered by start date, then name for a stable order.
        """
        stmt = (
            select(ABExperiment)
            .where(ABExperiment.is_active.is_(True))
            .where((ABExperiment.end_date.is_(None)) | (ABExperiment.end_date > now))
            .order_by(ABExperiment.start_date, ABExperiment.name)
        )
        return list(session.scalars(stmt).all())


class VariantRepository(BaseRepository[ABVariant]):
    """Variant access. Traffic writes happen only through promotion and rollback."""

    model = ABVariant

    def list_for_experiment(
        self,
        session: Session,
        experiment_id: str,
        for_update: bool = False,
    ) -> list[ABVariant]:
        """Variants of an experiment ordered by name.

        Args:
            session: Database session.
            experiment_id: Experiment identity.
            for_update: Take row locks (SELECT ... FOR UPDATE) where supported.
        """
        stmt = (
            select(ABVariant)
            .where(ABVariant.experiment_id == experiment_id)
            .order_by(ABVariant.name)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(session.scalars(stmt).all())

    def apply_traffic(self, session: Session, variants: Iterable[ABVariant], traffic: dict[str, float]) -> None:
        """Set traffic percentages by variant name.

        Args:
            session: Database session.
            variants: Locked variant rows.
            traffic: Variant name to percentage. Missing names get 0.
        """
        for variant in variants:
            variant.traffic_percentage = float(traffic.get(variant.name, 0.0))
        session.flush()


# =============================================================================
# Events
# =============================================================================


class EventRepository:
    """Read access to request/response events."""

    def get_requests(
        self,
        session: Session,
        variant_id: str,
        start: datetime,
        end: datetime,
    ) -> list[AIRequest]:
        """Requests for a variant inside [start, end)."""
        stmt = (
            select(AIRequest)
            .where(AIRequest.variant_id == variant_id)
            .where(AIRequest.created_at >= start)
            .where(AIRequest.created_at < end)
            .order_by(AIRequest.created_at)
        )
        return list(session.scalars(stmt).all())

    def get_responses(self, session: Session, request_ids: Sequence[str]) -> list[AIResponse]:
        """Responses for the given request ids."""
        responses: list[AIResponse] = []
        for offset in range(0, len(request_ids), _IN_CLAUSE_CHUNK):
            chunk = list(request_ids[offset : offset + _IN_CLAUSE_CHUNK])
            stmt = select(AIResponse).where(AIResponse.request_id.in_(chunk))
            responses.extend(session.scalars(stmt).all())
        return responses


# =============================================================================
# Audit Log
# =============================================================================


class AuditRepository(BaseRepository[PromotionAuditLog]):
    """Append-and-selectively-update access to the promotion audit log."""

    model = PromotionAuditLog

    def latest_active_promotion(
        self,
        session: Session,
        experiment_id: str,
        for_update: bool = False,
    ) -> PromotionAuditLog | None:
        """Most recent promotion for the experiment that has not been rolled back."""
        stmt = (
            select(PromotionAuditLog)
            .where(PromotionAuditLog.experiment_id == experiment_id)
            .where(PromotionAuditLog.action == AuditAction.PROMOTED.value)
            .where(PromotionAuditLog.rolled_back_at.is_(None))
            .order_by(desc(PromotionAuditLog.promoted_at))
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()

    def history(self, session: Session, experiment_name: str, limit: int = 100) -> list[PromotionAuditLog]:
        """Audit records for an experiment, newest first."""
        stmt = (
            select(PromotionAuditLog)
            .where(PromotionAuditLog.experiment_name == experiment_name)
            .order_by(desc(PromotionAuditLog.promoted_at))
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    def count_active_promotions_since(self, session: Session, since: datetime) -> int:
        """Promotions executed since a time that have not been rolled back."""
        stmt = (
            select(func.count())
            .select_from(PromotionAuditLog)
            .where(PromotionAuditLog.action == AuditAction.PROMOTED.value)
            .where(PromotionAuditLog.promoted_at >= since)
            .where(PromotionAuditLog.rolled_back_at.is_(None))
        )
        return int(session.scalar(stmt) or 0)

    def mark_rolled_back(
        self,
        session: Session,
        record: PromotionAuditLog,
        rolled_back_at: datetime,
        reason: str,
    ) -> PromotionAuditLog:
        """Stamp the rollback fields. No other column is ever updated."""
        record.rolled_back_at = rolled_back_at
        record.rollback_reason = reason
        session.flush()
        return record


# =============================================================================
# Alerts
# =============================================================================


class SubscriptionRepository(BaseRepository[AlertSubscription]):
    """Alert subscription lookups."""

    model = AlertSubscription

    def list_enabled(self, session: Session, experiment_name: str | None = None) -> list[AlertSubscription]:
        """Enabled subscriptions, global ones plus those scoped to the experiment."""
        stmt = select(AlertSubscription).where(AlertSubscription.enabled.is_(True))
        if experiment_name is not None:
            stmt = stmt.where(
                (AlertSubscription.experiment_name.is_(None))
                | (AlertSubscription.experiment_name == experiment_name)
            )
        else:
            stmt = stmt.where(AlertSubscription.experiment_name.is_(None))
        return list(session.scalars(stmt.order_by(AlertSubscription.user_id)).all())


class AlertHistoryRepository(BaseRepository[AlertHistory]):
    """Delivered alert bookkeeping."""

    model = AlertHistory

    def count_since(
        self,
        session: Session,
        experiment_name: str,
        variant_name: str,
        level: str,
        since: datetime,
    ) -> int:
        """Alerts of a level recorded for a variant since a time."""
        stmt = (
            select(func.count())
            .select_from(AlertHistory)
            .where(AlertHistory.experiment_name == experiment_name)
            .where(AlertHistory.variant_name == variant_name)
            .where(AlertHistory.level == level)
            .where(AlertHistory.created_at >= since)
        )
        return int(session.scalar(stmt) or 0)


# =============================================================================
# Row to domain conversion
# =============================================================================


def experiment_to_domain(row: ABExperiment) -> Experiment:
    return Experiment(
        experiment_id=row.experiment_id,
        name=row.name,
        is_active=row.is_active,
        start_date=ensure_utc(row.start_date),
        end_date=ensure_utc(row.end_date) if row.end_date else None,
    )


def variant_to_domain(row: ABVariant) -> Variant:
    return Variant(
        variant_id=row.variant_id,
        experiment_id=row.experiment_id,
        name=row.name,
        traffic_percentage=row.traffic_percentage,
        config_overrides=row.config_overrides or {},
    )


def audit_to_domain(row: PromotionAuditLog) -> PromotionAuditRecord:
    return PromotionAuditRecord(
        audit_id=row.audit_id,
        experiment_id=row.experiment_id,
        experiment_name=row.experiment_name,
        action=AuditAction(row.action),
        promoted_variant_id=row.promoted_variant_id,
        promoted_variant_name=row.promoted_variant_name,
        previous_variant_id=row.previous_variant_id,
        previous_variant_name=row.previous_variant_name,
        triggered_by=TriggerType(row.triggered_by),
        operator_id=row.operator_id,
        confidence_level=row.confidence_level,
        improvement=row.improvement,
        sample_size=row.sample_size,
        safety_checks=[SafetyCheckResult.model_validate(check) for check in (row.safety_checks or [])],
        reason=row.reason,
        forced=row.forced,
        promoted_at=ensure_utc(row.promoted_at),
        rolled_back_at=ensure_utc(row.rolled_back_at) if row.rolled_back_at else None,
        rollback_reason=row.rollback_reason,
        reverts_audit_id=row.reverts_audit_id,
    )


__all__ = [
    "BaseRepository",
    "ExperimentRepository",
    "VariantRepository",
    "EventRepository",
    "AuditRepository",
    "SubscriptionRepository",
    "AlertHistoryRepository",
    "experiment_to_domain",
    "variant_to_domain",
    "audit_to_domain",
]
