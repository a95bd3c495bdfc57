"""
Promotion executor.

Moves 100% of an experiment's traffic to the winning variant and appends
an audit record, all in one transaction under the experiment's lock. The
variant cache is invalidated and subscribers notified after commit.
"""

from __future__ import annotations

import asyncio

from promotion_engine.core.cache import TTLCache, variants_cache_key
from promotion_engine.core.data_types import (
    AuditAction,
    DispatchStats,
    PromotionAction,
    PromotionAuditRecord,
    PromotionEligibility,
    PromotionResult,
    Recommendation,
    TriggerType,
    utc_now,
)
from promotion_engine.core.exceptions import (
    ExperimentNotFoundError,
    PromotionConflictError,
    ValidationError,
    VariantNotFoundError,
)
from promotion_engine.core.locks import ExperimentLockRegistry
from promotion_engine.database.connection import DatabaseManager
from promotion_engine.database.repository import (
    AuditRepository,
    ExperimentRepository,
    VariantRepository,
    audit_to_domain,
)
from promotion_engine.monitoring.alerting import AlertDispatcher
from promotion_engine.monitoring.logger import LogCategory, get_logger, log_promotion
from promotion_engine.monitoring.metrics import MetricsCollector, get_metrics_collector

logger = get_logger("promotion_executor", LogCategory.PROMOTION)

FULL_TRAFFIC = 100.0


class PromotionExecutor:
    """Executes promotions for eligible (or operator-approved) winners."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        lock_registry: ExperimentLockRegistry,
        cache: TTLCache,
        dispatcher: AlertDispatcher | None = None,
        lock_timeout_seconds: float | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            db_manager: Database manager.
            lock_registry: Per-experiment locks shared with rollback.
            cache: Variant cache invalidated after every write.
            dispatcher: Alert dispatcher for promotion notices.
            lock_timeout_seconds: Wait for the experiment lock.
            metrics_collector: Prometheus metrics collector.
        """
        self._db = db_manager
        self._locks = lock_registry
        self._cache = cache
        self._dispatcher = dispatcher
        self._lock_timeout = lock_timeout_seconds
        self._metrics = metrics_collector or get_metrics_collector()
        self._experiments = ExperimentRepository()
        self._variants = VariantRepository()
        self._audit = AuditRepository()

    @staticmethod
    def authorize(
        eligibility: PromotionEligibility,
        triggered_by: TriggerType,
        force: bool,
    ) -> bool:
        """Whether a promotion may proceed.

        A promote recommendation always may. An operator may approve a
        manual_review recommendation, and force bypasses the checks entirely.
        """
        if force or eligibility.recommendation == Recommendation.PROMOTE:
            return True
        return triggered_by == TriggerType.MANUAL and eligibility.recommendation == Recommendation.MANUAL_REVIEW

    @staticmethod
    def _audit_reason(
        eligibility: PromotionEligibility,
        triggered_by: TriggerType,
        operator_id: str | None,
        forced: bool,
    ) -> str:
        operator = operator_id or "unknown"
        if forced:
            return (
                f"Forced by operator {operator}; safety checks bypassed "
                f"(recommendation: {eligibility.recommendation.value}, {eligibility.reason})"
            )
        if eligibility.recommendation == Recommendation.MANUAL_REVIEW:
            return f"Approved by operator {operator} after manual review: {eligibility.reason}"
        if triggered_by == TriggerType.MANUAL:
            return f"Promoted by operator {operator}: {eligibility.reason}"
        return eligibility.reason

    async def execute(
        self,
        eligibility: PromotionEligibility,
        triggered_by: TriggerType = TriggerType.AUTO,
        operator_id: str | None = None,
        force: bool = False,
        variant_name: str | None = None,
    ) -> PromotionResult:
        """Promote the winner of an evaluated experiment.

        Args:
            eligibility: Fresh eligibility for the experiment.
            triggered_by: Scheduler (auto) or operator (manual).
            operator_id: Operator identity for manual triggers.
            force: Bypass the recommendation. Audited as forced.
            variant_name: Variant to promote. Defaults to the winner; required
                when forcing without a significant winner.

        Returns:
            PromotionResult with action promoted, already_promoted or ineligible.

        Raises:
            PromotionConflictError: The experiment lock was not released in time.
            ValidationError: No variant to promote, or a non-forced promotion
                of a variant other than the winner.
            ExperimentNotFoundError, VariantNotFoundError: Missing rows.
        """
        name = eligibility.experiment_name

        if not self.authorize(eligibility, triggered_by, force):
            self._metrics.record_promotion(PromotionAction.INELIGIBLE.value, triggered_by.value)
            return PromotionResult(
                success=False,
                action=PromotionAction.INELIGIBLE,
                experiment_name=name,
                winning_variant=eligibility.winning_variant,
                message=f"Not eligible for promotion ({eligibility.recommendation.value}): {eligibility.reason}",
                eligibility=eligibility,
            )

        target = variant_name or eligibility.winning_variant
        if target is None:
            raise ValidationError(
                f"No variant to promote for {name}",
                violations=["variant_name: required when there is no significant winner"],
            )
        if not force and eligibility.winning_variant and target != eligibility.winning_variant:
            raise ValidationError(
                f"Variant {target} is not the winner of {name}",
                violations=[f"variant_name: expected {eligibility.winning_variant}, got {target}"],
            )

        forced = force and eligibility.recommendation != Recommendation.PROMOTE
        reason = self._audit_reason(eligibility, triggered_by, operator_id, forced)

        try:
            record = await asyncio.to_thread(
                self._promote_sync, eligibility, target, triggered_by, operator_id, forced, reason
            )
        except PromotionConflictError:
            self._metrics.record_lock_conflict()
            logger.warning(f"Promotion of {name} skipped: experiment locked by another operation")
            raise

        if record is None:
            self._metrics.record_promotion(PromotionAction.ALREADY_PROMOTED.value, triggered_by.value)
            logger.info(f"Variant {target} of {name} already holds 100% traffic")
            return PromotionResult(
                success=True,
                action=PromotionAction.ALREADY_PROMOTED,
                experiment_name=name,
                winning_variant=target,
                message=f"Variant {target} is already promoted",
                eligibility=eligibility,
            )

        self._cache.invalidate(variants_cache_key(name))
        self._metrics.record_promotion(PromotionAction.PROMOTED.value, triggered_by.value)
        log_promotion(
            f"Promoted {target} to 100% traffic",
            experiment=name,
            audit_id=record.audit_id,
            previous_variant=record.previous_variant_name,
            triggered_by=triggered_by.value,
            forced=forced,
        )

        stats = await self._notify(record)
        return PromotionResult(
            success=True,
            action=PromotionAction.PROMOTED,
            experiment_name=name,
            winning_variant=target,
            message=f"Variant {target} promoted to 100% traffic",
            audit_record=record,
            eligibility=eligibility,
            notification_stats=stats,
        )

    def _promote_sync(
        self,
        eligibility: PromotionEligibility,
        target: str,
        triggered_by: TriggerType,
        operator_id: str | None,
        forced: bool,
        reason: str,
    ) -> PromotionAuditRecord | None:
        name = eligibility.experiment_name
        with self._locks.acquire(name, timeout=self._lock_timeout):
            with self._db.session() as session:
                experiment = self._experiments.get_by_name(session, name)
                if experiment is None:
                    raise ExperimentNotFoundError(name)

                variants = self._variants.list_for_experiment(session, experiment.experiment_id, for_update=True)
                winner = next((v for v in variants if v.name == target), None)
                if winner is None:
                    raise VariantNotFoundError(name, target)

                if winner.traffic_percentage >= FULL_TRAFFIC:
                    return None

                # Leader before the change; ties resolve to the first by name.
                previous = max(variants, key=lambda v: v.traffic_percentage)
                self._variants.apply_traffic(session, variants, {winner.name: FULL_TRAFFIC})

                row = self._audit.create(
                    session,
                    experiment_id=experiment.experiment_id,
                    experiment_name=name,
                    action=AuditAction.PROMOTED.value,
                    promoted_variant_id=winner.variant_id,
                    promoted_variant_name=winner.name,
                    previous_variant_id=previous.variant_id,
                    previous_variant_name=previous.name,
                    triggered_by=triggered_by.value,
                    operator_id=operator_id,
                    confidence_level=eligibility.confidence_level,
                    improvement=eligibility.improvement,
                    sample_size=eligibility.sample_size,
                    safety_checks=[check.model_dump(mode="json") for check in eligibility.safety_checks],
                    reason=reason,
                    forced=forced,
                    promoted_at=utc_now(),
                )
                return audit_to_domain(row)

    async def _notify(self, record: PromotionAuditRecord) -> DispatchStats | None:
        if self._dispatcher is None:
            return None
        return await self._dispatcher.notify_promotion(
            experiment_name=record.experiment_name,
            variant_name=record.promoted_variant_name or "",
            previous_variant=record.previous_variant_name,
            confidence_level=record.confidence_level,
            improvement=record.improvement,
            triggered_by=record.triggered_by.value,
            forced=record.forced,
        )
