"""
Rollback of the most recent promotion.

Restores a traffic split (equal by default, or operator supplied), stamps
the reverted promotion and appends a rolled_back audit record. Audit rows
are never deleted.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Mapping
from dataclasses import dataclass

from promotion_engine.core.cache import TTLCache, variants_cache_key
from promotion_engine.core.data_types import (
    AuditAction,
    PromotionAuditRecord,
    RollbackResult,
    TriggerType,
    utc_now,
)
from promotion_engine.core.exceptions import (
    ExperimentNotFoundError,
    InvalidTrafficSplitError,
    NoActivePromotionError,
    PromotionConflictError,
    ValidationError,
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
from promotion_engine.monitoring.logger import LogCategory, get_logger, log_rollback
from promotion_engine.monitoring.metrics import MetricsCollector, get_metrics_collector

logger = get_logger("rollback", LogCategory.ROLLBACK)

TRAFFIC_SUM_TOLERANCE = 0.01


def validate_traffic_values(traffic: Mapping[str, float]) -> None:
    """Check a split's values, independent of the experiment's variants.

    Raises:
        InvalidTrafficSplitError: With one violation per bad entry, plus one
            for the total when it is not 100.
    """
    violations: list[str] = []
    if not traffic:
        violations.append("traffic: at least one variant is required")
    for name, pct in traffic.items():
        if not isinstance(pct, (int, float)) or math.isnan(pct) or pct < 0 or pct > 100:
            violations.append(f"{name}: {pct} is outside 0..100")

    total = sum(float(p) for p in traffic.values() if isinstance(p, (int, float)))
    if traffic and abs(total - 100.0) > TRAFFIC_SUM_TOLERANCE:
        violations.append(f"total: percentages sum to {total:g}, expected 100")

    if violations:
        raise InvalidTrafficSplitError(
            f"Invalid traffic split ({len(violations)} violation(s))",
            violations=violations,
        )


def equal_split(variant_names: list[str]) -> dict[str, float]:
    """Equal share of 100% for every variant."""
    share = 100.0 / len(variant_names)
    return {name: share for name in variant_names}


@dataclass
class _RollbackOutcome:
    record: PromotionAuditRecord
    reverted: PromotionAuditRecord
    traffic: dict[str, float]


class RollbackManager:
    """Reverts promotions under the shared per-experiment lock."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        lock_registry: ExperimentLockRegistry,
        cache: TTLCache,
        dispatcher: AlertDispatcher | None = None,
        lock_timeout_seconds: float | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        self._db = db_manager
        self._locks = lock_registry
        self._cache = cache
        self._dispatcher = dispatcher
        self._lock_timeout = lock_timeout_seconds
        self._metrics = metrics_collector or get_metrics_collector()
        self._experiments = ExperimentRepository()
        self._variants = VariantRepository()
        self._audit = AuditRepository()

    async def rollback(
        self,
        experiment_name: str,
        reason: str,
        traffic: Mapping[str, float] | None = None,
        operator_id: str | None = None,
        triggered_by: TriggerType = TriggerType.MANUAL,
    ) -> RollbackResult:
        """Revert the latest active promotion of an experiment.

        Args:
            experiment_name: Experiment to roll back.
            reason: Why the promotion is reverted.
            traffic: Variant name to percentage. Unlisted variants get 0.
                Defaults to an equal split across all variants.
            operator_id: Operator performing the rollback.
            triggered_by: Defaults to manual.

        Returns:
            RollbackResult with the restored split and both audit records.

        Raises:
            ValidationError: Empty reason.
            InvalidTrafficSplitError: Bad values or unknown variant names.
                Nothing is written.
            NoActivePromotionError: Nothing to roll back.
            PromotionConflictError: The experiment lock was not released in time.
        """
        if not reason or not reason.strip():
            raise ValidationError("Rollback reason is required", violations=["reason: must not be empty"])
        if traffic is not None:
            validate_traffic_values(traffic)

        try:
            outcome = await asyncio.to_thread(
                self._rollback_sync, experiment_name, reason.strip(), traffic, operator_id, triggered_by
            )
        except PromotionConflictError:
            self._metrics.record_lock_conflict()
            logger.warning(f"Rollback of {experiment_name} skipped: experiment locked by another operation")
            raise

        self._cache.invalidate(variants_cache_key(experiment_name))
        self._metrics.record_rollback()
        rolled_back = outcome.reverted.promoted_variant_name
        log_rollback(
            f"Rolled back promotion of {rolled_back}",
            experiment=experiment_name,
            reason=reason,
            audit_id=outcome.record.audit_id,
            reverts_audit_id=outcome.reverted.audit_id,
            traffic=outcome.traffic,
        )

        stats = None
        if self._dispatcher is not None:
            stats = await self._dispatcher.notify_rollback(
                experiment_name=experiment_name,
                rolled_back_variant=rolled_back,
                reason=reason,
                restored_traffic=outcome.traffic,
            )

        return RollbackResult(
            experiment_name=experiment_name,
            rolled_back_variant=rolled_back,
            restored_traffic=outcome.traffic,
            audit_record=outcome.record,
            reverted_record=outcome.reverted,
            message=f"Promotion of {rolled_back} rolled back",
            notification_stats=stats,
        )

    def _rollback_sync(
        self,
        experiment_name: str,
        reason: str,
        traffic: Mapping[str, float] | None,
        operator_id: str | None,
        triggered_by: TriggerType,
    ) -> _RollbackOutcome:
        with self._locks.acquire(experiment_name, timeout=self._lock_timeout):
            with self._db.session() as session:
                experiment = self._experiments.get_by_name(session, experiment_name)
                if experiment is None:
                    raise ExperimentNotFoundError(experiment_name)

                active = self._audit.latest_active_promotion(session, experiment.experiment_id, for_update=True)
                if active is None:
                    raise NoActivePromotionError(experiment_name)

                variants = self._variants.list_for_experiment(session, experiment.experiment_id, for_update=True)
                names = [v.name for v in variants]
                if traffic is None:
                    split = equal_split(names)
                else:
                    unknown = [name for name in traffic if name not in names]
                    if unknown:
                        raise InvalidTrafficSplitError(
                            f"Unknown variant(s) for {experiment_name}",
                            violations=[f"{name}: not a variant of {experiment_name}" for name in unknown],
                        )
                    split = {name: float(traffic.get(name, 0.0)) for name in names}

                self._variants.apply_traffic(session, variants, split)

                now = utc_now()
                self._audit.mark_rolled_back(session, active, now, reason)
                row = self._audit.create(
                    session,
                    experiment_id=experiment.experiment_id,
                    experiment_name=experiment_name,
                    action=AuditAction.ROLLED_BACK.value,
                    promoted_variant_id=active.previous_variant_id,
                    promoted_variant_name=active.previous_variant_name,
                    previous_variant_id=active.promoted_variant_id,
                    previous_variant_name=active.promoted_variant_name,
                    triggered_by=triggered_by.value,
                    operator_id=operator_id,
                    safety_checks=[],
                    reason=reason,
                    forced=False,
                    promoted_at=now,
                    reverts_audit_id=active.audit_id,
                )
                return _RollbackOutcome(
                    record=audit_to_domain(row),
                    reverted=audit_to_domain(active),
                    traffic=split,
                )
