"""
Operator-facing promotion service.

Wires the analysis and promotion components together behind one async
surface used by the scheduler and the CLI: evaluate, promote, roll back,
inspect history and monitor running experiments.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from promotion_engine.analysis.eligibility import EligibilityEvaluator
from promotion_engine.analysis.metrics import (
    EventStore,
    ExperimentComparison,
    MetricsAggregator,
    SqlEventStore,
    generate_alerts,
)
from promotion_engine.config.promotion_rules import PromotionRules, resolve_promotion_rules
from promotion_engine.config.settings import Settings, get_settings
from promotion_engine.core.cache import TTLCache
from promotion_engine.core.data_types import (
    Experiment,
    PromotionAuditRecord,
    PromotionEligibility,
    PromotionResult,
    RollbackResult,
    Severity,
    TriggerType,
    Variant,
    VariantMetrics,
    utc_now,
)
from promotion_engine.core.exceptions import EvaluationTimeoutError, ExperimentNotFoundError
from promotion_engine.core.locks import ExperimentLockRegistry, get_lock_registry
from promotion_engine.database.connection import DatabaseManager, get_db_manager
from promotion_engine.database.repository import (
    AuditRepository,
    ExperimentRepository,
    VariantRepository,
    audit_to_domain,
    experiment_to_domain,
    variant_to_domain,
)
from promotion_engine.monitoring.alerting import (
    Alert,
    AlertDispatcher,
    AlertHistoryStore,
    SqlAlertHistoryStore,
    create_alert_dispatcher,
)
from promotion_engine.monitoring.logger import LogCategory, get_logger
from promotion_engine.monitoring.metrics import MetricsCollector, get_metrics_collector

from .assignment import VariantAssigner
from .executor import FULL_TRAFFIC, PromotionExecutor
from .rollback import RollbackManager

logger = get_logger("promotion_service", LogCategory.PROMOTION)


class EvaluationOutcome(BaseModel):
    """Everything produced by evaluating one experiment."""

    experiment: Experiment
    rules: PromotionRules
    metrics: list[VariantMetrics] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    eligibility: PromotionEligibility


class MonitoringSummary(BaseModel):
    """Dashboard overview of running experiments."""

    active_experiments: list[ExperimentComparison] = Field(default_factory=list)
    total_requests_24h: int = 0
    critical_alerts: list[Alert] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


class PromotionService:
    """Single entry point for experiment promotion operations."""

    def __init__(
        self,
        settings: Settings | None = None,
        db_manager: DatabaseManager | None = None,
        event_store: EventStore | None = None,
        dispatcher: AlertDispatcher | None = None,
        alert_history: AlertHistoryStore | None = None,
        lock_registry: ExperimentLockRegistry | None = None,
        cache: TTLCache | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. Uses default if not provided.
            db_manager: Database manager. Uses the global one if not provided.
            event_store: Event source for metrics. Defaults to SQL events.
            dispatcher: Alert dispatcher. Built from settings if not provided.
            alert_history: Alert history used by the recent-incident check.
            lock_registry: Per-experiment locks shared by promotion and rollback.
            cache: Variant cache shared by assignment, promotion and rollback.
            metrics_collector: Prometheus metrics collector.
        """
        self.settings = settings or get_settings()
        self.db = db_manager or get_db_manager(self.settings)
        self.metrics = metrics_collector or get_metrics_collector()
        self.cache = cache if cache is not None else TTLCache(self.settings.promotion.variant_cache_ttl_seconds)
        self.locks = lock_registry or get_lock_registry()
        self.dispatcher = dispatcher or create_alert_dispatcher(self.settings, self.db)
        self.alert_history = alert_history if alert_history is not None else SqlAlertHistoryStore(self.db)

        self.aggregator = MetricsAggregator(
            event_store or SqlEventStore(self.db),
            default_window_hours=self.settings.metrics.default_window_hours,
        )
        self.evaluator = EligibilityEvaluator()
        lock_timeout = self.settings.promotion.lock_timeout_seconds
        self.executor = PromotionExecutor(
            self.db, self.locks, self.cache, self.dispatcher, lock_timeout, self.metrics
        )
        self.rollback_manager = RollbackManager(
            self.db, self.locks, self.cache, self.dispatcher, lock_timeout, self.metrics
        )
        self.assigner = VariantAssigner(self.db, self.cache)

        self._experiments = ExperimentRepository()
        self._variants = VariantRepository()
        self._audit = AuditRepository()

    # -------------------------------------------------------------------------
    # Data loading
    # -------------------------------------------------------------------------

    def _load_experiment(self, name: str) -> tuple[Experiment, list[Variant]]:
        with self.db.session() as session:
            row = self._experiments.get_by_name(session, name)
            if row is None:
                raise ExperimentNotFoundError(name)
            variants = self._variants.list_for_experiment(session, row.experiment_id)
            return experiment_to_domain(row), [variant_to_domain(v) for v in variants]

    def _list_running(self, now: datetime) -> list[tuple[Experiment, list[Variant]]]:
        with self.db.session() as session:
            rows = self._experiments.list_active(session, now)
            return [
                (
                    experiment_to_domain(row),
                    [variant_to_domain(v) for v in self._variants.list_for_experiment(session, row.experiment_id)],
                )
                for row in rows
            ]

    async def list_candidate_experiments(self, now: datetime | None = None) -> list[Experiment]:
        """Running experiments, oldest first, excluding fully promoted ones."""
        running = await asyncio.to_thread(self._list_running, now or utc_now())
        return [
            experiment
            for experiment, variants in running
            if not any(v.traffic_percentage >= FULL_TRAFFIC for v in variants)
        ]

    def _count_recent_promotions(self, since: datetime) -> int:
        with self.db.session() as session:
            return self._audit.count_active_promotions_since(session, since)

    async def count_recent_promotions(self, window_minutes: int, now: datetime | None = None) -> int:
        """Promotions inside the rolling window that were not rolled back."""
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        return await asyncio.to_thread(self._count_recent_promotions, since)

    async def _collect_metrics(
        self,
        name: str,
        variants: list[Variant],
        start: datetime | None,
        end: datetime | None,
    ) -> list[VariantMetrics]:
        timeout = self.settings.metrics.query_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.aggregator.collect_experiment_metrics, variants, name, start, end),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise EvaluationTimeoutError(name, timeout) from e

    def _recent_critical_counts(
        self,
        experiment_name: str,
        variant_names: list[str],
        alerts: list[Alert],
        rules: PromotionRules,
        now: datetime,
    ) -> dict[str, int]:
        since = now - timedelta(hours=rules.alert_lookback_hours)
        counts: dict[str, int] = {}
        for variant_name in variant_names:
            current = sum(
                1 for a in alerts if a.level == Severity.CRITICAL and a.variant_name == variant_name
            )
            recorded = self.alert_history.count_since(experiment_name, variant_name, Severity.CRITICAL, since)
            counts[variant_name] = current + recorded
        return counts

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        name: str,
        overrides: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> EvaluationOutcome:
        """Evaluate an experiment from fresh metrics.

        Raises:
            ExperimentNotFoundError: Unknown experiment.
            InvalidRulesError: Overrides produce an invalid rule set.
            DataSourceError: Events could not be read.
            EvaluationTimeoutError: Metrics query exceeded its bound.
        """
        started = time.perf_counter()
        now = now or utc_now()
        rules = resolve_promotion_rules(self.settings, overrides=overrides)

        experiment, variants = await asyncio.to_thread(self._load_experiment, name)
        metrics = await self._collect_metrics(name, variants, None, now)
        alerts = generate_alerts(metrics, now)
        counts = await asyncio.to_thread(
            self._recent_critical_counts, name, [v.name for v in variants], alerts, rules, now
        )

        eligibility = self.evaluator.evaluate(
            experiment,
            metrics,
            rules,
            alert_counter=lambda variant_name: counts.get(variant_name, 0),
            now=now,
        )

        self.metrics.record_evaluation(eligibility.recommendation.value, time.perf_counter() - started)
        for check in eligibility.failed_checks:
            self.metrics.record_safety_check_failure(check.name.value, check.severity.value)

        return EvaluationOutcome(
            experiment=experiment,
            rules=rules,
            metrics=metrics,
            alerts=alerts,
            eligibility=eligibility,
        )

    async def check_eligibility(
        self,
        name: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> PromotionEligibility:
        """Fresh eligibility verdict for an experiment."""
        outcome = await self.evaluate(name, overrides=overrides)
        return outcome.eligibility

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def promote(
        self,
        name: str,
        operator_id: str | None = None,
        force: bool = False,
        variant_name: str | None = None,
        overrides: Mapping[str, Any] | None = None,
        triggered_by: TriggerType = TriggerType.MANUAL,
    ) -> PromotionResult:
        """Re-evaluate and promote an experiment's winner.

        An operator trigger approves a manual_review recommendation. force
        bypasses the recommendation and is recorded on the audit trail.
        """
        eligibility = await self.check_eligibility(name, overrides=overrides)
        if force:
            logger.with_context(experiment=name).warning(
                f"Forced promotion requested by {operator_id or 'unknown'} "
                f"(recommendation: {eligibility.recommendation.value})"
            )
        return await self.executor.execute(
            eligibility,
            triggered_by=triggered_by,
            operator_id=operator_id,
            force=force,
            variant_name=variant_name,
        )

    async def rollback(
        self,
        name: str,
        reason: str,
        operator_id: str | None = None,
        traffic: Mapping[str, float] | None = None,
    ) -> RollbackResult:
        """Revert the latest active promotion."""
        return await self.rollback_manager.rollback(name, reason, traffic=traffic, operator_id=operator_id)

    # -------------------------------------------------------------------------
    # Read models
    # -------------------------------------------------------------------------

    def _history(self, name: str, limit: int) -> list[PromotionAuditRecord]:
        with self.db.session() as session:
            return [audit_to_domain(row) for row in self._audit.history(session, name, limit)]

    async def get_promotion_history(self, name: str, limit: int = 100) -> list[PromotionAuditRecord]:
        """Audit records for an experiment, newest first."""
        return await asyncio.to_thread(self._history, name, limit)

    async def assign_variant(self, user_id: str, experiment_name: str) -> Variant | None:
        """Variant for a user, read through the variant cache."""
        return await asyncio.to_thread(self.assigner.assign, user_id, experiment_name)

    async def _compare(self, experiment: Experiment, variants: list[Variant], now: datetime) -> ExperimentComparison:
        metrics = await self._collect_metrics(experiment.name, variants, None, now)
        return ExperimentComparison(
            experiment_id=experiment.experiment_id,
            experiment_name=experiment.name,
            variants=metrics,
            total_requests=sum(m.total_requests for m in metrics),
            significance=self.evaluator.detector.detect(metrics),
            alerts=generate_alerts(metrics, now),
            generated_at=now,
        )

    async def compare_experiment(self, name: str) -> ExperimentComparison:
        """Variant metrics, significance and alerts for one experiment."""
        experiment, variants = await asyncio.to_thread(self._load_experiment, name)
        return await self._compare(experiment, variants, utc_now())

    async def get_monitoring_summary(self) -> MonitoringSummary:
        """Comparisons for every running experiment plus critical alerts."""
        now = utc_now()
        running = await asyncio.to_thread(self._list_running, now)
        comparisons = [await self._compare(experiment, variants, now) for experiment, variants in running]

        critical = [alert for c in comparisons for alert in c.critical_alerts]
        critical.sort(key=lambda a: a.timestamp, reverse=True)
        return MonitoringSummary(
            active_experiments=comparisons,
            total_requests_24h=sum(c.total_requests for c in comparisons),
            critical_alerts=critical,
            generated_at=now,
        )
