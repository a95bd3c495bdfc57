"""
Auto-promotion scheduler.

Periodically scans running experiments, evaluates each one and promotes
winners within a rolling promotion quota. Experiments are processed one at
a time, oldest first; a failure in one never stops the scan.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from promotion_engine.config.settings import SchedulerSettings, Settings, get_settings
from promotion_engine.core.data_types import (
    PromotionAction,
    PromotionEligibility,
    Recommendation,
    Severity,
    TriggerType,
    utc_now,
)
from promotion_engine.core.exceptions import EvaluationTimeoutError, PromotionConflictError, PromotionEngineError
from promotion_engine.monitoring.logger import ContextLogger, LogCategory, get_logger
from promotion_engine.monitoring.metrics import MetricsCollector, get_metrics_collector

from .service import PromotionService

logger = get_logger("scheduler", LogCategory.SCHEDULER)


@dataclass
class ExperimentError:
    """Per-experiment failure recorded by a scan."""

    experiment_name: str
    error: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"experiment_name": self.experiment_name, "error": self.error, "retryable": self.retryable}


@dataclass
class PromotionSummary:
    """Promotion executed (or simulated) by a scan."""

    experiment_name: str
    experiment_id: str | None
    winner_variant: str | None
    confidence: float
    improvement: float | None
    action: PromotionAction

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment_name": self.experiment_name,
            "experiment_id": self.experiment_id,
            "winner_variant": self.winner_variant,
            "confidence": self.confidence,
            "improvement": self.improvement,
            "action": self.action.value,
        }


@dataclass
class SchedulerRunResult:
    """Results from one scheduler run."""

    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: float = 0.0
    experiments_checked: int = 0
    experiments_eligible: int = 0
    experiments_promoted: int = 0
    skipped: list[str] = field(default_factory=list)
    errors: list[ExperimentError] = field(default_factory=list)
    promotions: list[PromotionSummary] = field(default_factory=list)
    quota_remaining: int = 0
    quota_exhausted: bool = False
    cancelled: bool = False
    dry_run: bool = False
    disabled: bool = False

    @property
    def outcome(self) -> str:
        if self.disabled:
            return "disabled"
        if self.cancelled:
            return "cancelled"
        if self.quota_exhausted and self.experiments_checked == 0:
            return "quota_exhausted"
        if self.errors:
            return "completed_with_errors"
        return "completed"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 2),
            "outcome": self.outcome,
            "experiments_checked": self.experiments_checked,
            "experiments_eligible": self.experiments_eligible,
            "experiments_promoted": self.experiments_promoted,
            "skipped": list(self.skipped),
            "errors": [e.to_dict() for e in self.errors],
            "promotions": [p.to_dict() for p in self.promotions],
            "quota_remaining": self.quota_remaining,
            "quota_exhausted": self.quota_exhausted,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
        }


class PromotionScheduler:
    """Runs promotion scans once or on a fixed interval."""

    def __init__(
        self,
        service: PromotionService,
        settings: Settings | None = None,
        scheduler_settings: SchedulerSettings | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            service: Promotion service used for evaluation and execution.
            settings: Application settings. Uses the service's if not provided.
            scheduler_settings: Overrides settings.scheduler (e.g. dry run from the CLI).
            metrics_collector: Prometheus metrics collector.
        """
        self.service = service
        self.settings = settings or service.settings or get_settings()
        self.config = scheduler_settings or self.settings.scheduler
        self._metrics = metrics_collector or get_metrics_collector()
        self._last_run: SchedulerRunResult | None = None
        self._running = False

    @property
    def last_run(self) -> SchedulerRunResult | None:
        return self._last_run

    async def run_once(self, cancel_event: asyncio.Event | None = None) -> SchedulerRunResult:
        """Scan every candidate experiment once.

        Args:
            cancel_event: Checked before each experiment; set it to stop the
                scan between experiments.

        Returns:
            SchedulerRunResult for the scan.
        """
        started = time.perf_counter()
        result = SchedulerRunResult(run_id=str(uuid4()), started_at=utc_now(), dry_run=self.config.dry_run)
        run_logger = logger.with_context(run_id=result.run_id)

        try:
            if not self.config.enabled:
                result.disabled = True
                run_logger.info("Auto-promotion is disabled")
                return result

            await self._scan(result, cancel_event, run_logger)
            return result
        finally:
            result.finished_at = utc_now()
            result.duration_ms = (time.perf_counter() - started) * 1000
            self._last_run = result
            self._metrics.record_scheduler_run(result.outcome, result.duration_ms / 1000)
            run_logger.info(
                f"Scheduler run {result.outcome}: {result.experiments_checked} checked, "
                f"{result.experiments_eligible} eligible, {result.experiments_promoted} promoted, "
                f"{len(result.errors)} error(s)",
                extra={"extra_data": result.to_dict()},
            )

    async def _scan(self, result: SchedulerRunResult, cancel_event: asyncio.Event | None, run_logger: ContextLogger) -> None:
        now = utc_now()
        recent = await self.service.count_recent_promotions(self.config.promotion_window_minutes, now)
        remaining = self.config.max_concurrent_promotions - recent
        result.quota_remaining = max(remaining, 0)
        self._metrics.set_quota_remaining(remaining)
        if remaining <= 0:
            result.quota_exhausted = True
            run_logger.warning(
                f"Promotion quota exhausted: {recent} promotion(s) in the last "
                f"{self.config.promotion_window_minutes} minutes"
            )
            return

        experiments = await self.service.list_candidate_experiments(now)
        run_logger.info(f"Found {len(experiments)} experiment(s) to check")

        for experiment in experiments:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                run_logger.info("Scheduler run cancelled")
                return
            if result.experiments_promoted >= remaining:
                result.quota_exhausted = True
                run_logger.info("Promotion quota used up, stopping scan")
                break

            result.experiments_checked += 1
            try:
                await self._process_experiment(experiment.name, result)
            except PromotionConflictError as e:
                result.errors.append(ExperimentError(experiment.name, e.message, retryable=True))
                run_logger.warning(f"Promotion of {experiment.name} deferred: {e.message}")
            except EvaluationTimeoutError as e:
                result.skipped.append(experiment.name)
                run_logger.warning(f"{e.message}, skipped")
            except asyncio.TimeoutError:
                result.skipped.append(experiment.name)
                run_logger.warning(
                    f"Evaluation of {experiment.name} exceeded {self.config.evaluation_timeout_seconds}s, skipped"
                )
            except PromotionEngineError as e:
                retryable = bool(getattr(e, "retryable", False))
                result.errors.append(ExperimentError(experiment.name, e.message, retryable=retryable))
                self._metrics.record_error(e.error_code, "scheduler")
                run_logger.error(f"Error processing {experiment.name}: {e}")
            except Exception as e:
                result.errors.append(ExperimentError(experiment.name, str(e)))
                self._metrics.record_error(type(e).__name__, "scheduler")
                run_logger.exception(f"Unexpected error processing {experiment.name}: {e}")

        result.quota_remaining = max(remaining - result.experiments_promoted, 0)
        self._metrics.set_quota_remaining(result.quota_remaining)

    async def _process_experiment(self, name: str, result: SchedulerRunResult) -> None:
        outcome = await asyncio.wait_for(
            self.service.evaluate(name),
            timeout=self.config.evaluation_timeout_seconds,
        )
        eligibility = outcome.eligibility
        dispatcher = self.service.dispatcher

        if outcome.alerts:
            await dispatcher.dispatch(
                outcome.alerts,
                minimum_level=Severity(self.settings.notifications.minimum_level),
                experiment_name=name,
            )

        if eligibility.recommendation == Recommendation.MANUAL_REVIEW:
            if self.config.notify_on_manual_review:
                await dispatcher.notify_approval_required(
                    name,
                    eligibility.winning_variant,
                    eligibility.reason,
                    eligibility.confidence_level,
                )
            return

        if eligibility.recommendation != Recommendation.PROMOTE:
            return

        result.experiments_eligible += 1
        if self.config.dry_run:
            result.experiments_promoted += 1
            result.promotions.append(self._summary(eligibility, PromotionAction.DRY_RUN))
            logger.info(f"[DRY RUN] Would promote {eligibility.winning_variant} in {name}")
            return

        promotion = await self.service.executor.execute(eligibility, triggered_by=TriggerType.AUTO)
        if promotion.action == PromotionAction.PROMOTED:
            result.experiments_promoted += 1
            result.promotions.append(self._summary(eligibility, PromotionAction.PROMOTED))

    @staticmethod
    def _summary(eligibility: PromotionEligibility, action: PromotionAction) -> PromotionSummary:
        return PromotionSummary(
            experiment_name=eligibility.experiment_name,
            experiment_id=eligibility.experiment_id,
            winner_variant=eligibility.winning_variant,
            confidence=eligibility.confidence_level,
            improvement=eligibility.improvement,
            action=action,
        )

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run scans every interval until stop_event is set."""
        self._running = True
        logger.info(f"Scheduler started (interval {self.config.interval_seconds}s, dry_run={self.config.dry_run})")
        try:
            while not stop_event.is_set():
                try:
                    await self.run_once(cancel_event=stop_event)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Scheduler run failed: {e}")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
            logger.info("Scheduler stopped")

    def get_status(self) -> dict[str, Any]:
        """Scheduler configuration, last run and next run estimate."""
        last = self._last_run
        next_run = None
        if last is not None and last.finished_at is not None and self._running:
            next_run = (last.finished_at + timedelta(seconds=self.config.interval_seconds)).isoformat()
        return {
            "enabled": self.config.enabled,
            "dry_run": self.config.dry_run,
            "running": self._running,
            "interval_seconds": self.config.interval_seconds,
            "max_concurrent_promotions": self.config.max_concurrent_promotions,
            "promotion_window_minutes": self.config.promotion_window_minutes,
            "last_run": last.to_dict() if last else None,
            "next_run_estimate": next_run,
        }
