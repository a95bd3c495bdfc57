"""
Promotion eligibility: combines significance and safety checks into one
recommendation.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime

from promotion_engine.config.promotion_rules import PromotionRules
from promotion_engine.core.data_types import (
    Experiment,
    PromotionEligibility,
    Recommendation,
    SafetyCheckResult,
    Severity,
    SignificanceResult,
    VariantMetrics,
    utc_now,
)
from promotion_engine.monitoring.logger import LogCategory, get_logger

from .safety import SafetyCheckContext, SafetyCheckEngine
from .significance import SignificanceDetector

logger = get_logger("eligibility", LogCategory.PROMOTION)

AlertCounter = Callable[[str], int]


def _names(checks: Sequence[SafetyCheckResult]) -> str:
    return ", ".join(check.name.value for check in checks)


class EligibilityEvaluator:
    """Decides whether an experiment's leading variant may be promoted.

    Decision order, first match wins:
    1. No significant winner or no baseline: not_ready
    2. Any critical check failed: not_ready
    3. Rules require manual approval: manual_review
    4. Any warning check failed: manual_review
    5. Every check passed: promote
    6. Otherwise: wait
    """

    def __init__(
        self,
        detector: SignificanceDetector | None = None,
        safety_engine: SafetyCheckEngine | None = None,
    ) -> None:
        self.detector = detector or SignificanceDetector()
        self.safety_engine = safety_engine or SafetyCheckEngine()

    def evaluate(
        self,
        experiment: Experiment,
        metrics: Sequence[VariantMetrics],
        rules: PromotionRules,
        alert_counter: AlertCounter | None = None,
        now: datetime | None = None,
    ) -> PromotionEligibility:
        """Evaluate an experiment.

        Args:
            experiment: The experiment under evaluation.
            metrics: Current metrics for all of its variants.
            rules: Active promotion rules.
            alert_counter: Returns the number of recent critical alerts for
                a variant name. No alerts are assumed when omitted.
            now: Evaluation time.

        Returns:
            PromotionEligibility with the full ordered list of safety checks.
        """
        now = now or utc_now()
        significance = self.detector.detect(metrics)
        by_name = {m.variant_name: m for m in metrics}

        subject = by_name.get(significance.winner or significance.contender or "")
        baseline = by_name.get(significance.control or "")

        checks: list[SafetyCheckResult] = []
        improvement: float | None = None
        sample_size = sum(m.sample_size for m in metrics)

        if subject is not None and baseline is not None and subject.variant_name != baseline.variant_name:
            context = SafetyCheckContext(
                experiment_name=experiment.name,
                winner=subject,
                control=baseline,
                confidence_level=significance.confidence_level,
                duration_hours=experiment.duration_hours(now),
                rules=rules,
                recent_critical_alerts=alert_counter(subject.variant_name) if alert_counter else 0,
            )
            checks = self.safety_engine.check_all(context)
            improvement = context.improvement

        recommendation, reason = self._decide(significance, checks, rules)
        eligibility = PromotionEligibility(
            eligible=recommendation == Recommendation.PROMOTE,
            experiment_id=experiment.experiment_id,
            experiment_name=experiment.name,
            winning_variant=significance.winner,
            control_variant=significance.control,
            confidence_level=significance.confidence_level,
            improvement=improvement,
            sample_size=sample_size,
            safety_checks=checks,
            recommendation=recommendation,
            reason=reason,
            evaluated_at=now,
        )

        logger.with_context(experiment=experiment.name, variant=significance.winner).info(
            f"Eligibility for {experiment.name}: {recommendation.value} ({reason})",
            extra={
                "extra_data": {
                    "confidence_level": significance.confidence_level,
                    "z_score": significance.z_score,
                    "failed_checks": [c.name.value for c in eligibility.failed_checks],
                }
            },
        )
        return eligibility

    @staticmethod
    def _decide(
        significance: SignificanceResult,
        checks: Sequence[SafetyCheckResult],
        rules: PromotionRules,
    ) -> tuple[Recommendation, str]:
        if not significance.winner or not significance.control:
            if not significance.control:
                return Recommendation.NOT_READY, "Experiment needs at least two variants to compare"
            return (
                Recommendation.NOT_READY,
                f"No statistically significant winner yet (confidence: {significance.confidence_level:.1f}%)",
            )

        failed = [c for c in checks if not c.passed]
        critical = [c for c in failed if c.severity == Severity.CRITICAL]
        warnings = [c for c in failed if c.severity == Severity.WARNING]

        if critical:
            return Recommendation.NOT_READY, f"{len(critical)} critical safety check(s) failed: {_names(critical)}"
        if rules.require_manual_approval:
            return Recommendation.MANUAL_REVIEW, "Manual approval required by promotion rules"
        if warnings:
            return (
                Recommendation.MANUAL_REVIEW,
                f"{len(warnings)} warning(s) require manual review: {_names(warnings)}",
            )
        if not failed:
            return Recommendation.PROMOTE, "All safety checks passed - ready for auto-promotion"
        return Recommendation.WAIT, f"Waiting on: {_names(failed)}"
