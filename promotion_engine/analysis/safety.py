"""
Safety checks gating automatic promotion.

Every enabled check runs on every evaluation, in a fixed order, so that a
rejection always shows the complete list of gates and their values. A
failing check reports its own severity; a passing check reports info.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from promotion_engine.config.promotion_rules import PromotionRules
from promotion_engine.core.data_types import SafetyCheckName, SafetyCheckResult, Severity, VariantMetrics
from promotion_engine.monitoring.logger import LogCategory, get_logger

logger = get_logger("safety", LogCategory.PROMOTION)

# Winner error rate may exceed control's by at most this factor.
ERROR_RATE_TOLERANCE = 1.10
# Winner p95 latency may exceed control's by at most this factor.
LATENCY_TOLERANCE = 1.20
# Largest relative deviation of observed from configured traffic share.
TRAFFIC_DEVIATION_LIMIT = 0.50

FAILURE_SEVERITY: dict[SafetyCheckName, Severity] = {
    SafetyCheckName.EXCLUSION_LIST: Severity.CRITICAL,
    SafetyCheckName.WINNER_SAMPLE_SIZE: Severity.CRITICAL,
    SafetyCheckName.CONTROL_SAMPLE_SIZE: Severity.CRITICAL,
    SafetyCheckName.STATISTICAL_CONFIDENCE: Severity.CRITICAL,
    SafetyCheckName.IMPROVEMENT_THRESHOLD: Severity.WARNING,
    SafetyCheckName.WINNER_ERROR_RATE: Severity.CRITICAL,
    SafetyCheckName.ERROR_RATE_COMPARISON: Severity.CRITICAL,
    SafetyCheckName.WINNER_LATENCY: Severity.WARNING,
    SafetyCheckName.LATENCY_COMPARISON: Severity.WARNING,
    SafetyCheckName.MIN_TEST_DURATION: Severity.CRITICAL,
    SafetyCheckName.MAX_TEST_DURATION: Severity.WARNING,
    SafetyCheckName.TRAFFIC_BALANCE: Severity.WARNING,
    SafetyCheckName.RECENT_ALERTS: Severity.CRITICAL,
    SafetyCheckName.MANUAL_APPROVAL_REQUIRED: Severity.INFO,
}


def relative_improvement(winner_success_rate: float, control_success_rate: float) -> float:
    """Relative success-rate lift over control; 0 when control never succeeded."""
    if control_success_rate == 0:
        return 0.0
    return (winner_success_rate - control_success_rate) / control_success_rate


@dataclass
class SafetyCheckContext:
    """Inputs for one safety evaluation."""

    experiment_name: str
    winner: VariantMetrics
    control: VariantMetrics
    confidence_level: float
    duration_hours: float
    rules: PromotionRules
    recent_critical_alerts: int = 0

    @property
    def improvement(self) -> float:
        return relative_improvement(self.winner.success_rate, self.control.success_rate)


def _result(
    name: SafetyCheckName,
    passed: bool,
    message: str,
    value: object = None,
    threshold: object = None,
) -> SafetyCheckResult:
    return SafetyCheckResult(
        name=name,
        passed=passed,
        message=message,
        severity=Severity.INFO if passed else FAILURE_SEVERITY[name],
        value=value,
        threshold=threshold,
    )


class SafetyCheckEngine:
    """Runs the ordered battery of promotion safety checks.

    Thread-safe and stateless; one instance can serve every evaluation.
    """

    def __init__(self) -> None:
        self._checks: dict[SafetyCheckName, Callable[[SafetyCheckContext], SafetyCheckResult]] = {
            SafetyCheckName.EXCLUSION_LIST: self.check_exclusion_list,
            SafetyCheckName.WINNER_SAMPLE_SIZE: self.check_winner_sample_size,
            SafetyCheckName.CONTROL_SAMPLE_SIZE: self.check_control_sample_size,
            SafetyCheckName.STATISTICAL_CONFIDENCE: self.check_statistical_confidence,
            SafetyCheckName.IMPROVEMENT_THRESHOLD: self.check_improvement_threshold,
            SafetyCheckName.WINNER_ERROR_RATE: self.check_winner_error_rate,
            SafetyCheckName.ERROR_RATE_COMPARISON: self.check_error_rate_comparison,
            SafetyCheckName.WINNER_LATENCY: self.check_winner_latency,
            SafetyCheckName.LATENCY_COMPARISON: self.check_latency_comparison,
            SafetyCheckName.MIN_TEST_DURATION: self.check_min_test_duration,
            SafetyCheckName.MAX_TEST_DURATION: self.check_max_test_duration,
            SafetyCheckName.TRAFFIC_BALANCE: self.check_traffic_balance,
            SafetyCheckName.RECENT_ALERTS: self.check_recent_alerts,
            SafetyCheckName.MANUAL_APPROVAL_REQUIRED: self.check_manual_approval,
        }

    def check_all(self, context: SafetyCheckContext) -> list[SafetyCheckResult]:
        """Run every enabled check.

        Args:
            context: Winner/control metrics, confidence, duration and rules.

        Returns:
            Results in check order, one per enabled check.
        """
        results = []
        for name, check in self._checks.items():
            if not context.rules.is_enabled(name):
                logger.trace(f"{context.experiment_name}: {name.value} disabled")
                continue
            result = check(context)
            logger.trace(
                f"{context.experiment_name}: {name.value} {'passed' if result.passed else 'failed'} - {result.message}"
            )
            results.append(result)
        return results

    def check_exclusion_list(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        excluded = ctx.rules.is_excluded(ctx.experiment_name)
        return _result(
            SafetyCheckName.EXCLUSION_LIST,
            not excluded,
            "Experiment is excluded from auto-promotion" if excluded else "Experiment not in exclusion list",
            value=ctx.experiment_name,
        )

    def check_winner_sample_size(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        size, minimum = ctx.winner.sample_size, ctx.rules.min_sample_size
        return _result(
            SafetyCheckName.WINNER_SAMPLE_SIZE,
            size >= minimum,
            f"Winner sample size: {size} (minimum: {minimum})",
            value=size,
            threshold=minimum,
        )

    def check_control_sample_size(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        size, minimum = ctx.control.sample_size, ctx.rules.min_sample_size
        return _result(
            SafetyCheckName.CONTROL_SAMPLE_SIZE,
            size >= minimum,
            f"Control sample size: {size} (minimum: {minimum})",
            value=size,
            threshold=minimum,
        )

    def check_statistical_confidence(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        required = ctx.rules.min_confidence_level
        return _result(
            SafetyCheckName.STATISTICAL_CONFIDENCE,
            ctx.confidence_level >= required,
            f"Confidence level: {ctx.confidence_level:.1f}% (minimum: {required:.1f}%)",
            value=ctx.confidence_level,
            threshold=required,
        )

    def check_improvement_threshold(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        improvement, required = ctx.improvement, ctx.rules.min_improvement
        return _result(
            SafetyCheckName.IMPROVEMENT_THRESHOLD,
            improvement >= required,
            f"Improvement: {improvement * 100:.2f}% (minimum: {required * 100:.2f}%)",
            value=improvement,
            threshold=required,
        )

    def check_winner_error_rate(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        rate, limit = ctx.winner.error_rate, ctx.rules.max_error_rate
        return _result(
            SafetyCheckName.WINNER_ERROR_RATE,
            rate <= limit,
            f"Winner error rate: {rate * 100:.2f}% (maximum: {limit * 100:.2f}%)",
            value=rate,
            threshold=limit,
        )

    def check_error_rate_comparison(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        limit = ctx.control.error_rate * ERROR_RATE_TOLERANCE
        rate = ctx.winner.error_rate
        return _result(
            SafetyCheckName.ERROR_RATE_COMPARISON,
            rate <= limit,
            f"Winner error rate {rate * 100:.2f}% vs control {ctx.control.error_rate * 100:.2f}% "
            f"(allowed up to {limit * 100:.2f}%)",
            value=rate,
            threshold=limit,
        )

    def check_winner_latency(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        p95, limit = ctx.winner.p95_latency_ms, ctx.rules.max_p95_latency_ms
        return _result(
            SafetyCheckName.WINNER_LATENCY,
            p95 <= limit,
            f"Winner P95 latency: {p95:.0f}ms (maximum: {limit:.0f}ms)",
            value=p95,
            threshold=limit,
        )

    def check_latency_comparison(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        limit = ctx.control.p95_latency_ms * LATENCY_TOLERANCE
        p95 = ctx.winner.p95_latency_ms
        return _result(
            SafetyCheckName.LATENCY_COMPARISON,
            p95 <= limit,
            f"Winner P95 {p95:.0f}ms vs control {ctx.control.p95_latency_ms:.0f}ms (allowed up to {limit:.0f}ms)",
            value=p95,
            threshold=limit,
        )

    def check_min_test_duration(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        hours, minimum = ctx.duration_hours, ctx.rules.min_test_duration_hours
        return _result(
            SafetyCheckName.MIN_TEST_DURATION,
            hours >= minimum,
            f"Test duration: {hours:.1f}h (minimum: {minimum:g}h)",
            value=hours,
            threshold=minimum,
        )

    def check_max_test_duration(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        hours, maximum = ctx.duration_hours, ctx.rules.max_test_duration_hours
        return _result(
            SafetyCheckName.MAX_TEST_DURATION,
            hours <= maximum,
            f"Test duration: {hours:.1f}h (maximum: {maximum:g}h)",
            value=hours,
            threshold=maximum,
        )

    def check_traffic_balance(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        expected = ctx.winner.traffic_percentage / 100.0
        actual = ctx.winner.traffic_share
        message = f"Winner traffic share {actual * 100:.1f}% vs configured {expected * 100:.1f}%"
        if expected == 0:
            return _result(SafetyCheckName.TRAFFIC_BALANCE, actual == 0, message, value=actual, threshold=0.0)
        deviation = abs(actual - expected) / expected
        return _result(
            SafetyCheckName.TRAFFIC_BALANCE,
            deviation < TRAFFIC_DEVIATION_LIMIT,
            message,
            value=deviation,
            threshold=TRAFFIC_DEVIATION_LIMIT,
        )

    def check_recent_alerts(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        count, limit = ctx.recent_critical_alerts, ctx.rules.max_critical_alerts
        return _result(
            SafetyCheckName.RECENT_ALERTS,
            count <= limit,
            f"Critical alerts in last {ctx.rules.alert_lookback_hours:g}h: {count} (maximum: {limit})",
            value=count,
            threshold=limit,
        )

    def check_manual_approval(self, ctx: SafetyCheckContext) -> SafetyCheckResult:
        required = ctx.rules.require_manual_approval
        return _result(
            SafetyCheckName.MANUAL_APPROVAL_REQUIRED,
            not required,
            "Manual approval required before promotion" if required else "No manual approval required",
            value=required,
        )
