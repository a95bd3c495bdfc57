"""
Statistical significance between the best variant and its baseline.

Two-proportion z-test on success rates with a pooled proportion. The
z-score maps to a discrete confidence level; the two-sided p-value is
reported for display only.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from scipy.stats import norm

from promotion_engine.core.data_types import CONTROL_VARIANT_NAME, SignificanceResult, VariantMetrics

# Observations required on each side before significance can be claimed.
MIN_SAMPLES_FOR_SIGNIFICANCE = 100

SIGNIFICANCE_Z = 1.96

# (z threshold, confidence percent), strongest first.
CONFIDENCE_BREAKPOINTS: tuple[tuple[float, float], ...] = (
    (3.29, 99.9),
    (2.58, 99.0),
    (1.96, 95.0),
    (1.645, 90.0),
)


def confidence_from_z_score(z_score: float) -> float:
    """Confidence percent for a z-score, 0 below the 90% breakpoint.

    The 90% level is for display; detect() reports 0 for results below the
    significance threshold.
    """
    for threshold, confidence in CONFIDENCE_BREAKPOINTS:
        if z_score >= threshold:
            return confidence
    return 0.0


def is_significant(z_score: float) -> bool:
    return z_score >= SIGNIFICANCE_Z


def calculate_z_score(
    success_rate_a: float,
    sample_a: int,
    success_rate_b: float,
    sample_b: int,
) -> float:
    """Absolute two-proportion z-score with pooled variance.

    Returns 0 when either sample is empty or the standard error is 0.
    """
    if sample_a <= 0 or sample_b <= 0:
        return 0.0
    pooled = (success_rate_a * sample_a + success_rate_b * sample_b) / (sample_a + sample_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / sample_a + 1 / sample_b))
    if se == 0:
        return 0.0
    return abs(success_rate_a - success_rate_b) / se


def two_sided_p_value(z_score: float) -> float:
    return float(2 * norm.sf(abs(z_score)))


class SignificanceDetector:
    """Picks the contender and baseline and tests the difference."""

    def __init__(
        self,
        min_samples: int = MIN_SAMPLES_FOR_SIGNIFICANCE,
        control_name: str = CONTROL_VARIANT_NAME,
    ) -> None:
        self.min_samples = min_samples
        self.control_name = control_name

    def select_pair(self, metrics: Sequence[VariantMetrics]) -> tuple[VariantMetrics | None, VariantMetrics | None]:
        """Contender (best success rate) and baseline.

        The baseline is the control variant when present, otherwise the
        runner-up. Ties keep input order.
        """
        if len(metrics) < 2:
            return (metrics[0] if metrics else None), None

        ranked = sorted(metrics, key=lambda m: m.success_rate, reverse=True)
        contender = ranked[0]
        baseline = next((m for m in metrics if m.variant_name == self.control_name), None) or ranked[1]
        return contender, baseline

    def detect(self, metrics: Sequence[VariantMetrics]) -> SignificanceResult:
        """Test whether the top variant beats its baseline.

        Args:
            metrics: Metrics for every variant of one experiment.

        Returns:
            SignificanceResult. winner is set only when the result is
            significant and the contender is not the baseline itself.
        """
        contender, baseline = self.select_pair(metrics)
        if contender is None or baseline is None:
            return SignificanceResult(contender=contender.variant_name if contender else None)

        result = SignificanceResult(contender=contender.variant_name, control=baseline.variant_name)
        if contender.variant_name == baseline.variant_name:
            return result

        if contender.sample_size < self.min_samples or baseline.sample_size < self.min_samples:
            return result

        z_score = calculate_z_score(
            contender.success_rate,
            contender.sample_size,
            baseline.success_rate,
            baseline.sample_size,
        )
        result.z_score = z_score
        result.p_value = two_sided_p_value(z_score)
        # Confidence is only claimed for a significant result.
        if is_significant(z_score):
            result.has_significance = True
            result.winner = contender.variant_name
            result.confidence_level = confidence_from_z_score(z_score)
        return result
