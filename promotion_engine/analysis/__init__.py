"""
Analysis layer: metrics aggregation, significance testing, safety checks
and eligibility decisions.
"""

from .eligibility import EligibilityEvaluator
from .metrics import (
    EventStore,
    ExperimentComparison,
    MetricsAggregator,
    SqlEventStore,
    generate_alerts,
    percentile,
)
from .safety import SafetyCheckContext, SafetyCheckEngine, relative_improvement
from .significance import (
    SignificanceDetector,
    calculate_z_score,
    confidence_from_z_score,
    is_significant,
)

__all__ = [
    "EligibilityEvaluator",
    "EventStore",
    "ExperimentComparison",
    "MetricsAggregator",
    "SqlEventStore",
    "generate_alerts",
    "percentile",
    "SafetyCheckContext",
    "SafetyCheckEngine",
    "relative_improvement",
    "SignificanceDetector",
    "calculate_z_score",
    "confidence_from_z_score",
    "is_significant",
]
