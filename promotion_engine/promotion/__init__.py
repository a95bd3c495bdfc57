"""
Promotion layer: variant assignment, promotion execution, rollback, the
operator-facing service and the auto-promotion scheduler.
"""

from .assignment import VariantAssigner, bucket_for, choose_variant
from .executor import PromotionExecutor
from .rollback import RollbackManager, equal_split, validate_traffic_values
from .scheduler import PromotionScheduler, SchedulerRunResult
from .service import EvaluationOutcome, MonitoringSummary, PromotionService

__all__ = [
    "VariantAssigner",
    "bucket_for",
    "choose_variant",
    "PromotionExecutor",
    "RollbackManager",
    "equal_split",
    "validate_traffic_values",
    "PromotionScheduler",
    "SchedulerRunResult",
    "EvaluationOutcome",
    "MonitoringSummary",
    "PromotionService",
]
