"""
Core layer for the promotion engine.

Contains type definitions, exceptions, the injected cache and the
per-experiment lock registry used across all modules.
"""

from .cache import TTLCache, variants_cache_key
from .data_types import (
    AuditAction,
    DispatchStats,
    Experiment,
    PromotionAction,
    PromotionAuditRecord,
    PromotionEligibility,
    PromotionResult,
    Recommendation,
    RequestEvent,
    ResponseEvent,
    RollbackResult,
    SafetyCheckName,
    SafetyCheckResult,
    Severity,
    SignificanceResult,
    TriggerType,
    Variant,
    VariantMetrics,
)
from .exceptions import (
    ConfigurationError,
    DataError,
    DataSourceError,
    EvaluationTimeoutError,
    ExperimentNotFoundError,
    InvalidConfigError,
    InvalidRulesError,
    InvalidTrafficSplitError,
    NoActivePromotionError,
    NotificationError,
    PromotionConflictError,
    PromotionEngineError,
    PromotionError,
    ValidationError,
    VariantNotFoundError,
)
from .locks import ExperimentLockRegistry, get_lock_registry
