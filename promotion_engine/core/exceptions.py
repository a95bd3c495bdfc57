"""
Custom exception hierarchy for the promotion engine.

Provides a structured exception hierarchy for different error categories:
- Data errors (event store, experiment store, missing rows)
- Validation errors (rule configuration, rollback traffic splits)
- Promotion errors (lock conflicts, missing active promotion, timeouts)
- Notification errors (delivery failures, never raised to callers)
- Configuration errors (invalid, missing)
"""

from __future__ import annotations

from typing import Any


class PromotionEngineError(Exception):
    """Base exception for all promotion engine errors.

    All custom exceptions in the engine inherit from this class.
    Provides structured error information including error code, message,
    and additional context.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Optional error code for programmatic handling.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def __str__(self) -> str:
        """Return formatted error string."""
        if self.details:
            return f"[{self.error_code}] {self.message} - Details: {self.details}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(PromotionEngineError):
    """Raised when configuration or operator input fails validation.

    Carries every violation found, not only the first one, so an operator
    can fix a rule file or a traffic split in a single pass.

    Examples:
        - Out-of-range thresholds in a promotion rule set
        - Rollback traffic split that does not sum to 100
    """

    def __init__(
        self,
        message: str,
        violations: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the validation error.

        Args:
            message: Human-readable error message.
            violations: Itemized list of validation failures.
            **kwargs: Additional context passed to parent.
        """
        details = kwargs.pop("details", {})
        self.violations = list(violations or [])
        if self.violations:
            details["violations"] = self.violations
        super().__init__(message, details=details, **kwargs)


class InvalidRulesError(ValidationError):
    """Raised when a promotion rule set is malformed."""

    pass


class InvalidTrafficSplitError(ValidationError):
    """Raised when a manual rollback traffic split is invalid."""

    pass


# =============================================================================
# Data Errors
# =============================================================================


class DataError(PromotionEngineError):
    """Base exception for data-related errors.

    Data errors always propagate. They are never treated as zero activity.
    """

    pass


class DataSourceError(DataError):
    """Raised when the event or experiment store fails.

    Examples:
        - Database connection failed
        - Query raised inside the driver
    """

    def __init__(
        self,
        message: str,
        source: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if source:
            details["source"] = source
        super().__init__(message, details=details, **kwargs)
        self.source = source


class ExperimentNotFoundError(DataError):
    """Raised when an experiment name does not resolve to a row."""

    def __init__(self, experiment_name: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["experiment_name"] = experiment_name
        super().__init__(f"Experiment not found: {experiment_name}", details=details, **kwargs)
        self.experiment_name = experiment_name


class VariantNotFoundError(DataError):
    """Raised when a variant name does not exist within an experiment."""

    def __init__(self, experiment_name: str, variant_name: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["experiment_name"] = experiment_name
        details["variant_name"] = variant_name
        super().__init__(
            f"Variant {variant_name} not found in experiment {experiment_name}",
            details=details,
            **kwargs,
        )
        self.experiment_name = experiment_name
        self.variant_name = variant_name


# =============================================================================
# Promotion Errors
# =============================================================================


class PromotionError(PromotionEngineError):
    """Base exception for promotion and rollback errors."""

    retryable: bool = False


class PromotionConflictError(PromotionError):
    """Raised when another promotion or rollback holds the experiment lock.

    The caller may retry once the in-flight operation completes.
    """

    retryable = True

    def __init__(
        self,
        experiment_id: str,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        details["experiment_id"] = experiment_id
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"Experiment {experiment_id} is locked by another promotion or rollback",
            details=details,
            **kwargs,
        )
        self.experiment_id = experiment_id
        self.timeout_seconds = timeout_seconds


class NoActivePromotionError(PromotionError):
    """Raised when a rollback finds no promotion left to revert."""

    def __init__(self, experiment_name: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["experiment_name"] = experiment_name
        super().__init__(f"no active promotion for experiment {experiment_name}", details=details, **kwargs)
        self.experiment_name = experiment_name


class EvaluationTimeoutError(PromotionError):
    """Raised when evaluating an experiment exceeds its time bound."""

    retryable = True

    def __init__(self, experiment_name: str, timeout_seconds: float, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["experiment_name"] = experiment_name
        details["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"Evaluation of {experiment_name} exceeded {timeout_seconds}s",
            details=details,
            **kwargs,
        )
        self.experiment_name = experiment_name
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Notification Errors
# =============================================================================


class NotificationError(PromotionEngineError):
    """Raised by notification channels when a delivery fails.

    Caught inside the alert dispatcher and counted as a failed delivery.
    """

    def __init__(
        self,
        message: str,
        channel: str | None = None,
        recipient: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if channel:
            details["channel"] = channel
        if recipient:
            details["recipient"] = recipient
        super().__init__(message, details=details, **kwargs)
        self.channel = channel
        self.recipient = recipient


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PromotionEngineError):
    """Base exception for configuration-related errors."""

    pass


class InvalidConfigError(ConfigurationError):
    """Raised when configuration is invalid.

    Examples:
        - Unknown promotion preset name
        - Unreadable rules file
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        value: Any = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if value is not None:
            details["value"] = str(value)
        if expected:
            details["expected"] = expected
        super().__init__(message, details=details, **kwargs)
        self.config_key = config_key
        self.value = value
        self.expected = expected
