"""
Promotion rule sets.

Provides:
- PromotionRules, a typed and bounded threshold set
- Named presets (conservative, balanced, aggressive)
- Layered resolution: preset, YAML rules file, settings, per-call overrides
- Itemized validation through InvalidRulesError
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from promotion_engine.core.data_types import SafetyCheckName
from promotion_engine.core.exceptions import InvalidConfigError, InvalidRulesError

from .settings import Settings, get_settings


class PromotionRules(BaseModel):
    """Thresholds applied by the safety check engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(default="custom", description="Preset or rule set name")
    min_sample_size: int = Field(default=1000, ge=1, description="Observations required per variant")
    min_confidence_level: float = Field(default=95.0, ge=0, le=100, description="Required confidence, percent")
    min_improvement: float = Field(default=0.02, ge=0, description="Required relative improvement over control")
    max_error_rate: float = Field(default=0.05, ge=0, le=1, description="Highest tolerated winner error rate")
    max_p95_latency_ms: float = Field(default=3000.0, gt=0, description="Highest tolerated winner p95 latency")
    min_test_duration_hours: float = Field(default=24.0, ge=0)
    max_test_duration_hours: float = Field(default=168.0, ge=0)
    require_manual_approval: bool = True
    excluded_experiments: frozenset[str] = Field(default_factory=frozenset)
    alert_lookback_hours: float = Field(default=24.0, ge=0)
    max_critical_alerts: int = Field(default=0, ge=0)
    disabled_checks: frozenset[SafetyCheckName] = Field(default_factory=frozenset)

    @model_validator(mode="after")
    def validate_duration_bounds(self) -> "PromotionRules":
        """Minimum duration may not exceed maximum duration."""
        if self.min_test_duration_hours > self.max_test_duration_hours:
            raise ValueError(
                f"min_test_duration_hours ({self.min_test_duration_hours}) must not exceed "
                f"max_test_duration_hours ({self.max_test_duration_hours})"
            )
        return self

    def is_enabled(self, check: SafetyCheckName) -> bool:
        """Whether a safety check runs under this rule set."""
        return check not in self.disabled_checks

    def is_excluded(self, experiment_name: str) -> bool:
        """Whether an experiment must never auto-promote."""
        return experiment_name in self.excluded_experiments

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> "PromotionRules":
        """Return a validated copy with overrides applied."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        return build_rules(data)


def build_rules(data: Mapping[str, Any]) -> PromotionRules:
    """Validate a rule mapping, collecting every violation.

    Args:
        data: Rule fields.

    Returns:
        Validated PromotionRules.

    Raises:
        InvalidRulesError: With one entry per violated field.
    """
    try:
        return PromotionRules.model_validate(dict(data))
    except PydanticValidationError as e:
        violations = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "rules"
            violations.append(f"{location}: {error['msg']}")
        raise InvalidRulesError(
            f"Invalid promotion rules ({len(violations)} violation(s))",
            violations=violations,
        ) from e


# =============================================================================
# Presets
# =============================================================================

CONSERVATIVE_RULES = PromotionRules(
    name="conservative",
    min_sample_size=1000,
    min_confidence_level=95.0,
    min_improvement=0.02,
    max_error_rate=0.05,
    max_p95_latency_ms=3000.0,
    min_test_duration_hours=24.0,
    max_test_duration_hours=168.0,
    require_manual_approval=True,
)

BALANCED_RULES = PromotionRules(
    name="balanced",
    min_sample_size=500,
    min_confidence_level=95.0,
    min_improvement=0.02,
    max_error_rate=0.05,
    max_p95_latency_ms=4000.0,
    min_test_duration_hours=12.0,
    max_test_duration_hours=120.0,
    require_manual_approval=False,
)

AGGRESSIVE_RULES = PromotionRules(
    name="aggressive",
    min_sample_size=100,
    min_confidence_level=90.0,
    min_improvement=0.01,
    max_error_rate=0.10,
    max_p95_latency_ms=5000.0,
    min_test_duration_hours=1.0,
    max_test_duration_hours=72.0,
    require_manual_approval=False,
)

DEFAULT_RULES = CONSERVATIVE_RULES

PROMOTION_PRESETS: dict[str, PromotionRules] = {
    "conservative": CONSERVATIVE_RULES,
    "default": CONSERVATIVE_RULES,
    "balanced": BALANCED_RULES,
    "aggressive": AGGRESSIVE_RULES,
}


def get_preset(name: str) -> PromotionRules:
    """Look up a preset by name.

    Raises:
        InvalidConfigError: If the preset does not exist.
    """
    key = name.strip().lower()
    if key not in PROMOTION_PRESETS:
        raise InvalidConfigError(
            f"Unknown promotion preset: {name}",
            config_key="promotion.preset",
            value=name,
            expected=", ".join(sorted(PROMOTION_PRESETS)),
        )
    return PROMOTION_PRESETS[key]


def _load_rules_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise InvalidConfigError(
            f"Promotion rules file not found: {path}",
            config_key="promotion.rules_file",
            value=path,
        )
    data = Settings.load_yaml_config(path)
    if not isinstance(data, dict):
        raise InvalidConfigError(
            "Promotion rules file must contain a mapping",
            config_key="promotion.rules_file",
            value=path,
        )
    return data


def resolve_promotion_rules(
    settings: Settings | None = None,
    preset: str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> PromotionRules:
    """Resolve the active rule set for an evaluation.

    Layers, lowest precedence first:
    1. Preset (explicit argument, then settings, then environment default)
    2. YAML rules file named in settings
    3. Exclusions and overrides from settings
    4. Per-call overrides

    Args:
        settings: Application settings. Uses default if not provided.
        preset: Optional preset name taking precedence over settings.
        overrides: Per-call field overrides.

    Returns:
        Validated PromotionRules.

    Raises:
        InvalidConfigError: Unknown preset or unreadable rules file.
        InvalidRulesError: Any layer produced out-of-range values.
    """
    settings = settings or get_settings()
    promotion = settings.promotion

    preset_name = preset or promotion.preset
    if not preset_name:
        preset_name = "conservative" if settings.is_production else "aggressive"

    data = get_preset(preset_name).model_dump()

    if promotion.rules_file is not None:
        data.update(_load_rules_file(Path(promotion.rules_file)))

    excluded = set(data.get("excluded_experiments") or ())
    excluded.update(promotion.excluded_experiments)
    data["excluded_experiments"] = excluded

    data.update(promotion.overrides)
    if overrides:
        data.update(overrides)

    return build_rules(data)


__all__ = [
    "PromotionRules",
    "build_rules",
    "CONSERVATIVE_RULES",
    "BALANCED_RULES",
    "AGGRESSIVE_RULES",
    "DEFAULT_RULES",
    "PROMOTION_PRESETS",
    "get_preset",
    "resolve_promotion_rules",
]
