"""
Unit tests for config/promotion_rules.py
"""

import pytest

from promotion_engine.config.promotion_rules import (
    AGGRESSIVE_RULES,
    CONSERVATIVE_RULES,
    PROMOTION_PRESETS,
    PromotionRules,
    build_rules,
    get_preset,
    resolve_promotion_rules,
)
from promotion_engine.config.settings import PromotionSettings, Settings
from promotion_engine.core.data_types import SafetyCheckName
from promotion_engine.core.exceptions import InvalidConfigError, InvalidRulesError


class TestPromotionRules:
    """Tests for PromotionRules."""

    def test_defaults_are_conservative(self):
        """Defaults match the conservative preset thresholds."""
        rules = PromotionRules()
        assert rules.min_sample_size == CONSERVATIVE_RULES.min_sample_size
        assert rules.require_manual_approval is True

    def test_frozen(self):
        """Rule sets are immutable."""
        with pytest.raises(Exception):
            CONSERVATIVE_RULES.min_sample_size = 1

    def test_disabled_checks(self):
        """Disabled checks are reported as not enabled."""
        rules = PromotionRules(disabled_checks=frozenset({SafetyCheckName.TRAFFIC_BALANCE}))
        assert not rules.is_enabled(SafetyCheckName.TRAFFIC_BALANCE)
        assert rules.is_enabled(SafetyCheckName.WINNER_SAMPLE_SIZE)

    def test_exclusion(self):
        """Excluded experiment names are recognised."""
        rules = PromotionRules(excluded_experiments=frozenset({"pricing_v2"}))
        assert rules.is_excluded("pricing_v2")
        assert not rules.is_excluded("checkout_flow")

    def test_with_overrides(self):
        """Overrides return a validated copy."""
        rules = AGGRESSIVE_RULES.with_overrides({"min_sample_size": 250})
        assert rules.min_sample_size == 250
        assert AGGRESSIVE_RULES.min_sample_size == 100

    def test_with_no_overrides_returns_self(self):
        """Empty overrides leave the instance untouched."""
        assert AGGRESSIVE_RULES.with_overrides(None) is AGGRESSIVE_RULES


class TestBuildRules:
    """Tests for rule validation."""

    def test_collects_all_violations(self):
        """Every out-of-range field is reported, not only the first."""
        with pytest.raises(InvalidRulesError) as exc_info:
            build_rules({"min_sample_size": 0, "max_error_rate": 2.0, "min_confidence_level": 150})
        violations = exc_info.value.violations
        assert len(violations) == 3
        assert any(v.startswith("min_sample_size") for v in violations)
        assert any(v.startswith("max_error_rate") for v in violations)

    def test_duration_bounds(self):
        """Minimum duration may not exceed maximum duration."""
        with pytest.raises(InvalidRulesError) as exc_info:
            build_rules({"min_test_duration_hours": 100, "max_test_duration_hours": 10})
        assert "min_test_duration_hours" in exc_info.value.violations[0]

    def test_unknown_field_rejected(self):
        """Unknown rule names are violations."""
        with pytest.raises(InvalidRulesError):
            build_rules({"min_samples": 10})


class TestPresets:
    """Tests for preset lookup."""

    def test_known_presets(self):
        """All presets are registered."""
        assert {"conservative", "balanced", "aggressive", "default"} <= set(PROMOTION_PRESETS)

    def test_case_insensitive(self):
        """Preset names are matched case-insensitively."""
        assert get_preset(" Aggressive ") is AGGRESSIVE_RULES

    def test_unknown_preset(self):
        """Unknown presets raise InvalidConfigError."""
        with pytest.raises(InvalidConfigError):
            get_preset("yolo")


class TestResolvePromotionRules:
    """Tests for layered rule resolution."""

    def test_environment_default(self):
        """Production resolves to conservative, other environments to aggressive."""
        assert resolve_promotion_rules(Settings(environment="production")).name == "conservative"
        assert resolve_promotion_rules(Settings(environment="development")).name == "aggressive"

    def test_explicit_preset_wins(self):
        """An explicit preset argument beats the settings preset."""
        settings = Settings(promotion=PromotionSettings(preset="conservative"))
        assert resolve_promotion_rules(settings, preset="balanced").name == "balanced"

    def test_rules_file_and_overrides(self, tmp_path):
        """YAML file values apply before settings and call overrides."""
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("min_sample_size: 400\nmax_error_rate: 0.02\nexcluded_experiments: [legacy]\n")
        settings = Settings(
            promotion=PromotionSettings(
                preset="aggressive",
                rules_file=rules_file,
                excluded_experiments=["pricing_v2"],
                overrides={"max_error_rate": 0.03},
            )
        )
        rules = resolve_promotion_rules(settings, overrides={"min_improvement": 0.05})
        assert rules.min_sample_size == 400
        assert rules.max_error_rate == 0.03
        assert rules.min_improvement == 0.05
        assert rules.excluded_experiments == frozenset({"legacy", "pricing_v2"})

    def test_missing_rules_file(self, tmp_path):
        """A configured rules file that does not exist is a config error."""
        settings = Settings(promotion=PromotionSettings(rules_file=tmp_path / "missing.yaml"))
        with pytest.raises(InvalidConfigError):
            resolve_promotion_rules(settings)

    def test_invalid_override(self):
        """Invalid per-call overrides raise InvalidRulesError."""
        with pytest.raises(InvalidRulesError):
            resolve_promotion_rules(Settings(), overrides={"min_sample_size": -5})
