"""
Unit tests for config/settings.py
"""

import pytest
from pydantic import ValidationError

from promotion_engine.config.settings import (
    NotificationSettings,
    PromotionSettings,
    SchedulerSettings,
    Settings,
    get_settings,
)


class TestSettingsDefaults:
    """Tests for default settings values."""

    def test_scheduler_defaults(self):
        """Scheduler defaults: hourly, three promotions per hour."""
        scheduler = SchedulerSettings()
        assert scheduler.enabled is True
        assert scheduler.dry_run is False
        assert scheduler.interval_seconds == 3600
        assert scheduler.max_concurrent_promotions == 3
        assert scheduler.promotion_window_minutes == 60

    def test_notification_defaults(self):
        """Notifications default to warning and above."""
        notifications = NotificationSettings()
        assert notifications.minimum_level == "warning"
        assert notifications.default_subscribers == []

    def test_is_production(self):
        """is_production is case-insensitive."""
        assert Settings(environment="Production").is_production
        assert not Settings(environment="staging").is_production


class TestSettingsValidation:
    """Tests for settings validation."""

    def test_minimum_level_normalised(self):
        """Minimum level is lower-cased."""
        assert NotificationSettings(minimum_level="CRITICAL").minimum_level == "critical"

    def test_unknown_minimum_level(self):
        """Unknown levels are rejected."""
        with pytest.raises(ValidationError):
            NotificationSettings(minimum_level="loud")

    def test_quota_must_be_positive(self):
        """A zero promotion quota is rejected."""
        with pytest.raises(ValidationError):
            SchedulerSettings(max_concurrent_promotions=0)

    def test_invalid_promotion_overrides_fail_at_load(self):
        """Out-of-range and unknown override keys are rejected when settings load."""
        with pytest.raises(ValidationError) as exc_info:
            Settings(promotion=PromotionSettings(overrides={"min_sample_size": -5, "bogus": 1}))
        message = str(exc_info.value)
        assert "min_sample_size" in message
        assert "bogus" in message

    def test_overrides_checked_against_preset(self):
        """Overrides combine with the preset, so cross-field bounds apply."""
        with pytest.raises(ValidationError):
            Settings(promotion=PromotionSettings(preset="aggressive", overrides={"min_test_duration_hours": 100}))

    def test_valid_promotion_overrides(self):
        """Valid overrides load unchanged."""
        settings = Settings(promotion=PromotionSettings(overrides={"min_sample_size": 250}))
        assert settings.promotion.overrides == {"min_sample_size": 250}

    def test_unknown_preset_fails_at_load(self):
        """An unknown preset name is rejected when settings load."""
        with pytest.raises(ValidationError):
            Settings(promotion=PromotionSettings(preset="yolo"))

    def test_override_environment_variable_validated(self, monkeypatch):
        """Overrides from the environment are validated too."""
        monkeypatch.setenv("PROMOTION__OVERRIDES", '{"max_error_rate": 2}')
        with pytest.raises(ValidationError):
            Settings()


class TestSettingsSources:
    """Tests for environment and YAML sources."""

    def test_nested_environment_variables(self, monkeypatch):
        """Nested sections read double-underscore environment variables."""
        monkeypatch.setenv("SCHEDULER__MAX_CONCURRENT_PROMOTIONS", "5")
        monkeypatch.setenv("SCHEDULER__DRY_RUN", "true")
        settings = Settings()
        assert settings.scheduler.max_concurrent_promotions == 5
        assert settings.scheduler.dry_run is True

    def test_load_yaml_config(self, tmp_path):
        """YAML files load into a settings mapping."""
        config = tmp_path / "engine.yaml"
        config.write_text("environment: staging\nscheduler:\n  interval_seconds: 120\n")
        data = Settings.load_yaml_config(config)
        settings = Settings(**data)
        assert settings.environment == "staging"
        assert settings.scheduler.interval_seconds == 120

    def test_load_missing_yaml(self, tmp_path):
        """A missing YAML file yields an empty mapping."""
        assert Settings.load_yaml_config(tmp_path / "missing.yaml") == {}

    def test_get_settings_cached(self):
        """get_settings returns the same instance."""
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
