"""
Central configuration management using Pydantic settings.

Provides type-safe configuration with validation, environment variable
support, and YAML configuration file loading.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = Path(__file__).resolve().parent


class DatabaseSettings(BaseModel):
    """Database configuration settings."""

    url: str = Field(
        default=f"sqlite+pysqlite:///{BASE_DIR / 'promotion_engine.db'}",
        description="SQLAlchemy database URL",
    )
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    echo: bool = False


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")
    file_path: Path | None = Field(default=None, description="Log file path")


class SchedulerSettings(BaseModel):
    """Auto-promotion scheduler settings."""

    enabled: bool = Field(default=True, description="Run promotion scans")
    dry_run: bool = Field(default=False, description="Evaluate without promoting")
    interval_seconds: int = Field(default=3600, ge=1, description="Seconds between scans")
    max_concurrent_promotions: int = Field(
        default=3, ge=1, description="Promotions allowed per rolling window"
    )
    promotion_window_minutes: int = Field(
        default=60, ge=1, description="Rolling window used for the promotion quota"
    )
    evaluation_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-experiment evaluation bound"
    )
    notify_on_manual_review: bool = Field(
        default=True, description="Notify operators when approval is needed"
    )


class NotificationSettings(BaseModel):
    """Alert notification settings."""

    enabled: bool = True
    minimum_level: str = Field(default="warning", description="Lowest alert level delivered")
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)
    slack_webhook_url: str | None = None
    slack_channel: str = "#experiments"
    webhook_url: str | None = None
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = ""
    email_to: list[str] = Field(default_factory=list)
    default_subscribers: list[str] = Field(
        default_factory=list,
        description="User ids notified when no subscription table rows exist",
    )

    @field_validator("minimum_level")
    @classmethod
    def validate_minimum_level(cls, v: str) -> str:
        """Restrict the minimum level to the known alert levels."""
        value = v.lower()
        if value not in {"info", "warning", "critical"}:
            raise ValueError(f"minimum_level must be info, warning or critical, got {v!r}")
        return value


class MetricsSettings(BaseModel):
    """Metrics aggregation settings."""

    default_window_hours: float = Field(default=24.0, gt=0)
    query_timeout_seconds: float = Field(default=20.0, gt=0)


class PromotionSettings(BaseModel):
    """Promotion rule selection settings.

    The preset is resolved by environment when left empty:
    production uses the conservative preset, everything else the aggressive one.
    """

    preset: str = Field(default="", description="Rule preset name")
    rules_file: Path | None = Field(default=None, description="YAML file with rule overrides")
    excluded_experiments: list[str] = Field(default_factory=list)
    overrides: dict[str, Any] = Field(default_factory=dict)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    variant_cache_ttl_seconds: float = Field(default=300.0, ge=0)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application settings
    app_name: str = "Experiment Promotion Engine"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    # Component settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    promotion: PromotionSettings = Field(default_factory=PromotionSettings)

    @model_validator(mode="after")
    def validate_promotion_overrides(self) -> "Settings":
        """Reject an unknown preset or overrides that do not form valid rules."""
        from promotion_engine.config.promotion_rules import build_rules, get_preset
        from promotion_engine.core.exceptions import InvalidConfigError, InvalidRulesError

        preset_name = self.promotion.preset or ("conservative" if self.is_production else "aggressive")
        try:
            data = get_preset(preset_name).model_dump()
            data.update(self.promotion.overrides)
            build_rules(data)
        except InvalidConfigError as e:
            raise ValueError(e.message) from e
        except InvalidRulesError as e:
            raise ValueError(f"promotion.overrides: {'; '.join(e.violations)}") from e
        return self

    @property
    def is_production(self) -> bool:
        """Whether the engine runs in the production environment."""
        return self.environment.lower() == "production"

    @classmethod
    def load_yaml_config(cls, config_path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        if config_path.exists():
            with open(config_path, "r") as f:
                return yaml.safe_load(f) or {}
        return {}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings come from environment variables and the .env file. Promotion
    rules additionally read the YAML file named by `promotion.rules_file`.
    """
    return Settings()
