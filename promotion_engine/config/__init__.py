"""
Configuration layer: application settings and promotion rule sets.
"""

from .promotion_rules import (
    AGGRESSIVE_RULES,
    BALANCED_RULES,
    CONSERVATIVE_RULES,
    DEFAULT_RULES,
    PROMOTION_PRESETS,
    PromotionRules,
    build_rules,
    get_preset,
    resolve_promotion_rules,
)
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "PromotionRules",
    "build_rules",
    "get_preset",
    "resolve_promotion_rules",
    "PROMOTION_PRESETS",
    "CONSERVATIVE_RULES",
    "BALANCED_RULES",
    "AGGRESSIVE_RULES",
    "DEFAULT_RULES",
]
