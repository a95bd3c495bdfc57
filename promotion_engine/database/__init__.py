"""
Persistence layer: connection management, ORM models and repositories.
"""

from .connection import DatabaseManager, get_db_manager, reset_managers
from .models import (
    ABExperiment,
    ABVariant,
    AIRequest,
    AIResponse,
    AlertHistory,
    AlertSubscription,
    Base,
    PromotionAuditLog,
)
