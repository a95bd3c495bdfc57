"""
Pytest fixtures for the Experiment Promotion Engine tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from promotion_engine.config.settings import (  # noqa: E402
    DatabaseSettings,
    NotificationSettings,
    PromotionSettings,
    SchedulerSettings,
    Settings,
)
from promotion_engine.core.data_types import VariantMetrics, utc_now  # noqa: E402
from promotion_engine.database.connection import DatabaseManager  # noqa: E402
from promotion_engine.database.models import (  # noqa: E402
    ABExperiment,
    ABVariant,
    AIRequest,
    AIResponse,
)
from promotion_engine.monitoring.alerting import (  # noqa: E402
    AlertDispatcher,
    ChannelResult,
    NotificationGateway,
    StaticSubscriberDirectory,
    Subscriber,
)


class RecordingGateway(NotificationGateway):
    """Gateway that records payloads and always succeeds."""

    def __init__(self):
        self.payloads = []

    async def send(self, payload):
        self.payloads.append(payload)
        return [ChannelResult(channel="dashboard", success=True)]


def make_metrics(
    name,
    requests=1000,
    errors=0,
    p95=100.0,
    traffic=50.0,
    share=0.5,
    experiment="checkout_flow",
):
    """VariantMetrics with success rate derived from errors."""
    error_rate = errors / requests if requests else 0.0
    return VariantMetrics(
        variant_id=f"{name}-id",
        variant_name=name,
        experiment_name=experiment,
        traffic_percentage=traffic,
        traffic_share=share,
        total_requests=requests,
        sample_size=requests,
        error_count=errors,
        error_rate=error_rate,
        success_rate=1 - error_rate if requests else 0.0,
        p95_latency_ms=p95,
    )


def seed_experiment(
    db_manager,
    name,
    variants,
    started_hours_ago=48.0,
    is_active=True,
    events_at=None,
):
    """Insert an experiment with variants and request/response events.

    Args:
        db_manager: DatabaseManager with the schema created.
        name: Experiment name.
        variants: Mapping of variant name to
            (traffic_percentage, requests, errors, latency_ms).
        started_hours_ago: Experiment start relative to now.
        is_active: Active flag.
        events_at: Timestamp for all events; defaults to one hour ago.

    Returns:
        Experiment id.
    """
    now = utc_now()
    events_at = events_at or now - timedelta(hours=1)
    experiment_id = str(uuid4())
    with db_manager.session() as session:
        session.add(
            ABExperiment(
                experiment_id=experiment_id,
                name=name,
                is_active=is_active,
                start_date=now - timedelta(hours=started_hours_ago),
            )
        )
        session.flush()
        for variant_name, (traffic, requests, errors, latency) in variants.items():
            variant_id = str(uuid4())
            session.add(
                ABVariant(
                    variant_id=variant_id,
                    experiment_id=experiment_id,
                    name=variant_name,
                    traffic_percentage=traffic,
                )
            )
            session.flush()
            rows = []
            for i in range(requests):
                request_id = str(uuid4())
                rows.append(
                    AIRequest(
                        request_id=request_id,
                        variant_id=variant_id,
                        user_id=f"user-{i}",
                        created_at=events_at,
                    )
                )
                rows.append(
                    AIResponse(
                        request_id=request_id,
                        latency_ms=latency,
                        error="upstream timeout" if i < errors else None,
                        created_at=events_at,
                    )
                )
            session.add_all(rows)
    return experiment_id


@pytest.fixture
def settings(tmp_path):
    """Settings bound to a file-backed SQLite database under tmp_path."""
    return Settings(
        environment="development",
        database=DatabaseSettings(url=f"sqlite+pysqlite:///{tmp_path / 'engine.db'}"),
        scheduler=SchedulerSettings(interval_seconds=60, max_concurrent_promotions=3),
        notifications=NotificationSettings(minimum_level="warning"),
        promotion=PromotionSettings(preset="aggressive", lock_timeout_seconds=2.0),
    )


@pytest.fixture
def db_manager(settings):
    """DatabaseManager with all tables created."""
    manager = DatabaseManager(settings)
    manager.create_all()
    yield manager
    manager.close()


@pytest.fixture
def gateway():
    """Notification gateway recording every payload."""
    return RecordingGateway()


@pytest.fixture
def dispatcher(gateway):
    """Alert dispatcher with one operator subscribed to every level."""
    from promotion_engine.core.data_types import Severity

    subscribers = StaticSubscriberDirectory(
        [Subscriber(user_id="oncall", levels={Severity.INFO, Severity.WARNING, Severity.CRITICAL})]
    )
    return AlertDispatcher(gateway, subscribers, delivery_timeout_seconds=1.0)


@pytest.fixture
def winning_variants():
    """Control at 95% success vs treatment at 99%, 1500 requests each."""
    return {
        "control": (50.0, 1500, 75, 100.0),
        "treatment": (50.0, 1500, 15, 100.0),
    }


@pytest.fixture
def fixed_now():
    """Reference time for deterministic unit tests."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def metrics_factory():
    """Factory for VariantMetrics."""
    return make_metrics


@pytest.fixture
def seed(db_manager):
    """Seed an experiment into the test database."""

    def _seed(name, variants, **kwargs):
        return seed_experiment(db_manager, name, variants, **kwargs)

    return _seed
