"""
Monitoring layer: structured logging, Prometheus metrics and alert dispatch.
"""

from .alerting import (
    Alert,
    AlertDispatcher,
    AlertHistoryStore,
    AlertType,
    ChannelResult,
    DashboardChannel,
    EmailChannel,
    MultiChannelGateway,
    NotificationChannel,
    NotificationGateway,
    NotificationPayload,
    SlackChannel,
    SqlAlertHistoryStore,
    SqlSubscriberDirectory,
    StaticSubscriberDirectory,
    Subscriber,
    SubscriberDirectory,
    WebhookChannel,
    create_alert_dispatcher,
    create_notification_gateway,
)
from .logger import ContextLogger, LogCategory, LogFormat, get_logger, setup_logging
from .metrics import MetricsCollector, get_metrics_collector
