"""
Alert and notification dispatch for the promotion engine.

Provides:
- Alert definitions by level (critical, warning, info) and type
- Notification channels (Slack, webhook, email, dashboard) behind a gateway
- Subscriber resolution with optional experiment scoping
- Isolated, time-bounded fan-out of one notification per (alert, subscriber)
- Alert history bookkeeping for the recent-incident safety check
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import smtplib
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import BaseModel, Field

from promotion_engine.core.data_types import DispatchStats, Severity, utc_now
from promotion_engine.core.exceptions import NotificationError, PromotionEngineError

from .logger import LogCategory, get_logger, log_alert
from .metrics import MetricsCollector, get_metrics_collector

if TYPE_CHECKING:
    from promotion_engine.config.settings import Settings
    from promotion_engine.database.connection import DatabaseManager


logger = get_logger("alerting", LogCategory.ALERT)


class AlertType(str, Enum):
    """Alert types raised by monitoring and by promotion lifecycle events."""

    PERFORMANCE = "performance"
    ERRORS = "errors"
    TRAFFIC = "traffic"
    SIGNIFICANCE = "significance"
    PROMOTION = "promotion"
    ROLLBACK = "rollback"
    APPROVAL_REQUIRED = "approval_required"


class NotificationChannelType(str, Enum):
    """Notification delivery channels."""

    SLACK = "slack"
    WEBHOOK = "webhook"
    EMAIL = "email"
    DASHBOARD = "dashboard"


class Alert(BaseModel):
    """Alert generated for an experiment or variant."""

    level: Severity
    alert_type: AlertType
    message: str
    experiment_name: str | None = None
    variant_name: str | None = None
    metric: str | None = None
    value: float | None = None
    threshold: float | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = Field(default_factory=dict)
    fingerprint: str = ""

    def model_post_init(self, __context: Any) -> None:
        """Generate fingerprint after initialization."""
        if not self.fingerprint:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a fingerprint for deduplication."""
        content = f"{self.alert_type.value}:{self.experiment_name}:{self.variant_name}:{self.metric}:{self.level.value}"
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    @property
    def title(self) -> str:
        """Notification title: [experiment] TYPE - variant."""
        title = f"[{self.experiment_name or 'experiment'}] {self.alert_type.value.upper()}"
        if self.variant_name:
            title += f" - {self.variant_name}"
        return title

    def to_dict(self) -> dict[str, Any]:
        """Convert alert to dictionary."""
        return self.model_dump(mode="json")


class NotificationPayload(BaseModel):
    """Structured payload accepted by a notification gateway."""

    recipient: str
    severity: Severity
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChannelResult(BaseModel):
    """Delivery outcome on one channel."""

    channel: str
    success: bool
    error: str | None = None


class Subscriber(BaseModel):
    """Operator subscribed to experiment alerts."""

    user_id: str
    levels: set[Severity] = Field(default_factory=lambda: {Severity.WARNING, Severity.CRITICAL})
    experiment_name: str | None = None
    enabled: bool = True

    def wants(self, alert: Alert) -> bool:
        """Whether this subscriber should receive the alert."""
        if not self.enabled or alert.level not in self.levels:
            return False
        return self.experiment_name is None or self.experiment_name == alert.experiment_name


# =============================================================================
# Notification Channels
# =============================================================================


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> bool:
        """Send a notification.

        Args:
            payload: Notification to send.

        Returns:
            True if sent successfully.

        Raises:
            NotificationError: Delivery failed.
        """

    @abstractmethod
    def get_channel(self) -> NotificationChannelType:
        """Get the notification channel type."""


class EmailChannel(NotificationChannel):
    """Email notification channel."""

    def __init__(
        self,
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        username: str = "",
        password: str = "",
        from_address: str = "",
        to_addresses: list[str] | None = None,
    ) -> None:
        """Initialize email channel.

        Args:
            smtp_host: SMTP server host.
            smtp_port: SMTP server port.
            username: SMTP username.
            password: SMTP password.
            from_address: Sender email address.
            to_addresses: Recipient email addresses.
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.to_addresses = to_addresses or []

    def _build_message(self, payload: NotificationPayload) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.from_address
        msg["To"] = ", ".join(self.to_addresses)
        msg["Subject"] = f"[{payload.severity.value.upper()}] {payload.title}"

        body = f"""
Alert: {payload.title}
Severity: {payload.severity.value}
Recipient: {payload.recipient}

Message:
{payload.message}

Details:
{json.dumps(payload.metadata, indent=2, default=str)}
"""
        msg.attach(MIMEText(body, "plain"))
        return msg

    async def send(self, payload: NotificationPayload) -> bool:
        """Send email notification."""
        msg = self._build_message(payload)

        def send_sync() -> bool:
            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                if self.username and self.password:
                    server.starttls()
                    server.login(self.username, self.password)
                server.send_message(msg)
            return True

        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, send_sync)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Email delivery failed: {e}", channel="email", recipient=payload.recipient) from e

    def get_channel(self) -> NotificationChannelType:
        return NotificationChannelType.EMAIL


class SlackChannel(NotificationChannel):
    """Slack notification channel."""

    SEVERITY_EMOJI = {
        Severity.CRITICAL: ":rotating_light:",
        Severity.WARNING: ":warning:",
        Severity.INFO: ":information_source:",
    }

    SEVERITY_COLOR = {
        Severity.CRITICAL: "#FF0000",
        Severity.WARNING: "#FFA500",
        Severity.INFO: "#0000FF",
    }

    def __init__(self, webhook_url: str, channel: str = "#experiments", timeout_seconds: float = 10.0) -> None:
        """Initialize Slack channel.

        Args:
            webhook_url: Slack webhook URL.
            channel: Slack channel.
            timeout_seconds: HTTP timeout.
        """
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout_seconds = timeout_seconds

    def build_body(self, payload: NotificationPayload) -> dict[str, Any]:
        """Build the Slack attachment body."""
        fields = [
            {"title": "Severity", "value": payload.severity.value, "short": True},
            {"title": "Recipient", "value": payload.recipient, "short": True},
        ]
        for key in ("alert_type", "metric", "value", "threshold"):
            if payload.metadata.get(key) is not None:
                fields.append({"title": key.replace("_", " ").title(), "value": str(payload.metadata[key]), "short": True})

        return {
            "channel": self.channel,
            "attachments": [
                {
                    "color": self.SEVERITY_COLOR.get(payload.severity, "#808080"),
                    "title": f"{self.SEVERITY_EMOJI.get(payload.severity, '')} {payload.title}",
                    "text": payload.message,
                    "fields": fields,
                    "footer": "Experiment Promotion Engine",
                }
            ],
        }

    async def send(self, payload: NotificationPayload) -> bool:
        """Send Slack notification."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json=self.build_body(payload)) as response:
                    if response.status != 200:
                        raise NotificationError(
                            f"Slack returned HTTP {response.status}",
                            channel="slack",
                            recipient=payload.recipient,
                        )
                    return True
        except asyncio.TimeoutError as e:
            raise NotificationError(
                f"Slack delivery timed out after {self.timeout_seconds}s",
                channel="slack",
                recipient=payload.recipient,
            ) from e
        except aiohttp.ClientError as e:
            raise NotificationError(f"Slack delivery failed: {e}", channel="slack", recipient=payload.recipient) from e

    def get_channel(self) -> NotificationChannelType:
        return NotificationChannelType.SLACK


class WebhookChannel(NotificationChannel):
    """Generic webhook channel."""

    def __init__(
        self,
        webhook_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize webhook channel.

        Args:
            webhook_url: Webhook URL.
            headers: Optional HTTP headers.
            timeout_seconds: HTTP timeout.
        """
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds

    async def send(self, payload: NotificationPayload) -> bool:
        """Send webhook notification."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.webhook_url,
                    json=payload.model_dump(mode="json"),
                    headers=self.headers,
                ) as response:
                    if response.status not in (200, 201, 202):
                        raise NotificationError(
                            f"Webhook returned HTTP {response.status}",
                            channel="webhook",
                            recipient=payload.recipient,
                        )
                    return True
        except asyncio.TimeoutError as e:
            raise NotificationError(
                f"Webhook delivery timed out after {self.timeout_seconds}s",
                channel="webhook",
                recipient=payload.recipient,
            ) from e
        except aiohttp.ClientError as e:
            raise NotificationError(f"Webhook delivery failed: {e}", channel="webhook", recipient=payload.recipient) from e

    def get_channel(self) -> NotificationChannelType:
        return NotificationChannelType.WEBHOOK


class DashboardChannel(NotificationChannel):
    """Dashboard channel - stores notifications for dashboard display."""

    def __init__(self, max_items: int = 1000) -> None:
        self.max_items = max_items
        self.notifications: list[NotificationPayload] = []

    async def send(self, payload: NotificationPayload) -> bool:
        """Store notification for dashboard display."""
        self.notifications.append(payload)
        if len(self.notifications) > self.max_items:
            self.notifications = self.notifications[-self.max_items :]
        return True

    def get_channel(self) -> NotificationChannelType:
        return NotificationChannelType.DASHBOARD

    def get_notifications(
        self,
        severity: Severity | None = None,
        recipient: str | None = None,
        limit: int = 100,
    ) -> list[NotificationPayload]:
        """Get stored notifications, optionally filtered."""
        items = self.notifications
        if severity:
            items = [n for n in items if n.severity == severity]
        if recipient:
            items = [n for n in items if n.recipient == recipient]
        return items[-limit:]


# =============================================================================
# Gateway
# =============================================================================


class NotificationGateway(ABC):
    """Accepts a payload and reports per-channel success or failure."""

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> list[ChannelResult]:
        """Deliver a payload on every configured channel."""


class MultiChannelGateway(NotificationGateway):
    """Gateway that fans one payload out to all registered channels."""

    def __init__(self, channels: Sequence[NotificationChannel] | None = None) -> None:
        self._channels: list[NotificationChannel] = list(channels or [])

    def register_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)
        logger.info(f"Registered notification channel: {channel.get_channel().value}")

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def send(self, payload: NotificationPayload) -> list[ChannelResult]:
        """Send to each channel. A failing channel never stops the others."""
        results: list[ChannelResult] = []
        for channel in self._channels:
            name = channel.get_channel().value
            try:
                success = await channel.send(payload)
                results.append(ChannelResult(channel=name, success=bool(success)))
            except NotificationError as e:
                logger.warning(f"Notification to {payload.recipient} failed on {name}: {e.message}")
                results.append(ChannelResult(channel=name, success=False, error=e.message))
            except Exception as e:
                logger.error(f"Unexpected error sending to {payload.recipient} on {name}: {e!r}")
                results.append(ChannelResult(channel=name, success=False, error=repr(e)))
        return results


def create_notification_gateway(settings: "Settings") -> MultiChannelGateway:
    """Build a gateway from notification settings.

    The dashboard channel is always registered; Slack, webhook and email are
    registered when configured.
    """
    config = settings.notifications
    gateway = MultiChannelGateway([DashboardChannel()])
    if config.slack_webhook_url:
        gateway.register_channel(
            SlackChannel(config.slack_webhook_url, config.slack_channel, config.delivery_timeout_seconds)
        )
    if config.webhook_url:
        gateway.register_channel(WebhookChannel(config.webhook_url, timeout_seconds=config.delivery_timeout_seconds))
    if config.email_from and config.email_to:
        gateway.register_channel(
            EmailChannel(
                smtp_host=config.smtp_host,
                smtp_port=config.smtp_port,
                username=config.smtp_username,
                password=config.smtp_password,
                from_address=config.email_from,
                to_addresses=config.email_to,
            )
        )
    return gateway


# =============================================================================
# Subscribers
# =============================================================================


class SubscriberDirectory(ABC):
    """Resolves the operators subscribed to alerts."""

    @abstractmethod
    def list_subscribers(self, experiment_name: str | None = None) -> list[Subscriber]:
        """Enabled subscribers, global plus those scoped to the experiment."""


class StaticSubscriberDirectory(SubscriberDirectory):
    """Fixed subscriber list, typically from settings."""

    def __init__(self, subscribers: Sequence[Subscriber] | None = None) -> None:
        self._subscribers = list(subscribers or [])

    def list_subscribers(self, experiment_name: str | None = None) -> list[Subscriber]:
        return [
            s
            for s in self._subscribers
            if s.enabled and (s.experiment_name is None or s.experiment_name == experiment_name)
        ]


class SqlSubscriberDirectory(SubscriberDirectory):
    """Subscribers from the alert_subscriptions table."""

    def __init__(self, db_manager: "DatabaseManager", fallback: Sequence[Subscriber] | None = None) -> None:
        from promotion_engine.database.repository import SubscriptionRepository

        self._db = db_manager
        self._repo = SubscriptionRepository()
        self._fallback = list(fallback or [])

    def list_subscribers(self, experiment_name: str | None = None) -> list[Subscriber]:
        with self._db.session() as session:
            rows = self._repo.list_enabled(session, experiment_name)
            subscribers = [
                Subscriber(
                    user_id=row.user_id,
                    levels={Severity(level) for level in row.levels},
                    experiment_name=row.experiment_name,
                    enabled=row.enabled,
                )
                for row in rows
            ]
        return subscribers or list(self._fallback)


# =============================================================================
# Alert History
# =============================================================================


class AlertHistoryStore(ABC):
    """Delivery bookkeeping for dispatched alerts."""

    @abstractmethod
    def record(self, alert: Alert, sent: int, failed: int) -> None:
        """Persist a dispatched alert with its delivery counts."""

    @abstractmethod
    def count_since(self, experiment_name: str, variant_name: str, level: Severity, since: datetime) -> int:
        """Alerts of a level recorded for a variant since a time."""


class SqlAlertHistoryStore(AlertHistoryStore):
    """Alert history in the alert_history table."""

    def __init__(self, db_manager: "DatabaseManager") -> None:
        from promotion_engine.database.repository import AlertHistoryRepository

        self._db = db_manager
        self._repo = AlertHistoryRepository()

    def record(self, alert: Alert, sent: int, failed: int) -> None:
        with self._db.session() as session:
            self._repo.create(
                session,
                experiment_name=alert.experiment_name,
                variant_name=alert.variant_name,
                level=alert.level.value,
                alert_type=alert.alert_type.value,
                message=alert.message,
                metric=alert.metric,
                value=alert.value,
                threshold=alert.threshold,
                fingerprint=alert.fingerprint,
                notifications_sent=sent,
                notifications_failed=failed,
                created_at=alert.timestamp,
            )

    def count_since(self, experiment_name: str, variant_name: str, level: Severity, since: datetime) -> int:
        with self._db.session() as session:
            return self._repo.count_since(session, experiment_name, variant_name, level.value, since)


# =============================================================================
# Dispatcher
# =============================================================================


class AlertDispatcher:
    """Fans alerts out to subscribed operators.

    Each (alert, subscriber) pair is an isolated, time-bounded delivery. A
    failed or slow delivery is counted and logged and never blocks the
    others, and never raises to the caller.
    """

    def __init__(
        self,
        gateway: NotificationGateway,
        subscribers: SubscriberDirectory,
        history: AlertHistoryStore | None = None,
        delivery_timeout_seconds: float = 10.0,
        enabled: bool = True,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            gateway: Notification gateway.
            subscribers: Subscriber directory.
            history: Optional alert history store.
            delivery_timeout_seconds: Bound on each delivery.
            enabled: When False, dispatch only logs.
            metrics_collector: Prometheus metrics collector.
        """
        self.gateway = gateway
        self.subscribers = subscribers
        self.history = history
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.enabled = enabled
        self._metrics = metrics_collector or get_metrics_collector()

    @staticmethod
    def build_payload(alert: Alert, subscriber: Subscriber) -> NotificationPayload:
        """Build the gateway payload for one subscriber."""
        return NotificationPayload(
            recipient=subscriber.user_id,
            severity=alert.level,
            title=alert.title,
            message=alert.message,
            metadata={
                "alert_type": alert.alert_type.value,
                "experiment_name": alert.experiment_name,
                "variant_name": alert.variant_name,
                "metric": alert.metric,
                "value": alert.value,
                "threshold": alert.threshold,
                "timestamp": alert.timestamp.isoformat(),
                "fingerprint": alert.fingerprint,
                **alert.context,
            },
        )

    async def _deliver(self, alert: Alert, subscriber: Subscriber) -> None:
        payload = self.build_payload(alert, subscriber)
        try:
            results = await asyncio.wait_for(self.gateway.send(payload), timeout=self.delivery_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise NotificationError(
                f"Delivery timed out after {self.delivery_timeout_seconds}s",
                recipient=subscriber.user_id,
            ) from e

        if not any(result.success for result in results):
            errors = "; ".join(f"{r.channel}: {r.error or 'not delivered'}" for r in results) or "no channels"
            raise NotificationError(f"All channels failed ({errors})", recipient=subscriber.user_id)

    async def dispatch(
        self,
        alerts: Sequence[Alert],
        minimum_level: Severity = Severity.WARNING,
        experiment_name: str | None = None,
    ) -> DispatchStats:
        """Deliver alerts at or above a level to their subscribers.

        Every alert is written to the history store whether or not it was
        delivered, so the recent-incident check sees alerts that were below
        the minimum level, sent while notifications were disabled or raised
        with nobody subscribed.

        Args:
            alerts: Alerts to deliver.
            minimum_level: Lowest level delivered.
            experiment_name: Experiment used to resolve scoped subscribers.
                Defaults to the alerts' own experiment.

        Returns:
            Counts of sent and failed deliveries with per-failure errors.
        """
        stats = DispatchStats(total_alerts=len(alerts))
        if not alerts:
            logger.debug("No alerts to dispatch")
            return stats

        minimum_level = Severity(minimum_level)
        filtered = [a for a in alerts if a.level.rank >= minimum_level.rank]
        scope = experiment_name or alerts[0].experiment_name
        per_alert: dict[str, list[int]] = {}
        delivered = False

        if not filtered:
            logger.debug(f"No alerts meet minimum level: {minimum_level.value}")
        elif not self.enabled:
            for alert in filtered:
                logger.info(f"Notifications disabled, alert not sent: {alert.title}")
        else:
            per_alert = await self._deliver_all(filtered, scope, stats)
            delivered = True

        await self._record_history(alerts, per_alert, stats)

        if delivered:
            self._metrics.record_notifications(stats.sent, stats.failed)
            log_alert(
                f"Dispatched {len(filtered)} alert(s): {stats.sent} sent, {stats.failed} failed",
                level="WARNING" if stats.failed or stats.errors else "INFO",
                experiment=scope,
                errors=stats.errors[:5],
            )
        return stats

    async def _deliver_all(
        self,
        alerts: list[Alert],
        scope: str | None,
        stats: DispatchStats,
    ) -> dict[str, list[int]]:
        """Deliver to every interested subscriber; returns [sent, failed] per alert key."""
        try:
            subscribers = await asyncio.to_thread(self.subscribers.list_subscribers, scope)
        except PromotionEngineError as e:
            logger.error(f"Failed to resolve subscribers for {scope}: {e}")
            self._metrics.record_error(e.error_code, "alerting")
            stats.errors.append(f"Subscriber lookup failed: {e.message}")
            return {}
        if not subscribers:
            logger.warning(f"No subscribers for alerts on {scope}")
            return {}

        pairs = [(alert, sub) for alert in alerts for sub in subscribers if sub.wants(alert)]
        outcomes = await asyncio.gather(
            *(self._deliver(alert, sub) for alert, sub in pairs),
            return_exceptions=True,
        )

        per_alert: dict[str, list[int]] = {}
        for (alert, sub), outcome in zip(pairs, outcomes):
            counts = per_alert.setdefault(self._history_key(alert), [0, 0])
            if isinstance(outcome, BaseException):
                stats.failed += 1
                counts[1] += 1
                reason = outcome.message if isinstance(outcome, NotificationError) else repr(outcome)
                stats.errors.append(f"Failed to notify {sub.user_id} of {alert.title}: {reason}")
            else:
                stats.sent += 1
                counts[0] += 1
        return per_alert

    async def _record_history(
        self,
        alerts: Sequence[Alert],
        per_alert: dict[str, list[int]],
        stats: DispatchStats,
    ) -> None:
        if self.history is None:
            return
        for alert in alerts:
            sent, failed = per_alert.get(self._history_key(alert), [0, 0])
            try:
                await asyncio.to_thread(self.history.record, alert, sent, failed)
            except Exception as e:
                logger.error(f"Failed to record alert history for {alert.title}: {e}")
                stats.errors.append(f"History write failed for {alert.title}: {e}")

    @staticmethod
    def _history_key(alert: Alert) -> str:
        return alert.fingerprint + alert.timestamp.isoformat()

    # -------------------------------------------------------------------------
    # Lifecycle events
    # -------------------------------------------------------------------------

    async def notify_promotion(
        self,
        experiment_name: str,
        variant_name: str,
        previous_variant: str | None,
        confidence_level: float | None,
        improvement: float | None,
        triggered_by: str,
        forced: bool = False,
    ) -> DispatchStats:
        """Announce a promotion to subscribers."""
        improvement_text = f"{improvement * 100:.2f}%" if improvement is not None else "n/a"
        message = (
            f"Variant {variant_name} promoted to 100% traffic "
            f"(previous leader: {previous_variant or 'none'}, confidence {confidence_level or 0:.1f}%, "
            f"improvement {improvement_text}, trigger {triggered_by})"
        )
        if forced:
            message += ". Safety checks were bypassed by operator."
        alert = Alert(
            level=Severity.INFO,
            alert_type=AlertType.PROMOTION,
            message=message,
            experiment_name=experiment_name,
            variant_name=variant_name,
            metric="confidence_level",
            value=confidence_level,
            context={"forced": forced, "triggered_by": triggered_by},
        )
        return await self.dispatch([alert], minimum_level=Severity.INFO, experiment_name=experiment_name)

    async def notify_rollback(
        self,
        experiment_name: str,
        rolled_back_variant: str | None,
        reason: str,
        restored_traffic: dict[str, float],
    ) -> DispatchStats:
        """Announce a rollback to subscribers."""
        distribution = ", ".join(f"{name}={pct:g}%" for name, pct in restored_traffic.items())
        alert = Alert(
            level=Severity.WARNING,
            alert_type=AlertType.ROLLBACK,
            message=f"Promotion of {rolled_back_variant or 'unknown'} rolled back: {reason}. Traffic restored to {distribution}",
            experiment_name=experiment_name,
            variant_name=rolled_back_variant,
            context={"restored_traffic": restored_traffic},
        )
        return await self.dispatch([alert], minimum_level=Severity.INFO, experiment_name=experiment_name)

    async def notify_approval_required(
        self,
        experiment_name: str,
        variant_name: str | None,
        reason: str,
        confidence_level: float | None = None,
    ) -> DispatchStats:
        """Ask operators to review a promotion candidate."""
        alert = Alert(
            level=Severity.INFO,
            alert_type=AlertType.APPROVAL_REQUIRED,
            message=f"Manual approval required to promote {variant_name or 'winner'}: {reason}",
            experiment_name=experiment_name,
            variant_name=variant_name,
            metric="confidence_level",
            value=confidence_level,
        )
        return await self.dispatch([alert], minimum_level=Severity.INFO, experiment_name=experiment_name)


def create_alert_dispatcher(
    settings: "Settings",
    db_manager: "DatabaseManager",
    gateway: NotificationGateway | None = None,
) -> AlertDispatcher:
    """Build the dispatcher used by the service and scheduler."""
    fallback = [Subscriber(user_id=user_id) for user_id in settings.notifications.default_subscribers]
    return AlertDispatcher(
        gateway=gateway or create_notification_gateway(settings),
        subscribers=SqlSubscriberDirectory(db_manager, fallback=fallback),
        history=SqlAlertHistoryStore(db_manager),
        delivery_timeout_seconds=settings.notifications.delivery_timeout_seconds,
        enabled=settings.notifications.enabled,
    )
