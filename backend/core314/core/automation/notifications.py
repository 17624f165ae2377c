"""
Delivery Channels - Slack, Teams, email, PagerDuty and generic webhooks.

Every channel is a black-box HTTP endpoint. A failed delivery raises
DeliveryError from ``deliver``; ``deliver_many`` captures each channel's
outcome so one broken channel never blocks the others.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from core314.core.config import Settings, settings as default_settings
from core314.core.exceptions import ActionError, DeliveryError

logger = structlog.get_logger()


class DeliveryChannel(str, Enum):
    SLACK = "slack"
    TEAMS = "teams"
    EMAIL = "email"
    WEBHOOK = "webhook"
    PAGERDUTY = "pagerduty"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_payload(cls, value: Any) -> "NotificationPriority":
        """Accept the urgency scale as well; anything unrecognized is normal."""
        if isinstance(value, str):
            value = value.strip().lower()
            value = _PRIORITY_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            logger.warning("unknown_notification_priority", priority=value)
            return cls.NORMAL


_PRIORITY_ALIASES = {"medium": "normal", "critical": "urgent"}


@dataclass
class Notification:
    """Channel-agnostic notification payload."""
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict[str, Any] = field(default_factory=dict)
    recipient: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "priority": self.priority.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class HttpOutcome:
    """Result of one outbound HTTP call."""
    method: str
    url: str
    status_code: int
    response_time_ms: int
    body: Any = None


@dataclass
class DeliveryResult:
    """Per-channel delivery outcome, safe to store as JSON."""
    channel: str
    success: bool
    status_code: Optional[int] = None
    message: Optional[str] = None
    response_time_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NotificationTemplates:
    """Notification templates for engine events."""

    @staticmethod
    def escalation_triggered(
        rule_name: str,
        level: int,
        reason: str,
        action: str,
        context: dict[str, Any],
    ) -> Notification:
        priority = NotificationPriority.URGENT if action == "page_oncall" else NotificationPriority.HIGH
        return Notification(
            title=f"Escalation: {rule_name} (level {level})",
            body=f"{reason}\nAction: {action}",
            priority=priority,
            data={
                "rule_name": rule_name,
                "escalation_level": level,
                "escalation_reason": reason,
                "action": action,
                "context": context,
            },
        )

    @staticmethod
    def queue_action(action_payload: dict[str, Any]) -> Notification:
        """Build a notification from a send_notification action payload."""
        message = action_payload.get("message") or action_payload.get("content") or ""
        return Notification(
            title=action_payload.get("subject") or action_payload.get("title") or "Core314 Automation",
            body=message,
            priority=NotificationPriority.from_payload(action_payload.get("priority", "normal")),
            data=action_payload.get("data") or {},
            recipient=action_payload.get("to") or action_payload.get("email"),
        )


class NotificationService:
    """
    Outbound HTTP for notifications and action dispatch.

    Owns an httpx.AsyncClient unless one is injected (tests inject a
    client backed by httpx.MockTransport).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS)
        self.templates = NotificationTemplates()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ----------------------------------------------------------------------
    # Raw HTTP
    # ----------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        channel: Optional[str] = None,
    ) -> HttpOutcome:
        """Perform one HTTP call; non-2xx and transport errors raise DeliveryError."""
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method.upper(),
                url,
                json=json,
                headers=headers,
                timeout=self._bounded_timeout(timeout),
            )
        except httpx.HTTPError as e:
            logger.warning("delivery_transport_error", url=url, channel=channel, error=str(e))
            raise DeliveryError(f"{method.upper()} {url} failed: {e}", channel=channel) from e

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text or None

        if not response.is_success:
            logger.warning(
                "delivery_http_error",
                url=url,
                channel=channel,
                status_code=response.status_code,
            )
            raise DeliveryError(
                f"{method.upper()} {url} returned HTTP {response.status_code}",
                channel=channel,
                http_status=response.status_code,
                details={"response": body},
            )

        return HttpOutcome(
            method=method.upper(),
            url=url,
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
            body=body,
        )

    def _bounded_timeout(self, timeout: Optional[float]) -> float:
        """Outbound calls must finish well inside an execution lease."""
        ceiling = self.config.EXECUTION_LEASE_SECONDS * 0.8
        return min(float(timeout or self.config.HTTP_TIMEOUT_SECONDS), ceiling)

    # ----------------------------------------------------------------------
    # Channels
    # ----------------------------------------------------------------------

    async def deliver(
        self,
        channel: str,
        notification: Notification,
        channel_config: Optional[dict[str, Any]] = None,
    ) -> HttpOutcome:
        """
        Deliver to one channel.

        Raises:
            ActionError: channel unknown or not configured
            DeliveryError: the endpoint rejected the call or was unreachable
        """
        config = channel_config or {}
        logger.info("delivering_notification", channel=channel, title=notification.title)

        if channel == DeliveryChannel.SLACK:
            return await self._send_slack(notification, config)
        if channel == DeliveryChannel.TEAMS:
            return await self._send_teams(notification, config)
        if channel == DeliveryChannel.EMAIL:
            return await self._send_email(notification, config)
        if channel == DeliveryChannel.PAGERDUTY:
            return await self._send_pagerduty(notification, config)
        if channel == DeliveryChannel.WEBHOOK:
            return await self._send_webhook(notification, config)
        raise ActionError(f"Unknown notification channel: {channel}", channel=channel)

    async def deliver_many(
        self,
        channels: list[str],
        notification: Notification,
        channel_configs: Optional[dict[str, dict[str, Any]]] = None,
    ) -> list[DeliveryResult]:
        """Attempt every channel; failures are recorded, never raised."""
        results = []
        for channel in channels:
            config = (channel_configs or {}).get(channel) or {}
            try:
                outcome = await self.deliver(channel, notification, config)
                results.append(DeliveryResult(
                    channel=channel,
                    success=True,
                    status_code=outcome.status_code,
                    response_time_ms=outcome.response_time_ms,
                ))
            except DeliveryError as e:
                results.append(DeliveryResult(
                    channel=channel,
                    success=False,
                    status_code=e.http_status,
                    message=e.message,
                ))
        return results

    async def _send_slack(self, notification: Notification, config: dict[str, Any]) -> HttpOutcome:
        url = config.get("webhook_url") or self.config.SLACK_WEBHOOK_URL
        if not url:
            raise ActionError("Slack webhook URL not configured", channel="slack")
        payload = {
            "text": f"*{notification.title}*\n{notification.body}",
            "channel": config.get("channel") or notification.data.get("channel") or self.config.SLACK_DEFAULT_CHANNEL,
        }
        return await self.request("POST", url, json=payload, channel="slack")

    async def _send_teams(self, notification: Notification, config: dict[str, Any]) -> HttpOutcome:
        url = config.get("webhook_url") or self.config.TEAMS_WEBHOOK_URL
        if not url:
            raise ActionError("Teams webhook URL not configured", channel="teams")
        payload = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": notification.title,
            "title": notification.title,
            "text": notification.body,
        }
        return await self.request("POST", url, json=payload, channel="teams")

    async def _send_email(self, notification: Notification, config: dict[str, Any]) -> HttpOutcome:
        api_key = config.get("api_key") or self.config.SENDGRID_API_KEY
        if not api_key:
            raise ActionError("SendGrid API key not configured", channel="email")
        recipient = config.get("to") or notification.recipient
        if not recipient:
            raise ActionError("Email recipient missing", channel="email")
        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.config.EMAIL_FROM, "name": self.config.EMAIL_FROM_NAME},
            "subject": notification.title,
            "content": [{"type": "text/plain", "value": notification.body}],
        }
        return await self.request(
            "POST",
            self.config.SENDGRID_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
            channel="email",
        )

    async def _send_pagerduty(self, notification: Notification, config: dict[str, Any]) -> HttpOutcome:
        url = config.get("webhook_url") or self.config.PAGERDUTY_WEBHOOK_URL
        if not url:
            raise ActionError("PagerDuty endpoint not configured", channel="pagerduty")
        severity = "critical" if notification.priority == NotificationPriority.URGENT else "error"
        payload = {
            "routing_key": config.get("routing_key"),
            "event_action": "trigger",
            "payload": {
                "summary": notification.title,
                "severity": severity,
                "source": "core314",
                "custom_details": notification.data,
            },
        }
        return await self.request("POST", url, json=payload, channel="pagerduty")

    async def _send_webhook(self, notification: Notification, config: dict[str, Any]) -> HttpOutcome:
        url = config.get("url") or config.get("webhook_url")
        if not url:
            raise ActionError("Webhook URL not configured", channel="webhook")
        return await self.request(
            "POST",
            url,
            json=notification.to_payload(),
            headers=config.get("headers"),
            channel="webhook",
        )
