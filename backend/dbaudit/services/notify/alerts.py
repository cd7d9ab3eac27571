"""Typed alert helpers on top of the notification bus."""

from __future__ import annotations

from typing import Any

from dbaudit.schemas.audit import SecurityEvent, Severity
from dbaudit.schemas.notification import Notification, NotificationType
from dbaudit.services.notify.bus import NotificationBus

# Alert type -> notification severity. Unlisted types are "info".
ALERT_SEVERITIES: dict[str, str] = {
    "CONNECTION_FAILED": "high",
    "CONNECTION_RESTORED": "info",
    "HIGH_DATABASE_USAGE": "medium",
    "SLOW_QUERY": "medium",
    "SUSPICIOUS_ACTIVITY": "high",
    "FAILED_LOGIN": "high",
    "SENSITIVE_TABLE_ACCESS": "high",
    "SYSTEM_ERROR": "high",
    "BACKUP_COMPLETED": "info",
    "BACKUP_FAILED": "high",
}


def alert_severity(alert_type: str) -> str:
    return ALERT_SEVERITIES.get(alert_type, "info")


class AlertSender:
    """Publishes categorised alerts; ``details`` always carries category and severity."""

    def __init__(self, bus: NotificationBus) -> None:
        self._bus = bus

    def _send(
        self,
        notification_type: NotificationType,
        category: str,
        alert_type: str,
        message: str,
        details: dict[str, Any] | None,
        severity: str | None = None,
    ) -> Notification:
        payload = {
            **(details or {}),
            "alert_type": alert_type,
            "category": category,
            "severity": severity or alert_severity(alert_type),
        }
        return self._bus.notify(notification_type, message, payload)

    def database_alert(
        self, alert_type: str, message: str, details: dict[str, Any] | None = None
    ) -> Notification:
        return self._send(NotificationType.DATABASE_ALERT, "database", alert_type, message, details)

    def security_alert(
        self, alert_type: str, message: str, details: dict[str, Any] | None = None
    ) -> Notification:
        return self._send(NotificationType.SECURITY_ALERT, "security", alert_type, message, details)

    def performance_alert(
        self, alert_type: str, message: str, details: dict[str, Any] | None = None
    ) -> Notification:
        return self._send(
            NotificationType.PERFORMANCE_ALERT, "performance", alert_type, message, details
        )

    def system_alert(
        self, alert_type: str, message: str, details: dict[str, Any] | None = None
    ) -> Notification:
        return self._send(NotificationType.SYSTEM_ALERT, "system", alert_type, message, details)

    def security_event_alert(self, event: SecurityEvent) -> Notification:
        """Publish a SECURITY_ALERT for a rule-engine event, keeping its severity."""
        details: dict[str, Any] = {
            "event_id": event.id,
            "kind": event.kind,
            "user": event.subject_user,
            "client_address": event.subject_address,
            "evidence": event.evidence,
        }
        return self._send(
            NotificationType.SECURITY_ALERT,
            "security",
            event.kind,
            event.message,
            details,
            severity=Severity(event.severity).value.lower(),
        )
