"""Schema registry. Import all public models here for convenient access."""

from dbaudit.schemas.audit import (
    AuditEntry,
    AuditFilter,
    EventKind,
    OperationResult,
    PruneResult,
    RecordOutcome,
    SecurityEvent,
    Severity,
    parse_filter,
)
from dbaudit.schemas.notification import (
    WILDCARD,
    Notification,
    NotificationFilter,
    NotificationStats,
    NotificationType,
)
from dbaudit.schemas.report import AuditLogStats, AuditReport, OperationBreakdown, UserBreakdown

__all__ = [
    "WILDCARD",
    "AuditEntry",
    "AuditFilter",
    "AuditLogStats",
    "AuditReport",
    "EventKind",
    "Notification",
    "NotificationFilter",
    "NotificationStats",
    "NotificationType",
    "OperationBreakdown",
    "OperationResult",
    "PruneResult",
    "RecordOutcome",
    "SecurityEvent",
    "Severity",
    "UserBreakdown",
    "parse_filter",
]
