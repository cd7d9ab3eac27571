"""Notification schemas."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from dbaudit.schemas.audit import UtcDatetime, utcnow


class NotificationType(StrEnum):
    DATABASE_ALERT = "DATABASE_ALERT"
    SECURITY_ALERT = "SECURITY_ALERT"
    PERFORMANCE_ALERT = "PERFORMANCE_ALERT"
    SYSTEM_ALERT = "SYSTEM_ALERT"


WILDCARD = "*"


def new_notification_id() -> str:
    return f"notif-{time.time_ns() // 1_000_000}-{uuid4().hex[:8]}"


class Notification(BaseModel):
    """A published notification. Only ``read`` changes after creation."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_notification_id)
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    read: bool = False

    @property
    def category(self) -> str:
        return str(self.details.get("category") or "unknown")

    @property
    def severity(self) -> str:
        return str(self.details.get("severity") or "info")


class NotificationFilter(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: str | None = None
    read: bool | None = None
    since: UtcDatetime | None = None
    limit: int | None = Field(default=None, ge=1)


class NotificationStats(BaseModel):
    total: int
    unread: int
    recent: int = Field(description="Notifications from the last 24 hours")
    by_type: dict[str, int]
    by_category: dict[str, int]
    by_severity: dict[str, int]


class NotificationImportRequest(BaseModel):
    data: str
    format: str = "json"


class NotificationPurgeRequest(BaseModel):
    days: int = Field(default=30, ge=0)


class NotificationCount(BaseModel):
    count: int
