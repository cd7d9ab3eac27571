"""Notification registry endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Response

from dbaudit.api.deps import AuditServiceDep
from dbaudit.core.errors import ErrorCode, NotFoundError
from dbaudit.schemas.notification import (
    Notification,
    NotificationCount,
    NotificationFilter,
    NotificationImportRequest,
    NotificationPurgeRequest,
    NotificationStats,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])

_EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


@router.get("", response_model=list[Notification], summary="List notifications, newest first")
def list_notifications(
    service: AuditServiceDep,
    type: str | None = Query(default=None),
    read: bool | None = Query(default=None),
    since: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
) -> list[Notification]:
    return service.bus.list(NotificationFilter(type=type, read=read, since=since, limit=limit))


@router.get("/stats", response_model=NotificationStats, summary="Notification statistics")
def notification_stats(service: AuditServiceDep) -> NotificationStats:
    return service.bus.stats()


@router.get("/export", summary="Export notifications as JSON or CSV")
def export_notifications(
    service: AuditServiceDep,
    format: str = Query(default="json", pattern="^(json|csv)$"),
) -> Response:
    return Response(content=service.bus.export(format), media_type=_EXPORT_MEDIA_TYPES[format])


@router.post("/import", response_model=NotificationCount, summary="Import exported notifications")
def import_notifications(
    body: NotificationImportRequest, service: AuditServiceDep
) -> NotificationCount:
    return NotificationCount(count=service.bus.import_(body.data, body.format))


@router.post("/read-all", response_model=NotificationCount, summary="Mark every notification read")
def mark_all_read(service: AuditServiceDep) -> NotificationCount:
    return NotificationCount(count=service.bus.mark_all_read())


@router.post("/purge", response_model=NotificationCount, summary="Drop old notifications")
def purge_notifications(
    service: AuditServiceDep, body: NotificationPurgeRequest | None = None
) -> NotificationCount:
    days = body.days if body else NotificationPurgeRequest().days
    return NotificationCount(count=service.bus.purge_older_than(days))


@router.post(
    "/{notification_id}/read",
    response_model=Notification,
    summary="Mark one notification read",
)
def mark_read(notification_id: str, service: AuditServiceDep) -> Notification:
    if not service.bus.mark_read(notification_id):
        raise NotFoundError("Notification", notification_id, code=ErrorCode.NOTIF_NOT_FOUND)
    notification = service.bus.get(notification_id)
    if notification is None:
        raise NotFoundError("Notification", notification_id, code=ErrorCode.NOTIF_NOT_FOUND)
    return notification


@router.delete("/{notification_id}", status_code=204, summary="Delete one notification")
def delete_notification(notification_id: str, service: AuditServiceDep) -> Response:
    if not service.bus.delete(notification_id):
        raise NotFoundError("Notification", notification_id, code=ErrorCode.NOTIF_NOT_FOUND)
    return Response(status_code=204)
