"""
In-process publish/subscribe for notifications.

The registry is owned by one NotificationBus instance, created at startup
and closed at shutdown. Handlers run synchronously, outside the registry
lock, each behind its own fault boundary: a failing handler is logged and
counted, and the remaining handlers still run.
"""

from __future__ import annotations

import csv
import io
import json
import threading
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbaudit.core.errors import ErrorCode, ValidationError
from dbaudit.schemas.audit import utcnow
from dbaudit.schemas.notification import (
    WILDCARD,
    Notification,
    NotificationFilter,
    NotificationStats,
)
from dbaudit.services.audit.metrics import HANDLER_FAILURES

_log = structlog.get_logger(__name__)

Handler = Callable[[Notification], Any]

CSV_FIELDS = ["id", "type", "message", "timestamp", "read", "category", "severity"]
EXPORT_FORMATS = ("json", "csv")


class NotificationBus:
    """
    Typed fan-out with an in-memory notification registry.

    Usage:
        bus = NotificationBus(log_path=Path("./logs/notifications.log"))
        bus.subscribe("SECURITY_ALERT", pager.send)
        bus.notify("SECURITY_ALERT", "Repeated failed logins", {"severity": "high"})
    """

    def __init__(
        self,
        log_path: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._notifications: list[Notification] = []
        self._subscribers: dict[str, list[Handler]] = {}
        self._clock = clock
        self._log_path = Path(log_path) if log_path else None
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                self._log_path.touch(exist_ok=True)
            except OSError as err:
                _log.error("notification_log_unavailable", path=str(self._log_path), error=str(err))
                self._log_path = None

    # ── Subscriptions ───────────────────────────────────────────────────── #

    def subscribe(self, event_type: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_type`` (``"*"`` for every type).

        Registering the same handler twice makes it run twice.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        _log.debug("notification_subscriber_added", event_type=event_type)

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        """Remove one registration of ``handler``. Returns False if none existed."""
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            try:
                handlers.remove(handler)
            except ValueError:
                return False
        _log.debug("notification_subscriber_removed", event_type=event_type)
        return True

    # ── Publishing ──────────────────────────────────────────────────────── #

    def publish(self, notification: Notification) -> Notification:
        """
        Register, mirror and fan out one notification.

        Type handlers run first, then wildcard handlers, each group in
        registration order. Handler exceptions never reach the publisher.
        """
        with self._lock:
            self._notifications.append(notification)
            self._mirror(notification)
            handlers = list(self._subscribers.get(notification.type, []))
            if notification.type != WILDCARD:
                handlers += self._subscribers.get(WILDCARD, [])

        for handler in handlers:
            try:
                handler(notification)
            except Exception:
                HANDLER_FAILURES.labels(notification.type).inc()
                _log.exception(
                    "notification_handler_failed",
                    notification_id=notification.id,
                    notification_type=notification.type,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

        _log.info(
            "notification_published",
            notification_id=notification.id,
            notification_type=notification.type,
            handlers=len(handlers),
        )
        return notification

    def notify(
        self, type: str, message: str, details: dict[str, Any] | None = None
    ) -> Notification:
        """Build a notification stamped with the bus clock and publish it."""
        notification = Notification(
            type=type, message=message, details=details or {}, timestamp=self._clock()
        )
        return self.publish(notification)

    def _mirror(self, notification: Notification) -> None:
        if self._log_path is None:
            return
        try:
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(notification.model_dump_json() + "\n")
        except OSError as err:
            _log.error(
                "notification_mirror_failed",
                path=str(self._log_path),
                notification_id=notification.id,
                error=str(err),
            )

    # ── Registry ────────────────────────────────────────────────────────── #

    def list(self, filter: NotificationFilter | None = None) -> list[Notification]:
        """
        Matching notifications, newest first.

        ``limit`` keeps the most recently published N matches.
        """
        flt = filter or NotificationFilter()
        with self._lock:
            matches = [
                n
                for n in self._notifications
                if (flt.type is None or n.type == flt.type)
                and (flt.read is None or n.read == flt.read)
                and (flt.since is None or n.timestamp >= flt.since)
            ]
            if flt.limit is not None:
                matches = matches[-flt.limit:]
            snapshot = [n.model_copy() for n in matches]
        snapshot.sort(key=lambda n: n.timestamp, reverse=True)
        return snapshot

    def get(self, notification_id: str) -> Notification | None:
        with self._lock:
            found = self._find(notification_id)
            return found.model_copy() if found else None

    def _find(self, notification_id: str) -> Notification | None:
        for notification in self._notifications:
            if notification.id == notification_id:
                return notification
        return None

    def mark_read(self, notification_id: str) -> bool:
        with self._lock:
            notification = self._find(notification_id)
            if notification is None:
                return False
            notification.read = True
        _log.debug("notification_marked_read", notification_id=notification_id)
        return True

    def mark_all_read(self) -> int:
        """Mark everything read; returns how many were unread."""
        with self._lock:
            unread = [n for n in self._notifications if not n.read]
            for notification in unread:
                notification.read = True
        _log.info("notifications_marked_read", count=len(unread))
        return len(unread)

    def delete(self, notification_id: str) -> bool:
        with self._lock:
            notification = self._find(notification_id)
            if notification is None:
                return False
            self._notifications.remove(notification)
        _log.info("notification_deleted", notification_id=notification_id)
        return True

    def purge_older_than(self, days: int) -> int:
        """Drop notifications at or before ``now - days``; returns how many."""
        if days < 0:
            raise ValidationError("days must not be negative", detail={"days": days})
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            before = len(self._notifications)
            self._notifications = [n for n in self._notifications if n.timestamp > cutoff]
            removed = before - len(self._notifications)
        _log.info("notifications_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def stats(self) -> NotificationStats:
        recent_cutoff = self._clock() - timedelta(hours=24)
        with self._lock:
            notifications = list(self._notifications)
        return NotificationStats(
            total=len(notifications),
            unread=sum(1 for n in notifications if not n.read),
            recent=sum(1 for n in notifications if n.timestamp > recent_cutoff),
            by_type=dict(Counter(n.type for n in notifications)),
            by_category=dict(Counter(n.category for n in notifications)),
            by_severity=dict(Counter(n.severity for n in notifications)),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._notifications)

    # ── Export / import ─────────────────────────────────────────────────── #

    def export(self, fmt: str = "json") -> str:
        """Serialise the registry, in publish order, as ``json`` or ``csv``."""
        _check_format(fmt)
        with self._lock:
            notifications = [n.model_copy() for n in self._notifications]

        if fmt == "json":
            return json.dumps([n.model_dump(mode="json") for n in notifications], indent=2)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, lineterminator="\n")
        writer.writeheader()
        for n in notifications:
            writer.writerow(
                {
                    "id": n.id,
                    "type": n.type,
                    "message": n.message,
                    "timestamp": n.timestamp.isoformat(),
                    "read": "true" if n.read else "false",
                    "category": n.details.get("category", ""),
                    "severity": n.details.get("severity", ""),
                }
            )
        return buffer.getvalue()

    def import_(self, data: str, fmt: str = "json") -> int:
        """
        Load notifications from an export. Every imported record gets a
        fresh id; records missing ``type``, ``message`` or ``timestamp`` are
        skipped. Imported notifications are registered but not fanned out.

        Returns:
            Number of notifications added.

        Raises:
            ValidationError: Unsupported format, or data that is not a list
                of records.
        """
        _check_format(fmt)
        records = _parse_json_records(data) if fmt == "json" else _parse_csv_records(data)

        imported: list[Notification] = []
        skipped = 0
        for record in records:
            notification = _to_notification(record)
            if notification is None:
                skipped += 1
            else:
                imported.append(notification)

        with self._lock:
            self._notifications.extend(imported)
        _log.info("notifications_imported", format=fmt, imported=len(imported), skipped=skipped)
        return len(imported)

    # ── Lifecycle ───────────────────────────────────────────────────────── #

    def close(self) -> None:
        """Drop every subscription and registered notification."""
        with self._lock:
            self._subscribers.clear()
            self._notifications.clear()
        _log.info("notification_bus_closed")


def _check_format(fmt: str) -> None:
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported format {fmt!r}; use 'json' or 'csv'",
            detail={"format": fmt},
            code=ErrorCode.NOTIF_FORMAT_UNSUPPORTED,
        )


def _parse_json_records(data: str) -> list[Any]:
    try:
        records = json.loads(data)
    except json.JSONDecodeError as err:
        raise ValidationError(
            f"Import data is not valid JSON: {err.msg}",
            code=ErrorCode.NOTIF_IMPORT_INVALID,
        ) from err
    if not isinstance(records, list):
        raise ValidationError(
            "Import data must be a list of notifications",
            code=ErrorCode.NOTIF_IMPORT_INVALID,
        )
    return records


def _parse_csv_records(data: str) -> list[dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(data.strip()))
    if reader.fieldnames is None or not {"type", "message", "timestamp"} <= set(reader.fieldnames):
        raise ValidationError(
            "CSV import needs at least type, message and timestamp columns",
            code=ErrorCode.NOTIF_IMPORT_INVALID,
        )
    records: list[dict[str, Any]] = []
    for row in reader:
        details = {k: row[k] for k in ("category", "severity") if row.get(k)}
        records.append(
            {
                "type": row.get("type"),
                "message": row.get("message"),
                "timestamp": row.get("timestamp"),
                "read": (row.get("read") or "").strip().lower() == "true",
                "details": details,
            }
        )
    return records


def _to_notification(record: Any) -> Notification | None:
    if not isinstance(record, dict):
        return None
    if not all(record.get(k) for k in ("type", "message", "timestamp")):
        return None
    try:
        return Notification(
            type=record["type"],
            message=record["message"],
            timestamp=record["timestamp"],
            details=record.get("details") or {},
            read=record.get("read", False),
        )
    except PydanticValidationError:
        return None
