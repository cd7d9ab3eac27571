"""Unit tests for dbaudit.services.notify (bus and alert helpers)."""
import csv
import io
import json

import pytest

from dbaudit.core.errors import ErrorCode, ValidationError
from dbaudit.schemas.audit import EventKind, SecurityEvent, Severity
from dbaudit.schemas.notification import WILDCARD, NotificationFilter, NotificationType
from dbaudit.services.notify.alerts import AlertSender, alert_severity
from dbaudit.services.notify.bus import CSV_FIELDS, NotificationBus


# ─── Fan-out ──────────────────────────────────────────────────────────────────

def test_handler_receives_matching_type_once(bus):
    received = []
    bus.subscribe("X", received.append)
    bus.notify("X", "hello")
    bus.notify("Y", "other")
    assert [n.message for n in received] == ["hello"]


def test_failing_handler_does_not_block_others(bus):
    received = []

    def broken(_notification):
        raise RuntimeError("handler bug")

    bus.subscribe("X", broken)
    bus.subscribe("X", received.append)
    notification = bus.notify("X", "still delivered")
    assert received == [notification]


def test_duplicate_subscription_runs_twice_until_unsubscribed(bus):
    received = []
    bus.subscribe("X", received.append)
    bus.subscribe("X", received.append)
    bus.notify("X", "one")
    assert len(received) == 2

    assert bus.unsubscribe("X", received.append) is True
    bus.notify("X", "two")
    assert len(received) == 3


def test_unsubscribe_unknown_handler_returns_false(bus):
    assert bus.unsubscribe("X", print) is False


def test_type_handlers_run_before_wildcard_handlers(bus):
    calls = []
    bus.subscribe(WILDCARD, lambda n: calls.append("wildcard"))
    bus.subscribe("X", lambda n: calls.append("first"))
    bus.subscribe("X", lambda n: calls.append("second"))
    bus.notify("X", "ordered")
    assert calls == ["first", "second", "wildcard"]


def test_publish_mirrors_to_notification_log(bus, tmp_path):
    bus.notify("X", "mirrored", {"category": "system"})
    lines = (tmp_path / "logs" / "notifications.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["message"] == "mirrored"


# ─── Registry ─────────────────────────────────────────────────────────────────

def test_list_is_newest_first_and_filters(bus, clock):
    bus.notify("A", "first")
    clock.advance(minutes=1)
    bus.notify("B", "second")
    clock.advance(minutes=1)
    bus.notify("A", "third")

    assert [n.message for n in bus.list()] == ["third", "second", "first"]
    assert [n.message for n in bus.list(NotificationFilter(type="A"))] == ["third", "first"]
    assert [n.message for n in bus.list(NotificationFilter(limit=2))] == ["third", "second"]


def test_mark_read_and_read_filter(bus):
    first = bus.notify("A", "first")
    bus.notify("A", "second")
    assert bus.mark_read(first.id) is True
    assert [n.message for n in bus.list(NotificationFilter(read=False))] == ["second"]


def test_unknown_id_reports_not_found(bus):
    assert bus.mark_read("notif-missing") is False
    assert bus.delete("notif-missing") is False
    assert bus.get("notif-missing") is None


def test_mark_all_read_returns_unread_count(bus):
    first = bus.notify("A", "one")
    bus.notify("A", "two")
    bus.mark_read(first.id)
    assert bus.mark_all_read() == 1
    assert bus.stats().unread == 0


def test_delete_removes_notification(bus):
    notification = bus.notify("A", "gone")
    assert bus.delete(notification.id) is True
    assert len(bus) == 0


def test_purge_older_than(bus, clock):
    bus.notify("A", "old")
    clock.advance(days=40)
    bus.notify("A", "new")
    assert bus.purge_older_than(30) == 1
    assert [n.message for n in bus.list()] == ["new"]


def test_purge_rejects_negative_days(bus):
    with pytest.raises(ValidationError):
        bus.purge_older_than(-1)


def test_listed_notifications_are_copies(bus):
    notification = bus.notify("A", "copy")
    listed = bus.list()[0]
    listed.read = True
    assert bus.get(notification.id).read is False


def test_stats_group_by_type_category_and_severity(bus):
    bus.notify("A", "one", {"category": "security", "severity": "high"})
    bus.notify("A", "two")
    bus.notify("B", "three", {"category": "security", "severity": "high"})

    stats = bus.stats()
    assert stats.total == 3
    assert stats.unread == 3
    assert stats.recent == 3
    assert stats.by_type == {"A": 2, "B": 1}
    assert stats.by_category == {"security": 2, "unknown": 1}
    assert stats.by_severity == {"high": 2, "info": 1}


# ─── Export / import ──────────────────────────────────────────────────────────

def test_json_export_import_round_trip(bus, clock):
    bus.notify("A", "first", {"category": "system"})
    bus.notify("B", "second")

    fresh = NotificationBus(clock=clock)
    assert fresh.import_(bus.export("json"), "json") == 2
    assert sorted(n.message for n in fresh.list()) == ["first", "second"]
    assert {n.id for n in fresh.list()}.isdisjoint({n.id for n in bus.list()})


def test_json_import_parses_string_read_flags(clock):
    data = json.dumps(
        [
            {"type": "A", "message": "unread", "timestamp": "2026-03-02T12:00:00Z", "read": "false"},
            {"type": "A", "message": "seen", "timestamp": "2026-03-02T12:00:00Z", "read": "true"},
        ]
    )
    fresh = NotificationBus(clock=clock)
    assert fresh.import_(data, "json") == 2
    assert {n.message: n.read for n in fresh.list()} == {"unread": False, "seen": True}


def test_csv_export_has_fixed_header(bus):
    bus.notify("A", 'quoted "message", with comma', {"category": "db", "severity": "high"})
    exported = bus.export("csv")
    assert exported.splitlines()[0] == "id,type,message,timestamp,read,category,severity"
    row = next(csv.DictReader(io.StringIO(exported)))
    assert list(row) == CSV_FIELDS
    assert row["message"] == 'quoted "message", with comma'


def test_csv_export_import_round_trip(bus, clock):
    bus.notify("A", 'quoted "message", with comma', {"category": "db", "severity": "high"})
    bus.notify("B", "plain")

    fresh = NotificationBus(clock=clock)
    assert fresh.import_(bus.export("csv"), "csv") == 2
    imported = {n.message: n for n in fresh.list()}
    assert set(imported) == {'quoted "message", with comma', "plain"}
    assert imported["plain"].category == "unknown"
    assert imported['quoted "message", with comma'].severity == "high"


def test_import_skips_incomplete_records(bus):
    data = json.dumps(
        [
            {"type": "A", "message": "ok", "timestamp": "2026-03-02T12:00:00+00:00"},
            {"type": "A", "message": "no timestamp"},
            "not a record",
        ]
    )
    assert bus.import_(data) == 1


def test_import_does_not_fan_out(bus):
    received = []
    bus.subscribe(WILDCARD, received.append)
    bus.import_(json.dumps([{"type": "A", "message": "m", "timestamp": "2026-03-02T12:00:00Z"}]))
    assert received == []


def test_unsupported_format_rejected(bus):
    with pytest.raises(ValidationError) as exc_info:
        bus.export("xml")
    assert exc_info.value.code == ErrorCode.NOTIF_FORMAT_UNSUPPORTED


def test_import_rejects_non_list_json(bus):
    with pytest.raises(ValidationError) as exc_info:
        bus.import_('{"type": "A"}')
    assert exc_info.value.code == ErrorCode.NOTIF_IMPORT_INVALID


def test_close_drops_subscriptions(bus):
    received = []
    bus.subscribe("A", received.append)
    bus.close()
    bus.notify("A", "after close")
    assert received == []


# ─── Alerts ───────────────────────────────────────────────────────────────────

def test_alert_severity_table():
    assert alert_severity("FAILED_LOGIN") == "high"
    assert alert_severity("SLOW_QUERY") == "medium"
    assert alert_severity("SOMETHING_NEW") == "info"


def test_typed_alerts_carry_category_and_severity(bus):
    sender = AlertSender(bus)
    notification = sender.performance_alert("SLOW_QUERY", "slow", {"duration_ms": 900})
    assert notification.type == NotificationType.PERFORMANCE_ALERT
    assert notification.details["category"] == "performance"
    assert notification.details["severity"] == "medium"
    assert notification.details["duration_ms"] == 900


def test_database_alert(bus):
    notification = AlertSender(bus).database_alert("CONNECTION_FAILED", "primary unreachable", {"host": "db1"})
    assert notification.type == NotificationType.DATABASE_ALERT
    assert notification.details["category"] == "database"
    assert notification.details["severity"] == "high"
    assert notification.details["host"] == "db1"


def test_system_alert_defaults_unlisted_types_to_info(bus):
    sender = AlertSender(bus)
    failed = sender.system_alert("BACKUP_FAILED", "nightly backup failed")
    assert failed.type == NotificationType.SYSTEM_ALERT
    assert failed.details["category"] == "system"
    assert failed.details["severity"] == "high"
    assert sender.system_alert("DISK_CHECK", "ok").details["severity"] == "info"


def test_security_event_alert_uses_event_severity(bus):
    sender = AlertSender(bus)
    event = SecurityEvent(
        kind=EventKind.UNUSUAL_TIME_ACCESS,
        severity=Severity.LOW,
        message="late access",
        subject_user="alice",
    )
    notification = sender.security_event_alert(event)
    assert notification.type == NotificationType.SECURITY_ALERT
    assert notification.severity == "low"
    assert notification.details["event_id"] == event.id
    assert notification.details["user"] == "alice"
