"""Unit tests for dbaudit.services.audit.service (AuditService facade)."""
from datetime import timedelta

import pytest

from dbaudit.config.security import SecurityConfig
from dbaudit.config.settings import Settings
from dbaudit.core.errors import RestrictedOperationError, StorageError, ValidationError
from dbaudit.schemas.audit import EventKind, OperationResult
from dbaudit.schemas.notification import NotificationFilter, NotificationType
from dbaudit.services.audit.service import AuditService


def _fail_logins(service, clock, n: int, user: str = "alice"):
    outcomes = []
    for i in range(n):
        outcomes.append(
            service.record_operation(
                user,
                "LOGIN",
                result=OperationResult(success=False, message="bad password"),
                timestamp=clock() + timedelta(seconds=i),
            )
        )
    return outcomes


# ─── record_operation ─────────────────────────────────────────────────────────

def test_record_operation_appends_entry(service):
    outcome = service.record_operation("alice", "SELECT", resource="orders", result=True)
    assert outcome.recorded is True
    assert outcome.record_id == outcome.entry.id
    assert outcome.events == []
    assert [e.id for e in service.query_entries()] == [outcome.record_id]


def test_record_operation_fills_defaults(service, clock):
    outcome = service.record_operation(None, "SELECT")
    assert outcome.entry.user == "unknown"
    assert outcome.entry.client_address == "127.0.0.1"
    assert outcome.entry.client_agent == "dbaudit"
    assert outcome.entry.timestamp == clock()


def test_record_operation_redacts_passwords(service):
    outcome = service.record_operation(
        "dba", "CREATE_USER", query="CREATE USER bob PASSWORD 'hunter2'", result=True
    )
    stored = list(service.query_entries())[0]
    assert "hunter2" not in stored.query
    assert stored.query == outcome.entry.query


def test_record_operation_keeps_result_message(service):
    service.record_operation("alice", "LOGIN", result=OperationResult(success=False, message="bad password"))
    assert list(service.query_entries())[0].message == "bad password"


def test_record_operation_rejects_empty_operation(service):
    with pytest.raises(ValidationError):
        service.record_operation("alice", "")


def test_triggered_events_are_persisted_and_published(service, clock):
    outcomes = _fail_logins(service, clock, 5)
    assert [e.kind for e in outcomes[-1].events] == [EventKind.MULTIPLE_FAILED_LOGINS]

    persisted = list(service.query_events(kind=EventKind.MULTIPLE_FAILED_LOGINS))
    assert [e.id for e in persisted] == [outcomes[-1].events[0].id]

    alerts = service.bus.list(NotificationFilter(type=NotificationType.SECURITY_ALERT))
    assert len(alerts) == 1
    assert alerts[0].severity == "high"
    assert alerts[0].details["kind"] == EventKind.MULTIPLE_FAILED_LOGINS


def test_alerts_can_be_disabled(store, bus, clock):
    config = SecurityConfig(timezone="UTC", alert_on_suspicious_activity=False)
    service = AuditService(store, config, bus=bus, clock=clock)
    service.record_operation("alice", "SELECT", resource="users")
    assert len(service.bus) == 0
    assert len(list(service.query_events())) == 1


def test_subscribers_receive_security_alerts(service, clock):
    received = []
    service.bus.subscribe(NotificationType.SECURITY_ALERT, received.append)
    service.record_operation("alice", "SELECT", resource="passwords")
    assert len(received) == 1
    assert received[0].details["category"] == "security"


def test_storage_failure_is_returned_not_raised(service, monkeypatch):
    def _broken(_entry):
        raise StorageError("Audit log audit.log is not writable: disk full")

    monkeypatch.setattr(service.store, "record", _broken)
    outcome = service.record_operation("alice", "SELECT")
    assert outcome.recorded is False
    assert outcome.record_id is None
    assert outcome.error["code"] == "STO_001"


# ─── pre_check ────────────────────────────────────────────────────────────────

def test_pre_check_blocks_before_anything_is_recorded(service):
    with pytest.raises(RestrictedOperationError):
        service.pre_check("alice", "DROP_TABLE", query="DROP TABLE orders")

    assert list(service.query_entries()) == []
    events = list(service.query_events())
    assert [e.kind for e in events] == [EventKind.RESTRICTED_OPERATION]
    assert events[0].evidence["mode"] == "pre_check"


def test_pre_check_passes_authorized_operation(service):
    service.pre_check("alice", "DROP_TABLE", authorized=True)
    assert list(service.query_events()) == []


def test_validator_events_flow_through_service(service):
    service.validator.validate_identifier("credentials", user="alice")
    assert [e.kind for e in service.query_events()] == [EventKind.SENSITIVE_RESOURCE_ACCESS]


# ─── Queries ──────────────────────────────────────────────────────────────────

def test_report_query_accepts_mapping(service):
    service.record_operation("alice", "SELECT", result=True)
    service.record_operation("bob", "SELECT", result=False)
    report = service.report_query({"user": "alice"})
    assert report.total == 1
    assert report.success_rate == 100.0


def test_report_query_rejects_inverted_range(service, clock):
    with pytest.raises(ValidationError) as exc_info:
        service.report_query({"since": clock(), "until": clock() - timedelta(hours=1)})
    assert exc_info.value.detail["errors"]


def test_report_query_rejects_unknown_filter_keys(service):
    with pytest.raises(ValidationError):
        service.report_query({"colour": "red"})


def test_suspicious_activity_query(store, bus, clock):
    config = SecurityConfig(timezone="UTC", scan_user_threshold=2)
    service = AuditService(store, config, bus=bus, clock=clock)
    service.record_operation("alice", "SELECT")
    service.record_operation("alice", "SELECT")

    events = service.suspicious_activity_query(window_hours=1)
    assert [e.kind for e in events] == [EventKind.HIGH_FREQUENCY_ACTOR]
    # Scans are read-only
    assert list(service.query_events()) == []


def test_suspicious_activity_query_rejects_bad_window(service):
    with pytest.raises(ValidationError):
        service.suspicious_activity_query(window_hours=0)


# ─── Maintenance ──────────────────────────────────────────────────────────────

def test_prune_defaults_to_policy_retention(service, clock):
    service.record_operation("alice", "SELECT", timestamp=clock() - timedelta(days=91))
    service.record_operation("alice", "SELECT", timestamp=clock() - timedelta(days=89))
    result = service.prune()
    assert (result.kept, result.removed) == (1, 1)


def test_reload_security_config(service, tmp_path):
    (tmp_path / "security-config.yaml").write_text(
        "max_failed_attempts: 2\nsensitive_resources: [orders]\n", encoding="utf-8"
    )
    config = service.reload_security_config()
    assert config.max_failed_attempts == 2
    assert service.config is config

    outcome = service.record_operation("alice", "SELECT", resource="orders")
    assert EventKind.SENSITIVE_RESOURCE_ACCESS in [e.kind for e in outcome.events]


def test_from_settings_builds_every_component(tmp_path):
    settings = Settings(
        audit_log_path=tmp_path / "logs" / "audit.log",
        notification_log_path=None,
        security_config_path=tmp_path / "absent.yaml",
    )
    service = AuditService.from_settings(settings)
    try:
        assert service.store.path == settings.audit_log_path
        assert service.config == SecurityConfig()
        assert settings.audit_log_path.exists()
    finally:
        service.close()
    assert service.store.closed
