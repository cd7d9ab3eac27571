"""
Audit facade used by collaborators.

A collaborator completes an operation and calls record_operation(). The
entry is appended first; rule evaluation, event persistence and alert
fan-out follow. Nothing that goes wrong after the operation ran is raised
back to it: storage failures come back on the RecordOutcome and are logged.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbaudit.config.security import SecurityConfig, load_security_config
from dbaudit.config.settings import Settings
from dbaudit.core.errors import RestrictedOperationError, StorageError, ValidationError
from dbaudit.core.redaction import sanitize_query
from dbaudit.schemas.audit import (
    AuditEntry,
    AuditFilter,
    OperationResult,
    PruneResult,
    RecordOutcome,
    SecurityEvent,
    parse_filter,
    utcnow,
)
from dbaudit.schemas.report import AuditLogStats, AuditReport
from dbaudit.services.audit.metrics import SECURITY_EVENTS_EMITTED
from dbaudit.services.audit.store import AuditLogStore, AuditRecordSequence
from dbaudit.services.notify.alerts import AlertSender
from dbaudit.services.notify.bus import NotificationBus
from dbaudit.services.report.generator import ReportGenerator
from dbaudit.services.security.rules import SecurityRuleEngine
from dbaudit.services.security.validators import SecurityValidator

_log = structlog.get_logger(__name__)

FilterInput = AuditFilter | dict[str, Any] | None


def _as_filter(value: FilterInput) -> AuditFilter:
    if isinstance(value, AuditFilter):
        return value
    return parse_filter(value or {})


class AuditService:
    """
    Owns the store, rule engine, validator, notification bus and reports
    for one process. Construct at startup, close() at shutdown.

    Usage:
        service = AuditService.from_settings(get_settings())
        outcome = service.record_operation("alice", "LOGIN", result=OperationResult(success=False))
        report = service.report_query({"user": "alice"})
    """

    def __init__(
        self,
        store: AuditLogStore,
        config: SecurityConfig,
        bus: NotificationBus | None = None,
        config_path: Path | None = None,
        default_client_address: str = "127.0.0.1",
        default_client_agent: str = "dbaudit",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.bus = bus or NotificationBus(clock=clock)
        self.alerts = AlertSender(self.bus)
        self.engine = SecurityRuleEngine(store, config, clock=clock)
        self.validator = SecurityValidator(config, on_event=self.emit_event, clock=clock)
        self.reports = ReportGenerator(store, clock=clock)
        self._config_path = config_path
        self._default_client_address = default_client_address
        self._default_client_agent = default_client_agent
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Callable[[], datetime] = utcnow
    ) -> AuditService:
        store = AuditLogStore(settings.audit_log_path, fsync=settings.audit_fsync, clock=clock)
        bus = NotificationBus(log_path=settings.notification_log_path, clock=clock)
        return cls(
            store,
            load_security_config(settings.security_config_path),
            bus=bus,
            config_path=settings.security_config_path,
            default_client_address=settings.default_client_address,
            default_client_agent=settings.default_client_agent,
            clock=clock,
        )

    @property
    def config(self) -> SecurityConfig:
        return self.engine.config

    # ── Recording ───────────────────────────────────────────────────────── #

    def record_operation(
        self,
        user: str | None,
        operation: str,
        resource: str | None = None,
        query: str | None = None,
        result: OperationResult | bool = True,
        client_address: str | None = None,
        client_agent: str | None = None,
        timestamp: datetime | None = None,
    ) -> RecordOutcome:
        """
        Record one completed operation, then evaluate it.

        Raises:
            ValidationError: If the entry itself is malformed (for example an
                empty operation). Storage problems are never raised.
        """
        if isinstance(result, bool):
            result = OperationResult(success=result)
        try:
            entry = AuditEntry(
                timestamp=timestamp or self._clock(),
                user=user or "unknown",
                operation=operation,
                resource=resource,
                query=sanitize_query(query),
                success=result.success,
                message=result.message,
                client_address=client_address or self._default_client_address,
                client_agent=client_agent or self._default_client_agent,
            )
        except PydanticValidationError as err:
            raise ValidationError(
                "Invalid audit entry",
                detail={"errors": [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in err.errors()]},
            ) from err

        try:
            record_id = self.store.record(entry)
        except StorageError as err:
            _log.error(
                "audit_record_failed",
                user=entry.user,
                operation=entry.operation,
                error_code=err.code.value,
                message=err.message,
            )
            return RecordOutcome(recorded=False, entry=entry, error=err.to_dict()["error"])

        log = _log.info if entry.success else _log.warning
        log(
            "operation_audited",
            record_id=record_id,
            user=entry.user,
            operation=entry.operation,
            resource=entry.resource,
            success=entry.success,
        )

        try:
            events = self.engine.evaluate(entry)
        except StorageError as err:
            _log.error("security_evaluation_failed", record_id=record_id, message=err.message)
            return RecordOutcome(
                recorded=True, record_id=record_id, entry=entry, error=err.to_dict()["error"]
            )

        for event in events:
            self.emit_event(event)
        return RecordOutcome(recorded=True, record_id=record_id, entry=entry, events=events)

    def emit_event(self, event: SecurityEvent) -> None:
        """Persist a security event and, if enabled, publish a SECURITY_ALERT."""
        SECURITY_EVENTS_EMITTED.labels(event.kind, event.severity.value).inc()
        _log.warning(
            "security_event",
            event_id=event.id,
            kind=event.kind,
            severity=event.severity.value,
            user=event.subject_user,
            address=event.subject_address,
        )
        try:
            self.store.record_event(event)
        except StorageError as err:
            _log.error("security_event_persist_failed", event_id=event.id, message=err.message)
        if self.config.alert_on_suspicious_activity:
            self.alerts.security_event_alert(event)

    # ── Pre-check ───────────────────────────────────────────────────────── #

    def pre_check(
        self,
        user: str,
        operation: str,
        query: str | None = None,
        resource: str | None = None,
        authorized: bool = False,
        client_address: str | None = None,
    ) -> None:
        """
        Reject a restricted operation before it runs.

        Raises:
            RestrictedOperationError: After the blocking event has been
                persisted and published.
        """
        try:
            self.engine.pre_check(
                user,
                operation,
                query=query,
                resource=resource,
                authorized=authorized,
                client_address=client_address or self._default_client_address,
            )
        except RestrictedOperationError as err:
            if err.event is not None:
                self.emit_event(err.event)
            raise

    # ── Queries ─────────────────────────────────────────────────────────── #

    def query_entries(self, filter: FilterInput = None) -> AuditRecordSequence[AuditEntry]:
        return self.store.query(_as_filter(filter))

    def query_events(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        kind: str | None = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> AuditRecordSequence[SecurityEvent]:
        if since and until and since > until:
            raise ValidationError("since must not be after until")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", detail={"limit": limit})
        return self.store.query_events(
            since=since, until=until, kind=kind, limit=limit, descending=descending
        )

    def report_query(self, filter: FilterInput = None) -> AuditReport:
        return self.reports.generate(_as_filter(filter))

    def suspicious_activity_query(
        self, window_hours: float | None = None, until: datetime | None = None
    ) -> list[SecurityEvent]:
        """
        Aggregate scan over a window (default: the configured scan window).

        Read-only: scan results are returned, not persisted or published.
        """
        if window_hours is not None and window_hours <= 0:
            raise ValidationError(
                "window_hours must be positive", detail={"window_hours": window_hours}
            )
        window = timedelta(hours=window_hours) if window_hours is not None else None
        return self.engine.scan(window=window, until=until)

    def log_stats(self) -> AuditLogStats:
        return self.reports.log_stats()

    # ── Maintenance ─────────────────────────────────────────────────────── #

    def prune(self, retention_days: int | None = None) -> PruneResult:
        days = self.config.audit_retention_days if retention_days is None else retention_days
        return self.store.prune(days)

    def reload_security_config(self) -> SecurityConfig:
        """Re-read the policy file and apply it to later evaluations."""
        config = load_security_config(self._config_path)
        self.engine.update_config(config)
        self.validator.update_config(config)
        _log.info("security_config_reloaded", path=str(self._config_path))
        return config

    def close(self) -> None:
        self.store.close()
        self.bus.close()
