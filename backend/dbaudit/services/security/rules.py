"""
Security rule engine: evaluates audit entries for suspicious patterns.

Per-entry rules:
  1. Repeated failures: failed login-class operations for one user in a window.
  2. Sensitive resource: any access to a configured sensitive object.
  3. Unusual time: activity outside business hours (configured timezone).
  4. High frequency: too many operations by one user in a rolling window.
  5. Restricted operation: restricted keyword in the operation tag or query.

Every threshold is inclusive: a count equal to the threshold triggers.
Windows are anchored at the entry's own timestamp, so evaluation depends
only on the log contents and the policy, never on the wall clock.

Restricted-keyword detection is a heuristic. It tokenises the operation tag
and, as a fallback, the query text with string literals removed; it is not
a SQL parser and will not catch obfuscated statements.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from dbaudit.config.security import SecurityConfig
from dbaudit.core.errors import RestrictedOperationError
from dbaudit.schemas.audit import AuditEntry, AuditFilter, EventKind, SecurityEvent, utcnow
from dbaudit.services.audit.store import AuditLogStore

_log = structlog.get_logger(__name__)

_OPERATION_TOKEN_RE = re.compile(r"[A-Za-z]+")
_QUERY_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")
_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")
_LOGIN_TOKEN = "LOGIN"


def operation_tokens(operation: str) -> set[str]:
    """Split an operation tag such as ``CREATE_TABLE`` into upper-case words."""
    return {t.upper() for t in _OPERATION_TOKEN_RE.findall(operation)}


def query_tokens(query: str | None) -> set[str]:
    """Upper-case identifier/keyword tokens of a statement, literals removed."""
    if not query:
        return set()
    stripped = _STRING_LITERAL_RE.sub("''", query)
    return {t.upper() for t in _QUERY_TOKEN_RE.findall(stripped)}


def is_login_operation(operation: str) -> bool:
    return _LOGIN_TOKEN in operation_tokens(operation)


def normalise_resource(resource: str) -> str:
    """``"public"."Users"`` and ``PUBLIC.USERS`` both become ``USERS``."""
    name = resource.strip().split(".")[-1]
    return name.strip('"').strip().upper()


class SecurityRuleEngine:
    """Stateless rule evaluation over the audit log."""

    def __init__(
        self,
        store: AuditLogStore,
        config: SecurityConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    @property
    def config(self) -> SecurityConfig:
        return self._config

    def update_config(self, config: SecurityConfig) -> None:
        """Swap in a reloaded policy. In-flight evaluations keep the old one."""
        self._config = config

    # ── Per-entry evaluation ────────────────────────────────────────────── #

    def evaluate(self, entry: AuditEntry) -> list[SecurityEvent]:
        """
        Run every per-entry rule against a freshly recorded entry.

        The entry is expected to be in the log already; window counts
        include it.
        """
        cfg = self._config
        events: list[SecurityEvent] = []
        for rule in (
            self._check_repeated_failures,
            self._check_sensitive_resource,
            self._check_unusual_time,
            self._check_high_frequency,
            self._check_restricted_operation,
        ):
            event = rule(entry, cfg)
            if event is not None:
                events.append(event)

        if events:
            _log.info(
                "security_rules_triggered",
                record_id=entry.id,
                user=entry.user,
                kinds=[e.kind for e in events],
            )
        return events

    def _event(
        self,
        cfg: SecurityConfig,
        kind: str,
        message: str,
        entry: AuditEntry,
        **evidence: object,
    ) -> SecurityEvent:
        return SecurityEvent(
            timestamp=entry.timestamp,
            kind=kind,
            severity=cfg.severity_for(kind),
            message=message,
            subject_user=entry.user,
            subject_address=entry.client_address,
            evidence={"record_id": entry.id, "operation": entry.operation, **evidence},
        )

    def _check_repeated_failures(
        self, entry: AuditEntry, cfg: SecurityConfig
    ) -> SecurityEvent | None:
        if entry.success or not is_login_operation(entry.operation):
            return None
        window = timedelta(seconds=cfg.failed_attempt_window_seconds)
        failures = self._store.count_matching(
            lambda e: e.user == entry.user and not e.success and is_login_operation(e.operation),
            window,
            until=entry.timestamp,
        )
        if failures < cfg.max_failed_attempts:
            return None
        return self._event(
            cfg,
            EventKind.MULTIPLE_FAILED_LOGINS,
            f"Multiple failed login attempts for user {entry.user}",
            entry,
            count=failures,
            threshold=cfg.max_failed_attempts,
            window_seconds=cfg.failed_attempt_window_seconds,
        )

    def _check_sensitive_resource(
        self, entry: AuditEntry, cfg: SecurityConfig
    ) -> SecurityEvent | None:
        if not entry.resource:
            return None
        name = normalise_resource(entry.resource)
        if name not in cfg.sensitive_resources:
            return None
        return self._event(
            cfg,
            EventKind.SENSITIVE_RESOURCE_ACCESS,
            f"Sensitive resource accessed: {entry.resource}",
            entry,
            resource=name,
            success=entry.success,
        )

    def _check_unusual_time(self, entry: AuditEntry, cfg: SecurityConfig) -> SecurityEvent | None:
        local = entry.timestamp.astimezone(cfg.tz)
        if cfg.business_hours_start <= local.hour < cfg.business_hours_end:
            return None
        return self._event(
            cfg,
            EventKind.UNUSUAL_TIME_ACCESS,
            f"Access at unusual time: {local.isoformat()}",
            entry,
            local_hour=local.hour,
        )

    def _check_high_frequency(self, entry: AuditEntry, cfg: SecurityConfig) -> SecurityEvent | None:
        window = timedelta(seconds=cfg.high_frequency_window_seconds)
        count = self._store.count_matching(
            lambda e: e.user == entry.user, window, until=entry.timestamp
        )
        if count < cfg.high_frequency_threshold:
            return None
        return self._event(
            cfg,
            EventKind.HIGH_FREQUENCY_OPERATIONS,
            f"High volume of operations for user {entry.user}",
            entry,
            count=count,
            threshold=cfg.high_frequency_threshold,
            window_seconds=cfg.high_frequency_window_seconds,
        )

    def _check_restricted_operation(
        self, entry: AuditEntry, cfg: SecurityConfig
    ) -> SecurityEvent | None:
        if entry.user in cfg.privileged_users:
            return None
        matched = self.restricted_keywords(entry.operation, entry.query, cfg)
        if not matched:
            return None
        return self._event(
            cfg,
            EventKind.RESTRICTED_OPERATION,
            f"Restricted operation by user {entry.user}: {', '.join(matched)}",
            entry,
            keywords=matched,
        )

    def restricted_keywords(
        self, operation: str, query: str | None = None, cfg: SecurityConfig | None = None
    ) -> list[str]:
        """Restricted keywords found in the operation tag, else in the query text."""
        cfg = cfg or self._config
        matched = operation_tokens(operation) & cfg.restricted_operations
        if not matched:
            matched = query_tokens(query) & cfg.restricted_operations
        return sorted(matched)

    # ── Pre-check mode ──────────────────────────────────────────────────── #

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
        Validate an operation before it runs.

        Raises:
            RestrictedOperationError: If the operation uses a restricted
                keyword and the caller is neither explicitly authorized nor a
                privileged user. The error carries the SecurityEvent so the
                caller can persist and publish it.
        """
        cfg = self._config
        if authorized or user in cfg.privileged_users:
            return
        matched = self.restricted_keywords(operation, query, cfg)
        if not matched:
            return
        event = SecurityEvent(
            timestamp=self._clock(),
            kind=EventKind.RESTRICTED_OPERATION,
            severity=cfg.severity_for(EventKind.RESTRICTED_OPERATION),
            message=f"Restricted operation blocked for user {user}: {', '.join(matched)}",
            subject_user=user,
            subject_address=client_address,
            evidence={
                "operation": operation,
                "resource": resource,
                "keywords": matched,
                "mode": "pre_check",
            },
        )
        _log.warning(
            "restricted_operation_blocked",
            user=user,
            operation=operation,
            keywords=matched,
        )
        raise RestrictedOperationError(
            f"Operation {operation} uses restricted keyword(s): {', '.join(matched)}",
            event=event,
        )

    # ── Batch scan ──────────────────────────────────────────────────────── #

    def scan(
        self, window: timedelta | None = None, until: datetime | None = None
    ) -> list[SecurityEvent]:
        """
        Aggregate detection over every entry in a time window.

        Groups by user (failed logins, volume) and by client address
        (volume). Default window is ``scan_window_hours`` ending now.
        """
        cfg = self._config
        end = until or self._clock()
        span = window or timedelta(hours=cfg.scan_window_hours)
        entries = self._store.query(AuditFilter(since=end - span, until=end))

        per_user: Counter[str] = Counter()
        failed_logins: Counter[str] = Counter()
        per_address: Counter[str] = Counter()
        for entry in entries:
            per_user[entry.user] += 1
            per_address[entry.client_address] += 1
            if not entry.success and is_login_operation(entry.operation):
                failed_logins[entry.user] += 1

        hours = round(span.total_seconds() / 3600, 2)
        evidence_base = {"window_hours": hours, "until": end.isoformat()}
        events: list[SecurityEvent] = []

        def _aggregate(kind: str, message: str, count: int, threshold: int, **subject: str) -> None:
            events.append(
                SecurityEvent(
                    timestamp=end,
                    kind=kind,
                    severity=cfg.severity_for(kind),
                    message=message,
                    evidence={**evidence_base, "count": count, "threshold": threshold},
                    **subject,
                )
            )

        for user, count in per_user.items():
            if count >= cfg.scan_user_threshold:
                _aggregate(
                    EventKind.HIGH_FREQUENCY_ACTOR,
                    f"User {user} performed {count} operations in {hours}h",
                    count,
                    cfg.scan_user_threshold,
                    subject_user=user,
                )
            failures = failed_logins[user]
            if failures >= cfg.max_failed_attempts:
                _aggregate(
                    EventKind.MULTIPLE_FAILED_LOGINS,
                    f"User {user} had {failures} failed login attempts in {hours}h",
                    failures,
                    cfg.max_failed_attempts,
                    subject_user=user,
                )

        for address, count in per_address.items():
            if count >= cfg.scan_address_threshold:
                _aggregate(
                    EventKind.HIGH_FREQUENCY_ADDRESS,
                    f"Address {address} performed {count} operations in {hours}h",
                    count,
                    cfg.scan_address_threshold,
                    subject_address=address,
                )

        _log.info(
            "security_scan_complete",
            entries=sum(per_user.values()),
            events=len(events),
            skipped_lines=entries.skipped,
        )
        return events
