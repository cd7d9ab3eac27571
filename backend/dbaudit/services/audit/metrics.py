"""Prometheus counters for the audit pipeline, served from /metrics."""

from __future__ import annotations

from prometheus_client import Counter

AUDIT_ENTRIES_RECORDED = Counter(
    "dbaudit_entries_recorded_total",
    "Audit entries appended to the log",
    ["success"],
)

SECURITY_EVENTS_EMITTED = Counter(
    "dbaudit_security_events_total",
    "Security events emitted by the rule engine and validators",
    ["kind", "severity"],
)

STORAGE_ERRORS = Counter(
    "dbaudit_storage_errors_total",
    "Audit log reads or writes that failed",
    ["operation"],
)

MALFORMED_LINES = Counter(
    "dbaudit_malformed_lines_total",
    "Unparseable audit log lines skipped while reading",
)

HANDLER_FAILURES = Counter(
    "dbaudit_notification_handler_failures_total",
    "Notification handlers that raised during fan-out",
    ["type"],
)
