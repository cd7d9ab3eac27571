"""
Read-only aggregation of the audit log for people.

generate() returns a structured AuditReport; render_markdown() turns one
into the text report shown to administrators.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from dbaudit.schemas.audit import AuditFilter, utcnow
from dbaudit.schemas.report import AuditLogStats, AuditReport, OperationBreakdown, UserBreakdown
from dbaudit.services.audit.store import AuditLogStore

_log = structlog.get_logger(__name__)

DEFAULT_RANGE = timedelta(hours=24)
TOP_N = 10
RECENT_N = 20
STATS_TOP_N = 5
EMPTY_MESSAGE = "No entries found in the selected range."


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2)


class ReportGenerator:
    def __init__(self, store: AuditLogStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def generate(self, filter: AuditFilter | None = None) -> AuditReport:
        """
        Summarise entries in a time range (default: the last 24 hours).

        ``user``, ``operation`` and ``success`` narrow the entries; ``limit``
        and ``descending`` are ignored since every match is aggregated.
        """
        flt = filter or AuditFilter()
        until = flt.until or self._clock()
        if flt.until is None and flt.since is not None:
            until = max(until, flt.since)
        since = flt.since or until - DEFAULT_RANGE
        criteria = AuditFilter(
            since=since,
            until=until,
            user=flt.user,
            operation=flt.operation,
            success=flt.success,
        )

        entries = self._store.query(criteria)
        matched = list(entries)
        base = {
            "since": since,
            "until": until,
            "user": flt.user,
            "operation": flt.operation,
            "success": flt.success,
            "skipped_lines": entries.skipped,
        }

        if not matched:
            _log.info("audit_report_empty", since=since.isoformat(), until=until.isoformat())
            return AuditReport(
                **base, total=0, success_entries=0, failed_entries=0, message=EMPTY_MESSAGE
            )

        per_user_total: Counter[str] = Counter()
        per_user_success: Counter[str] = Counter()
        per_operation: Counter[str] = Counter()
        for entry in matched:
            per_user_total[entry.user] += 1
            per_operation[entry.operation] += 1
            if entry.success:
                per_user_success[entry.user] += 1

        total = len(matched)
        successes = sum(per_user_success.values())
        users = [
            UserBreakdown(
                user=user,
                total=count,
                success=per_user_success[user],
                failed=count - per_user_success[user],
                success_rate=_rate(per_user_success[user], count),
            )
            for user, count in per_user_total.most_common(TOP_N)
        ]
        operations = [
            OperationBreakdown(operation=op, count=count)
            for op, count in per_operation.most_common(TOP_N)
        ]
        recent = sorted(matched, key=lambda e: e.timestamp, reverse=True)[:RECENT_N]

        _log.info(
            "audit_report_generated",
            total=total,
            since=since.isoformat(),
            until=until.isoformat(),
        )
        return AuditReport(
            **base,
            total=total,
            success_entries=successes,
            failed_entries=total - successes,
            success_rate=_rate(successes, total),
            users=users,
            operations=operations,
            recent=recent,
        )

    def log_stats(self) -> AuditLogStats:
        """Totals over the whole log, including security events."""
        entries = self._store.query()
        users: Counter[str] = Counter()
        operations: Counter[str] = Counter()
        successes = 0
        for entry in entries:
            users[entry.user] += 1
            operations[entry.operation] += 1
            successes += entry.success
        total = sum(users.values())
        events = sum(1 for _ in self._store.query_events())

        return AuditLogStats(
            total_entries=total,
            success_entries=successes,
            failed_entries=total - successes,
            security_events=events,
            unique_users=len(users),
            unique_operations=len(operations),
            top_users=users.most_common(STATS_TOP_N),
            top_operations=operations.most_common(STATS_TOP_N),
            skipped_lines=entries.skipped,
        )


def render_markdown(report: AuditReport) -> str:
    lines = [
        "## Audit Report",
        "",
        f"**Period:** {report.since.isoformat()} to {report.until.isoformat()}",
        f"**Total operations:** {report.total}",
        "",
    ]
    if report.is_empty:
        lines.append(report.message or EMPTY_MESSAGE)
        return "\n".join(lines) + "\n"

    lines += [
        "### Summary",
        f"- **Successful operations:** {report.success_entries}",
        f"- **Failed operations:** {report.failed_entries}",
        f"- **Success rate:** {report.success_rate:.2f}%",
        "",
        "### Top Users",
        "| User | Total | Success | Failed | Success rate |",
        "|------|-------|---------|--------|--------------|",
    ]
    lines += [
        f"| {u.user} | {u.total} | {u.success} | {u.failed} | {u.success_rate:.2f}% |"
        for u in report.users
    ]
    lines += [
        "",
        "### Top Operations",
        "| Operation | Count |",
        "|-----------|-------|",
    ]
    lines += [f"| {o.operation} | {o.count} |" for o in report.operations]
    lines += [
        "",
        "### Recent Operations",
        "| Timestamp | User | Operation | Resource | Success |",
        "|-----------|------|-----------|----------|---------|",
    ]
    lines += [
        f"| {e.timestamp.isoformat()} | {e.user} | {e.operation} | "
        f"{e.resource or 'N/A'} | {'yes' if e.success else 'no'} |"
        for e in report.recent
    ]
    if report.skipped_lines:
        lines += ["", f"_{report.skipped_lines} malformed log line(s) skipped._"]
    return "\n".join(lines) + "\n"
