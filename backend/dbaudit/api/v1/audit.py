"""Audit log API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse

from dbaudit.api.deps import AuditServiceDep, ClientAddress
from dbaudit.config.security import SecurityConfig
from dbaudit.schemas.audit import (
    AuditEntryList,
    OperationResult,
    PreCheckRequest,
    PreCheckResult,
    PruneRequest,
    PruneResult,
    RecordOperationRequest,
    RecordOutcome,
    SecurityEvent,
    SecurityEventList,
    parse_filter,
)
from dbaudit.schemas.report import AuditLogStats, AuditReport
from dbaudit.services.report.generator import render_markdown

router = APIRouter(prefix="/audit", tags=["audit"])


def _filter_args(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


@router.post(
    "/records",
    response_model=RecordOutcome,
    status_code=201,
    summary="Record a completed operation",
)
def record_operation(
    body: RecordOperationRequest, service: AuditServiceDep, caller: ClientAddress
) -> RecordOutcome:
    """
    Append an audit entry and evaluate it against the security rules.

    A storage failure is reported on the outcome (``recorded: false``)
    rather than as an HTTP error.
    """
    return service.record_operation(
        body.user,
        body.operation,
        resource=body.resource,
        query=body.query,
        result=OperationResult(success=body.success, message=body.message),
        client_address=body.client_address or caller,
        client_agent=body.client_agent,
        timestamp=body.timestamp,
    )


@router.post(
    "/pre-check",
    response_model=PreCheckResult,
    summary="Validate an operation before running it",
    responses={403: {"description": "Restricted operation blocked"}},
)
def pre_check(
    body: PreCheckRequest, service: AuditServiceDep, caller: ClientAddress
) -> PreCheckResult:
    service.pre_check(
        body.user,
        body.operation,
        query=body.query,
        resource=body.resource,
        authorized=body.authorized,
        client_address=caller,
    )
    return PreCheckResult(allowed=True, user=body.user, operation=body.operation)


@router.get("/records", response_model=AuditEntryList, summary="List audit entries")
def list_records(
    service: AuditServiceDep,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    user: str | None = Query(default=None),
    operation: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    limit: int | None = Query(default=100),
    descending: bool = Query(default=True),
) -> AuditEntryList:
    flt = parse_filter(
        _filter_args(
            since=since,
            until=until,
            user=user,
            operation=operation,
            success=success,
            limit=limit,
            descending=descending,
        )
    )
    entries = service.query_entries(flt)
    items = list(entries)
    return AuditEntryList(items=items, total=len(items), skipped_lines=entries.skipped)


@router.get("/events", response_model=SecurityEventList, summary="List security events")
def list_events(
    service: AuditServiceDep,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    kind: str | None = Query(default=None),
    limit: int | None = Query(default=100),
    descending: bool = Query(default=True),
) -> SecurityEventList:
    events = service.query_events(
        since=since, until=until, kind=kind, limit=limit, descending=descending
    )
    items = list(events)
    return SecurityEventList(items=items, total=len(items), skipped_lines=events.skipped)


@router.get("/report", response_model=AuditReport, summary="Aggregate audit report")
def report(
    service: AuditServiceDep,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    user: str | None = Query(default=None),
    operation: str | None = Query(default=None),
    success: bool | None = Query(default=None),
) -> AuditReport:
    return service.report_query(
        _filter_args(since=since, until=until, user=user, operation=operation, success=success)
    )


@router.get(
    "/report/markdown",
    response_class=PlainTextResponse,
    summary="Aggregate audit report as Markdown",
)
def report_markdown(
    service: AuditServiceDep,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    user: str | None = Query(default=None),
    operation: str | None = Query(default=None),
    success: bool | None = Query(default=None),
) -> PlainTextResponse:
    result = service.report_query(
        _filter_args(since=since, until=until, user=user, operation=operation, success=success)
    )
    return PlainTextResponse(render_markdown(result), media_type="text/markdown")


@router.get(
    "/suspicious",
    response_model=list[SecurityEvent],
    summary="Scan a window for suspicious activity",
)
def suspicious_activity(
    service: AuditServiceDep,
    window_hours: float | None = Query(default=None, gt=0),
) -> list[SecurityEvent]:
    return service.suspicious_activity_query(window_hours=window_hours)


@router.get("/stats", response_model=AuditLogStats, summary="Whole-log statistics")
def stats(service: AuditServiceDep) -> AuditLogStats:
    return service.log_stats()


@router.post("/prune", response_model=PruneResult, summary="Apply the retention policy")
def prune(service: AuditServiceDep, body: PruneRequest | None = None) -> PruneResult:
    retention_days = body.retention_days if body else None
    return service.prune(retention_days)


@router.post(
    "/config/reload",
    response_model=SecurityConfig,
    summary="Reload the security policy file",
)
def reload_config(service: AuditServiceDep) -> SecurityConfig:
    return service.reload_security_config()
