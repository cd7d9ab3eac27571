"""Audit entry and security event schemas."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from dbaudit.core.errors import ValidationError


class Severity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class EventKind(StrEnum):
    """Built-in security event kinds. Deployments may add their own."""

    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    SENSITIVE_RESOURCE_ACCESS = "SENSITIVE_RESOURCE_ACCESS"
    UNUSUAL_TIME_ACCESS = "UNUSUAL_TIME_ACCESS"
    HIGH_FREQUENCY_OPERATIONS = "HIGH_FREQUENCY_OPERATIONS"
    HIGH_FREQUENCY_ACTOR = "HIGH_FREQUENCY_ACTOR"
    HIGH_FREQUENCY_ADDRESS = "HIGH_FREQUENCY_ADDRESS"
    RESTRICTED_OPERATION = "RESTRICTED_OPERATION"
    UNKNOWN_PRIVILEGE = "UNKNOWN_PRIVILEGE"
    WEAK_PASSWORD = "WEAK_PASSWORD"


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_record_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class AuditEntry(BaseModel):
    """One completed operation attempt. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_record_id("aud"))
    record_type: Literal["audit_entry"] = "audit_entry"
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    user: str = "unknown"
    operation: str = Field(min_length=1, max_length=200)
    resource: str | None = None
    query: str | None = None
    success: bool
    message: str | None = None
    client_address: str = "127.0.0.1"
    client_agent: str = "dbaudit"


class SecurityEvent(BaseModel):
    """Derived record emitted when a security rule's condition is met."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_record_id("sec"))
    record_type: Literal["security_event"] = "security_event"
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    kind: str
    severity: Severity
    message: str
    subject_user: str | None = None
    subject_address: str | None = None
    evidence: dict[str, Any] = Field(default_factory=dict)


AuditRecord = Annotated[AuditEntry | SecurityEvent, Field(discriminator="record_type")]

audit_record_adapter: TypeAdapter[AuditEntry | SecurityEvent] = TypeAdapter(AuditRecord)


class AuditFilter(BaseModel):
    """Filter for audit entry retrieval. ``since``/``until`` are inclusive."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    since: UtcDatetime | None = None
    until: UtcDatetime | None = None
    user: str | None = None
    operation: str | None = None
    success: bool | None = None
    limit: int | None = Field(default=None, ge=1, le=100_000)
    descending: bool = False

    @model_validator(mode="after")
    def range_is_ordered(self) -> AuditFilter:
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self

    def matches(self, entry: AuditEntry) -> bool:
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        if self.user is not None and entry.user != self.user:
            return False
        if self.operation is not None and entry.operation != self.operation:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        return True


def parse_filter(data: dict[str, Any] | None = None, **kwargs: Any) -> AuditFilter:
    """
    Build an AuditFilter from loose caller input.

    Raises:
        ValidationError: If any argument is malformed. Nothing is read from
            storage before this succeeds.
    """
    values = {**(data or {}), **kwargs}
    try:
        return AuditFilter.model_validate(values)
    except PydanticValidationError as err:
        raise ValidationError(
            "Invalid audit filter",
            detail={
                "errors": [
                    f"{'.'.join(str(p) for p in e['loc']) or 'root'}: {e['msg']}"
                    for e in err.errors()
                ]
            },
        ) from err


class OperationResult(BaseModel):
    """Outcome reported by the collaborator that ran the operation."""

    success: bool
    message: str | None = None


class RecordOutcome(BaseModel):
    """What happened when an operation was recorded."""

    recorded: bool
    record_id: str | None = None
    entry: AuditEntry
    events: list[SecurityEvent] = Field(default_factory=list)
    error: dict[str, Any] | None = None


class PruneResult(BaseModel):
    kept: int
    removed: int
    cutoff: datetime


# ── HTTP request / response bodies ─────────────────────────────────────── #


class RecordOperationRequest(BaseModel):
    user: str | None = None
    operation: str = Field(min_length=1, max_length=200)
    resource: str | None = None
    query: str | None = None
    success: bool
    message: str | None = None
    client_address: str | None = None
    client_agent: str | None = None
    timestamp: UtcDatetime | None = None


class PreCheckRequest(BaseModel):
    user: str = Field(min_length=1)
    operation: str = Field(min_length=1, max_length=200)
    query: str | None = None
    resource: str | None = None
    authorized: bool = False


class PreCheckResult(BaseModel):
    allowed: bool
    user: str
    operation: str


class PruneRequest(BaseModel):
    retention_days: int | None = Field(
        default=None, ge=0, description="Defaults to the policy's audit_retention_days"
    )


class AuditEntryList(BaseModel):
    items: list[AuditEntry]
    total: int
    skipped_lines: int = 0


class SecurityEventList(BaseModel):
    items: list[SecurityEvent]
    total: int
    skipped_lines: int = 0
