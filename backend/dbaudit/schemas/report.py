"""Audit report schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from dbaudit.schemas.audit import AuditEntry


class UserBreakdown(BaseModel):
    user: str
    total: int
    success: int
    failed: int
    success_rate: float


class OperationBreakdown(BaseModel):
    operation: str
    count: int


class AuditReport(BaseModel):
    since: datetime
    until: datetime
    user: str | None = None
    operation: str | None = None
    success: bool | None = None
    total: int
    success_entries: int
    failed_entries: int
    success_rate: float | None = Field(
        default=None, description="Percentage with two decimals; None when total is 0"
    )
    users: list[UserBreakdown] = Field(default_factory=list)
    operations: list[OperationBreakdown] = Field(default_factory=list)
    recent: list[AuditEntry] = Field(default_factory=list)
    skipped_lines: int = 0
    message: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.total == 0


class AuditLogStats(BaseModel):
    total_entries: int
    success_entries: int
    failed_entries: int
    security_events: int
    unique_users: int
    unique_operations: int
    top_users: list[tuple[str, int]]
    top_operations: list[tuple[str, int]]
    skipped_lines: int
