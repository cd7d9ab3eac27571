"""
Structured error taxonomy for dbaudit.

Every application error has:
  - A stable error code (prefixed by domain)
  - An HTTP status code
  - A human-readable message
  - An optional detail dict for machine consumers

Audit storage failures are reported to the direct caller of the audit API
only; they never invalidate the operation being audited.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dbaudit.schemas.audit import SecurityEvent


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Storage
    STORAGE_UNWRITABLE = "STO_001"
    STORAGE_UNREADABLE = "STO_002"
    STORAGE_PRUNE_FAILED = "STO_003"
    STORAGE_CLOSED = "STO_004"

    # Security
    SEC_RESTRICTED_OPERATION = "SEC_001"

    # Configuration
    CONFIG_INVALID = "CFG_001"
    CONFIG_UNREADABLE = "CFG_002"

    # Notifications
    NOTIF_NOT_FOUND = "NTF_001"
    NOTIF_FORMAT_UNSUPPORTED = "NTF_002"
    NOTIF_IMPORT_INVALID = "NTF_003"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"
    NOT_FOUND = "GEN_003"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Typed convenience subclasses ──────────────────────────────────────── #


class StorageError(AppError):
    """The audit log could not be written, read or rewritten."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_UNWRITABLE,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, message=message, http_status=500, detail=detail)


class ValidationError(AppError):
    def __init__(
        self,
        message: str,
        detail: dict[str, Any] | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            http_status=422,
            detail=detail,
        )


class ConfigError(AppError):
    """
    Missing or invalid security configuration.

    Loaders fall back to documented defaults and log this error as a
    warning; it is raised only when strict loading is requested.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, message=message, http_status=500, detail=detail)


class NotFoundError(AppError):
    def __init__(
        self, entity: str, entity_id: str | None = None, code: ErrorCode = ErrorCode.NOT_FOUND
    ) -> None:
        detail = {"entity": entity}
        if entity_id:
            detail["id"] = entity_id
        super().__init__(
            code=code,
            message=f"{entity} not found",
            http_status=404,
            detail=detail,
        )


class RestrictedOperationError(AppError):
    """Raised by pre-check validation to abort a restricted operation."""

    def __init__(self, message: str, event: SecurityEvent | None = None) -> None:
        detail: dict[str, Any] = {}
        if event is not None:
            detail = {"kind": event.kind, "severity": event.severity.value, **event.evidence}
        super().__init__(
            code=ErrorCode.SEC_RESTRICTED_OPERATION,
            message=message,
            http_status=403,
            detail=detail,
        )
        self.event = event
