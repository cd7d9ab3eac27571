"""
FastAPI dependency providers.

The AuditService is built once per application and kept on ``app.state``;
routes receive it through AuditServiceDep.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from dbaudit.core.errors import AppError, ErrorCode
from dbaudit.services.audit.service import AuditService


def get_audit_service(request: Request) -> AuditService:
    service: AuditService | None = getattr(request.app.state, "audit_service", None)
    if service is None:
        raise AppError(
            ErrorCode.INTERNAL_ERROR,
            "Audit service is not running",
            http_status=503,
        )
    return service


AuditServiceDep = Annotated[AuditService, Depends(get_audit_service)]


def client_address(request: Request) -> str | None:
    """Address of the HTTP caller, used when a record does not name one."""
    return request.client.host if request.client else None


ClientAddress = Annotated[str | None, Depends(client_address)]
