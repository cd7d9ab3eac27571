"""API v1 router aggregator."""

from fastapi import APIRouter

from dbaudit.api.v1 import audit, notifications

router = APIRouter(prefix="/api/v1")
router.include_router(audit.router)
router.include_router(notifications.router)
