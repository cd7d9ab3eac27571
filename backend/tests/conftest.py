"""
Shared pytest fixtures for dbaudit tests.

Provides:
  - temporary audit and notification log paths (per-test isolation)
  - a controllable clock so windows and ranges are deterministic
  - a UTC security policy, so business-hour rules ignore the host timezone
  - an AuditService wired to all of the above, and an HTTP client over it
"""
from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dbaudit.config.security import SecurityConfig
from dbaudit.config.settings import Settings
from dbaudit.main import create_app
from dbaudit.schemas.audit import AuditEntry
from dbaudit.services.audit.service import AuditService
from dbaudit.services.audit.store import AuditLogStore
from dbaudit.services.notify.bus import NotificationBus

# Monday, inside business hours
NOON = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ─── Clock & policy ───────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOON)


@pytest.fixture
def security_config() -> SecurityConfig:
    return SecurityConfig(timezone="UTC")


# ─── Storage ──────────────────────────────────────────────────────────────────

@pytest.fixture
def audit_log_path(tmp_path: Path) -> Path:
    return tmp_path / "logs" / "audit.log"


@pytest.fixture
def store(audit_log_path: Path, clock: FixedClock) -> Iterator[AuditLogStore]:
    store_ = AuditLogStore(audit_log_path, clock=clock)
    yield store_
    store_.close()


@pytest.fixture
def bus(tmp_path: Path, clock: FixedClock) -> Iterator[NotificationBus]:
    bus_ = NotificationBus(log_path=tmp_path / "logs" / "notifications.log", clock=clock)
    yield bus_
    bus_.close()


@pytest.fixture
def make_entry(clock: FixedClock) -> Callable[..., AuditEntry]:
    """Factory for audit entries stamped with the test clock by default."""

    def _make(**overrides: Any) -> AuditEntry:
        values: dict[str, Any] = {
            "timestamp": clock(),
            "user": "alice",
            "operation": "SELECT",
            "success": True,
        }
        values.update(overrides)
        return AuditEntry(**values)

    return _make


# ─── Service ──────────────────────────────────────────────────────────────────

@pytest.fixture
def service(
    store: AuditLogStore,
    bus: NotificationBus,
    security_config: SecurityConfig,
    clock: FixedClock,
    tmp_path: Path,
) -> AuditService:
    return AuditService(
        store,
        security_config,
        bus=bus,
        config_path=tmp_path / "security-config.yaml",
        clock=clock,
    )


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="testing",
        audit_log_path=tmp_path / "logs" / "audit.log",
        notification_log_path=tmp_path / "logs" / "notifications.log",
        security_config_path=tmp_path / "security-config.yaml",
        rate_limit_default="10000/minute",
        log_json=False,
    )


@pytest.fixture
def app(settings: Settings, service: AuditService):
    return create_app(settings=settings, service=service)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
