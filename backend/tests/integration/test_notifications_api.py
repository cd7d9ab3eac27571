"""Integration tests: notification endpoints."""
import json

import pytest

pytestmark = pytest.mark.asyncio


@pytest.fixture
def seeded(service):
    """Two notifications published straight onto the service bus."""
    first = service.bus.notify("SYSTEM_ALERT", "disk almost full", {"category": "system", "severity": "medium"})
    second = service.alerts.security_alert("FAILED_LOGIN", "repeated failures", {"user": "alice"})
    return first, second


# ─── Listing ──────────────────────────────────────────────────────────────────

async def test_list_notifications(client, seeded):
    resp = await client.get("/api/v1/notifications")
    assert resp.status_code == 200
    assert {n["message"] for n in resp.json()} == {"disk almost full", "repeated failures"}


async def test_list_notifications_by_type(client, seeded):
    resp = await client.get("/api/v1/notifications", params={"type": "SECURITY_ALERT"})
    assert [n["message"] for n in resp.json()] == ["repeated failures"]


async def test_security_events_become_notifications(client):
    await client.post(
        "/api/v1/audit/records",
        json={"user": "alice", "operation": "SELECT", "resource": "users", "success": True},
    )
    resp = await client.get("/api/v1/notifications", params={"type": "SECURITY_ALERT"})
    body = resp.json()
    assert len(body) == 1
    assert body[0]["details"]["kind"] == "SENSITIVE_RESOURCE_ACCESS"
    assert body[0]["details"]["severity"] == "high"


async def test_stats(client, seeded):
    resp = await client.get("/api/v1/notifications/stats")
    body = resp.json()
    assert body["total"] == 2
    assert body["unread"] == 2
    assert body["by_category"] == {"system": 1, "security": 1}


# ─── Read state / deletion ────────────────────────────────────────────────────

async def test_mark_read(client, seeded):
    first, _ = seeded
    resp = await client.post(f"/api/v1/notifications/{first.id}/read")
    assert resp.status_code == 200
    assert resp.json()["read"] is True


async def test_mark_read_unknown_id(client):
    resp = await client.post("/api/v1/notifications/notif-missing/read")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NTF_001"


async def test_mark_all_read(client, seeded):
    resp = await client.post("/api/v1/notifications/read-all")
    assert resp.json() == {"count": 2}
    stats = await client.get("/api/v1/notifications/stats")
    assert stats.json()["unread"] == 0


async def test_delete(client, seeded):
    first, _ = seeded
    resp = await client.delete(f"/api/v1/notifications/{first.id}")
    assert resp.status_code == 204
    again = await client.delete(f"/api/v1/notifications/{first.id}")
    assert again.status_code == 404


async def test_purge(client, seeded, clock):
    clock.advance(days=45)
    resp = await client.post("/api/v1/notifications/purge", json={"days": 30})
    assert resp.json() == {"count": 2}


# ─── Export / import ──────────────────────────────────────────────────────────

async def test_export_json(client, seeded):
    resp = await client.get("/api/v1/notifications/export")
    assert resp.status_code == 200
    assert len(json.loads(resp.text)) == 2


async def test_export_csv(client, seeded):
    resp = await client.get("/api/v1/notifications/export", params={"format": "csv"})
    assert resp.headers["content-type"].startswith("text/csv")
    assert resp.text.splitlines()[0] == "id,type,message,timestamp,read,category,severity"


async def test_export_rejects_unknown_format(client):
    resp = await client.get("/api/v1/notifications/export", params={"format": "xml"})
    assert resp.status_code == 422


async def test_import_assigns_fresh_ids(client, seeded):
    exported = (await client.get("/api/v1/notifications/export")).text
    resp = await client.post("/api/v1/notifications/import", json={"data": exported})
    assert resp.json() == {"count": 2}

    listed = (await client.get("/api/v1/notifications")).json()
    assert len(listed) == 4
    assert len({n["id"] for n in listed}) == 4


async def test_import_rejects_unsupported_format(client):
    resp = await client.post("/api/v1/notifications/import", json={"data": "", "format": "xml"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "NTF_002"
