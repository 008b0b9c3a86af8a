from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

import db
from config import settings
from app.services.reminder_scheduler import dedupe_or_create
from app.types.reminder_contract import ReminderCandidate, ReminderType
from main import app

UTC = timezone.utc


@pytest_asyncio.fixture
async def client(database):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _seed_reminder(at: datetime) -> str:
    candidate = ReminderCandidate(
        tenant_id="tenant-1",
        type=ReminderType.DEADLINE,
        foreign_id="essay",
        scheduled_for=at,
        title="Upcoming: Essay",
        message="Due tomorrow",
        metadata={"assignmentId": "essay"},
    )
    async with db.session_scope() as s:
        rid, _ = await dedupe_or_create(s, candidate)
        await s.commit()
    return rid


@pytest.mark.asyncio
async def test_list_reminders_in_window(client, enable_encryption):
    at = db.utcnow() + timedelta(hours=3)
    rid = await _seed_reminder(at)

    resp = await client.get("/v1/reminders", params={"tenantId": "tenant-1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    (item,) = body["data"]
    assert item["id"] == rid
    assert item["status"] == "scheduled"
    assert item["metadata"] == {"assignmentId": "essay"}

    resp = await client.get("/v1/reminders", params={
        "tenantId": "tenant-1",
        "windowEnd": (at - timedelta(hours=1)).isoformat(),
    })
    assert resp.json()["data"] == []


@pytest.mark.asyncio
async def test_interaction_endpoint_status_codes(client):
    rid = await _seed_reminder(db.utcnow() + timedelta(hours=1))

    resp = await client.post(f"/v1/reminders/{rid}/interactions", json={"action": "dismissed"})
    assert resp.status_code == 204

    resp = await client.post(f"/v1/reminders/{rid}/interactions", json={"action": "archived"})
    assert resp.status_code == 400

    resp = await client.post("/v1/reminders/nope/interactions", json={"action": "completed"})
    assert resp.status_code == 404

    resp = await client.get("/v1/reminders/history", params={"tenantId": "tenant-1"})
    (item,) = resp.json()["data"]
    assert item["status"] == "dismissed"
    assert [i["action"] for i in item["interactions"]] == ["dismissed"]


@pytest.mark.asyncio
async def test_acknowledge_endpoint(client):
    rid = await _seed_reminder(db.utcnow() + timedelta(hours=1))

    resp = await client.post(f"/v1/reminders/{rid}/acknowledge")
    assert resp.status_code == 200

    reminder = await db.get_reminder(rid)
    assert reminder.status == "sent"
    assert reminder.delivered_at is not None

    resp = await client.post("/v1/reminders/nope/acknowledge")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_preferences_roundtrip_ignores_unknown_fields(client):
    resp = await client.get("/v1/reminders/preferences", params={"tenantId": "tenant-1"})
    assert resp.json()["data"]["quietHours"] == {"startHour": 0, "endHour": 0}

    resp = await client.put("/v1/reminders/preferences", json={
        "tenantId": "tenant-1",
        "timezone": "Europe/Berlin",
        "quietHours": {"startHour": 22, "endHour": 6},
        "snoozeDurationsMinutes": [5, 15],
        "isAdmin": True,
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["timezone"] == "Europe/Berlin"
    assert data["quietHours"] == {"startHour": 22, "endHour": 6}
    assert data["snoozeDurationsMinutes"] == [5, 15]
    assert "isAdmin" not in data

    resp = await client.put("/v1/reminders/preferences", json={"tenantId": "tenant-1", "timezone": "Nowhere/Land"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_analytics_read_after_interaction(client):
    resp = await client.get("/v1/reminders/analytics", params={"tenantId": "tenant-1"})
    assert resp.json()["data"] is None

    rid = await _seed_reminder(db.utcnow() + timedelta(hours=1))
    await client.post(f"/v1/reminders/{rid}/interactions", json={"action": "completed"})

    resp = await client.get("/v1/reminders/analytics", params={"tenantId": "tenant-1"})
    data = resp.json()["data"]
    assert data["sampleSize"] == 1
    assert 0 <= data["preferredHourOfDay"] <= 23


@pytest.mark.asyncio
async def test_subscription_register_upserts_by_endpoint(client):
    payload = {
        "tenantId": "tenant-1",
        "endpoint": "https://push.example/device-1",
        "keys": {"p256dh": "key-1", "auth": "auth-1"},
    }
    first = await client.post("/v1/reminders/subscriptions", json=payload)
    assert first.status_code == 201

    payload["keys"] = {"p256dh": "key-2", "auth": "auth-2"}
    second = await client.post("/v1/reminders/subscriptions", json=payload)
    assert second.json()["data"]["id"] == first.json()["data"]["id"]

    async with db.session_scope() as s:
        subs = await db.list_push_subscriptions(s, "tenant-1")
    assert [(sub.endpoint, sub.p256dh) for sub in subs] == [("https://push.example/device-1", "key-2")]

    resp = await client.request(
        "DELETE", "/v1/reminders/subscriptions",
        json={"endpoint": "https://push.example/device-1", "tenantId": "tenant-2"},
    )
    assert resp.status_code == 204
    async with db.session_scope() as s:
        assert len(await db.list_push_subscriptions(s, "tenant-1")) == 1

    await client.request("DELETE", "/v1/reminders/subscriptions", json={"endpoint": "https://push.example/device-1"})
    async with db.session_scope() as s:
        assert await db.list_push_subscriptions(s, "tenant-1") == []


@pytest.mark.asyncio
async def test_webpush_config_reports_capability(client, enable_push):
    resp = await client.get("/v1/reminders/config/webpush")
    assert resp.json()["data"] == {"vapidPublicKey": "BPublicKeyForTests", "pushEnabled": True}


@pytest.mark.asyncio
async def test_new_preferences_use_configured_default_timezone(client, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_TIMEZONE", "Europe/Berlin")

    resp = await client.get("/v1/reminders/preferences", params={"tenantId": "tenant-9"})

    assert resp.json()["data"]["timezone"] == "Europe/Berlin"
