from datetime import datetime, timedelta, timezone

import pytest
from pywebpush import WebPushException

import db
from app.services import reminder_scheduler
from app.services.reminder_scheduler import TickReport, dispatch_due_reminders
from app.utils import push
from conftest import load_reminder, make_reminder, store

UTC = timezone.utc
NOW = datetime(2025, 3, 9, 18, 2, tzinfo=UTC)


def _subscription(endpoint: str) -> db.PushSubscription:
    return db.PushSubscription(
        tenant_id="tenant-1", endpoint=endpoint, p256dh="p256dh-key", auth="auth-secret"
    )


@pytest.mark.asyncio
async def test_zero_subscriptions_still_marks_sent(database, enable_push):
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=2))
    await store(reminder)

    report = TickReport()
    await dispatch_due_reminders(NOW, report)

    stored = await load_reminder(reminder.id)
    assert stored.status == "sent"
    assert db.as_utc(stored.sent_at) == NOW
    assert stored.delivery_state == "no_subscription"
    assert [i.action for i in stored.interactions] == ["sent"]
    assert report.dispatched == 1
    assert report.errors == 0


@pytest.mark.asyncio
async def test_unconfigured_push_is_degraded_not_silent(database):
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=1))
    await store(reminder, _subscription("https://push.example/a"))

    await dispatch_due_reminders(NOW, TickReport())

    stored = await load_reminder(reminder.id)
    assert stored.status == "sent"
    assert stored.delivery_state == "degraded"
    assert stored.interactions[0].details == {"deliveryState": "degraded"}


@pytest.mark.asyncio
async def test_one_failing_subscription_does_not_block_others(database, enable_push, monkeypatch):
    calls = []

    def fake_webpush(subscription_info, data, **kwargs):
        calls.append(subscription_info["endpoint"])
        if subscription_info["endpoint"].endswith("/gone"):
            raise WebPushException("Push failed: 410 Gone")

    monkeypatch.setattr(push, "webpush", fake_webpush)
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=3))
    await store(
        reminder,
        _subscription("https://push.example/gone"),
        _subscription("https://push.example/ok"),
    )

    await dispatch_due_reminders(NOW, TickReport())

    assert sorted(calls) == ["https://push.example/gone", "https://push.example/ok"]
    stored = await load_reminder(reminder.id)
    assert stored.status == "sent"
    assert stored.delivery_state == "delivered"


@pytest.mark.asyncio
async def test_all_subscriptions_failing_is_recorded(database, enable_push, monkeypatch):
    def broken_webpush(subscription_info, data, **kwargs):
        raise ConnectionError("network unreachable")

    monkeypatch.setattr(push, "webpush", broken_webpush)
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=3))
    await store(reminder, _subscription("https://push.example/a"))

    report = TickReport()
    await dispatch_due_reminders(NOW, report)

    stored = await load_reminder(reminder.id)
    assert stored.status == "sent"
    assert stored.delivery_state == "failed"
    assert report.errors == 0


@pytest.mark.asyncio
async def test_push_disabled_preference_skips_transport(database, enable_push, monkeypatch):
    def unexpected(*args, **kwargs):
        raise AssertionError("transport must not be called")

    monkeypatch.setattr(push, "webpush", unexpected)
    pref = db.ReminderPreference.fresh("tenant-1")
    pref.push_enabled = False
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=1))
    await store(pref, reminder, _subscription("https://push.example/a"))

    await dispatch_due_reminders(NOW, TickReport())

    stored = await load_reminder(reminder.id)
    assert stored.status == "sent"
    assert stored.delivery_state == "push_disabled"


@pytest.mark.asyncio
async def test_window_excludes_old_future_and_sent(database):
    old = make_reminder(foreign_id="a-old", scheduled_for=NOW - timedelta(minutes=6))
    future = make_reminder(foreign_id="a-future", scheduled_for=NOW + timedelta(minutes=1))
    sent = make_reminder(foreign_id="a-sent", scheduled_for=NOW - timedelta(minutes=1), status="sent")
    snoozed = make_reminder(foreign_id="a-snoozed", scheduled_for=NOW - timedelta(minutes=1), status="snoozed")
    await store(old, future, sent, snoozed)

    report = TickReport()
    await dispatch_due_reminders(NOW, report)

    assert report.dispatched == 1
    assert (await load_reminder(old.id)).status == "scheduled"
    assert (await load_reminder(future.id)).status == "scheduled"
    assert (await load_reminder(sent.id)).interactions == []
    assert (await load_reminder(snoozed.id)).status == "sent"


@pytest.mark.asyncio
async def test_batch_size_caps_dispatch(database, monkeypatch):
    monkeypatch.setattr(reminder_scheduler.settings, "REMINDER_MAX_BATCH_SIZE", 2)
    await store(*[
        make_reminder(foreign_id=f"a-{i}", scheduled_for=NOW - timedelta(minutes=1))
        for i in range(3)
    ])

    report = TickReport()
    await dispatch_due_reminders(NOW, report)
    assert report.dispatched == 2


def test_payload_carries_reminder_identity():
    reminder = make_reminder(id="r-42", type="INACTIVITY")
    payload = reminder_scheduler.build_payload(reminder)
    assert payload.data.reminder_id == "r-42"
    assert payload.data.type.value == "INACTIVITY"
    assert payload.data.snooze_options == [10, 30, 60]


@pytest.mark.asyncio
async def test_dismissal_during_send_is_not_overwritten(database, enable_push, monkeypatch):
    reminder = make_reminder(scheduled_for=NOW - timedelta(minutes=1))
    await store(reminder, _subscription("https://push.example/a"))

    async def slow_fan_out(targets, body):
        # the tenant dismisses while the transport is still busy
        async with db.session_scope() as s:
            row = await s.get(db.Reminder, reminder.id)
            row.status = "dismissed"
            await s.commit()
        return [None for _ in targets]

    monkeypatch.setattr(push, "fan_out", slow_fan_out)

    report = TickReport()
    await dispatch_due_reminders(NOW, report)

    stored = await load_reminder(reminder.id)
    assert stored.status == "dismissed"
    assert stored.sent_at is None
    assert stored.interactions == []
    assert report.dispatched == 0
    assert report.errors == 0
