from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

import db
from app.services import reminder_scheduler
from app.services.reminder_scheduler import (
    TickReport, clean_up_resolved_reminders, log_reminder_interaction, run_tick,
)
from conftest import load_reminder, make_reminder, store

UTC = timezone.utc
NOW = datetime(2025, 3, 8, 12, tzinfo=UTC)  # Saturday


async def _all_reminders() -> list[db.Reminder]:
    async with db.session_scope() as s:
        return list((await s.execute(select(db.Reminder).order_by(db.Reminder.type))).scalars())


@pytest.mark.asyncio
async def test_sweep_dismisses_only_old_sent(database):
    stale_sent = make_reminder(foreign_id="a-1", status="sent", scheduled_for=NOW - timedelta(hours=25))
    fresh_sent = make_reminder(foreign_id="a-2", status="sent", scheduled_for=NOW - timedelta(hours=1))
    await store(stale_sent, fresh_sent)

    report = TickReport()
    await clean_up_resolved_reminders(NOW, report)

    assert (await load_reminder(stale_sent.id)).status == "dismissed"
    assert (await load_reminder(fresh_sent.id)).status == "sent"
    assert report.swept == 1


@pytest.mark.asyncio
async def test_stale_undispatched_reminders_are_reclaimed(database):
    stuck = make_reminder(foreign_id="a-1", status="scheduled", scheduled_for=NOW - timedelta(hours=30))
    pending = make_reminder(foreign_id="a-2", status="scheduled", scheduled_for=NOW - timedelta(hours=2))
    await store(stuck, pending)

    report = TickReport()
    await clean_up_resolved_reminders(NOW, report)

    assert (await load_reminder(stuck.id)).status == "dismissed"
    assert (await load_reminder(pending.id)).status == "scheduled"
    assert report.reclaimed == 1


@pytest.mark.asyncio
async def test_tick_generates_once_per_dedup_key(database):
    await store(
        db.Assignment(id="essay", tenant_id="tenant-1", title="Essay",
                      due_date=datetime(2025, 3, 9, 18, tzinfo=UTC), progress=20),
        db.Assignment(id="far", tenant_id="tenant-1", title="Thesis",
                      due_date=NOW + timedelta(days=10), progress=0),
        db.Assignment(id="done", tenant_id="tenant-1", title="Quiz",
                      due_date=NOW + timedelta(hours=6), progress=100),
        db.Account(id="tenant-1", last_login_at=NOW - timedelta(hours=1)),
        db.Account(id="tenant-2", last_login_at=NOW - timedelta(hours=1), reminder_opt_out=True),
    )

    first = await run_tick(NOW)
    second = await run_tick(NOW)

    assert first.created == 2
    assert second.created == 0
    assert second.rescheduled == 2

    reminders = await _all_reminders()
    assert [(r.type, r.foreign_id) for r in reminders] == [
        ("DEADLINE", "essay"),
        ("INACTIVITY", "tenant-1"),
    ]
    deadline = reminders[0]
    assert db.as_utc(deadline.scheduled_for) == datetime(2025, 3, 8, 18, tzinfo=UTC)
    assert deadline.title == "Upcoming: Essay"


@pytest.mark.asyncio
async def test_smart_reminders_disabled_skips_generation(database):
    pref = db.ReminderPreference.fresh("tenant-1")
    pref.smart_reminders_enabled = False
    await store(
        pref,
        db.Assignment(id="essay", tenant_id="tenant-1", title="Essay",
                      due_date=NOW + timedelta(hours=20), progress=0),
        db.Account(id="tenant-1", last_login_at=NOW),
    )

    report = await run_tick(NOW)

    assert report.created == 0
    assert await _all_reminders() == []


@pytest.mark.asyncio
async def test_inactivity_target_in_past_is_skipped(database):
    await store(db.Account(id="tenant-1", last_login_at=NOW - timedelta(days=10)))

    report = await run_tick(NOW)

    assert report.created == 0


@pytest.mark.asyncio
async def test_finished_assignment_auto_completes_reminder(database):
    assignment = db.Assignment(id="essay", tenant_id="tenant-1", title="Essay",
                               due_date=NOW + timedelta(hours=20), progress=50)
    await store(assignment)
    await run_tick(NOW)

    async with db.session_scope() as s:
        row = await s.get(db.Assignment, "essay")
        row.progress = 100
        await s.commit()

    report = await run_tick(NOW + timedelta(minutes=5))

    assert report.auto_completed == 1
    (reminder,) = await _all_reminders()
    assert reminder.status == "completed"
    assert reminder.completion_logged_at is not None
    assert reminder.interactions[-1].action == "auto_completed"


@pytest.mark.asyncio
async def test_behavioural_nudge_respects_preferred_weekdays(database):
    pref = db.ReminderPreference.fresh("tenant-1")
    pref.preferred_weekdays = [1, 2, 3, 4, 5]
    await store(pref, db.ReminderAnalytics.fresh("tenant-1"))

    saturday = await run_tick(NOW)
    assert saturday.created == 0

    monday = datetime(2025, 3, 10, 12, tzinfo=UTC)
    report = await run_tick(monday)
    assert report.created == 1
    (reminder,) = await _all_reminders()
    assert reminder.type == "BEHAVIORAL"
    assert reminder.foreign_id == "behaviour_2025-03-10"
    assert db.as_utc(reminder.scheduled_for) == datetime(2025, 3, 10, 18, tzinfo=UTC)


@pytest.mark.asyncio
async def test_tick_isolates_per_item_failures(database, monkeypatch):
    await store(
        db.Assignment(id="essay", tenant_id="tenant-1", title="Essay",
                      due_date=NOW + timedelta(hours=20), progress=0),
        db.Assignment(id="lab", tenant_id="tenant-2", title="Lab report",
                      due_date=NOW + timedelta(hours=22), progress=0),
    )
    real = reminder_scheduler.dedupe_or_create

    async def flaky(s, candidate, now=None):
        if candidate.tenant_id == "tenant-1":
            raise RuntimeError("constraint exploded")
        return await real(s, candidate, now)

    monkeypatch.setattr(reminder_scheduler, "dedupe_or_create", flaky)

    report = await run_tick(NOW)

    assert report.errors == 1
    assert report.created == 1


@pytest.mark.asyncio
async def test_deadline_reminder_fires_before_due_date(database):
    due = datetime(2025, 3, 10, 9, tzinfo=UTC)
    await store(db.Assignment(id="essay", tenant_id="tenant-1", title="Essay", due_date=due, progress=0))

    now = datetime(2025, 3, 9, 17, 51, 7, tzinfo=UTC)
    while now < due:
        await run_tick(now)
        now += timedelta(minutes=5)

    (reminder,) = await _all_reminders()
    assert reminder.status == "sent"
    assert reminder.sent_at is not None
    assert db.as_utc(reminder.sent_at) < due
    assert db.as_utc(reminder.scheduled_for) == datetime(2025, 3, 9, 18, tzinfo=UTC)
    assert [i.action for i in reminder.interactions] == ["sent"]


@pytest.mark.asyncio
async def test_snooze_survives_next_tick(database):
    await store(db.Assignment(id="essay", tenant_id="tenant-1", title="Essay",
                              due_date=NOW + timedelta(hours=20), progress=0))
    await run_tick(NOW)
    (reminder,) = await _all_reminders()

    await log_reminder_interaction(reminder.id, "snoozed", {"snoozeMinutes": 30}, now=NOW)
    await run_tick(NOW + timedelta(minutes=5))

    (reminder,) = await _all_reminders()
    assert reminder.status == "snoozed"
    assert db.as_utc(reminder.scheduled_for) == NOW + timedelta(minutes=30)

    await run_tick(NOW + timedelta(minutes=31))

    (reminder,) = await _all_reminders()
    assert reminder.status == "sent"
    assert db.as_utc(reminder.scheduled_for) == NOW + timedelta(minutes=30)
