"""
Reminder engine: one tick = generate -> dedup/upsert -> dispatch -> sweep.

Flow per tick:
1. Deadline, inactivity and behavioural generators each propose candidates;
   every candidate goes through the atomic dedup upsert (``db.upsert_live_reminder``).
2. Live DEADLINE reminders whose assignment is finished are auto-completed.
3. Due reminders in the trailing dispatch window are fanned out to every
   push subscription of their tenant and marked ``sent``.
4. The retention sweep dismisses old ``sent`` reminders and reclaims stale
   undispatched ones.

Every per-item failure is logged and skipped; only a failure of a whole
scan query aborts the tick.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InvalidAction, ReminderNotFound
from app.services import prediction_engine
from app.types.reminder_contract import (
    DISPATCHABLE_STATUSES, LIVE_STATUSES, TERMINAL_STATUSES,
    DeliveryState, InteractionAction, PushData, PushPayload,
    ReminderCandidate, ReminderStatus, ReminderType, can_transition, parse_action,
)
from app.utils import push
from app.utils.crypto import encrypt
from config import get_capabilities, settings
import db

_LOGGER = logging.getLogger(__name__)


@dataclass
class TickReport:
    created: int = 0
    rescheduled: int = 0
    auto_completed: int = 0
    dispatched: int = 0
    swept: int = 0
    reclaimed: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _batch_size() -> int:
    return settings.REMINDER_MAX_BATCH_SIZE


def _jsonable(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    return json.loads(json.dumps(payload, default=lambda v: v.isoformat() if isinstance(v, datetime) else str(v)))


# ──────────────────────────────────────────────────────────────────────────
# Dedup / upsert
# ──────────────────────────────────────────────────────────────────────────

async def dedupe_or_create(
    s: AsyncSession, candidate: ReminderCandidate, now: datetime | None = None
) -> tuple[str, bool]:
    """Atomic insert-if-absent-else-reschedule for one candidate."""
    return await db.upsert_live_reminder(s, candidate, encrypt(candidate.metadata), now)


def _tally(report: TickReport, created: bool) -> None:
    if created:
        report.created += 1
    else:
        report.rescheduled += 1


# ──────────────────────────────────────────────────────────────────────────
# Generators
# ──────────────────────────────────────────────────────────────────────────

async def schedule_deadline_reminders(now: datetime, report: TickReport) -> None:
    upper_bound = now + timedelta(hours=settings.DEADLINE_LOOKAHEAD_HOURS)
    async with db.session_scope() as s:
        res = await s.execute(
            select(db.Assignment.id, db.Assignment.tenant_id, db.Assignment.title, db.Assignment.due_date)
            .where(
                db.Assignment.due_date >= now,
                db.Assignment.due_date <= upper_bound,
                db.Assignment.progress < 100,
            )
            .order_by(db.Assignment.due_date)
            .limit(_batch_size() * 2)
        )
        assignments = res.all()

    for assignment_id, tenant_id, title, due_date in assignments:
        due_date = db.as_utc(due_date)
        async with db.session_scope() as s:
            try:
                preference = await db.get_or_create_preference(s, tenant_id)
                if not preference.smart_reminders_enabled:
                    await s.commit()
                    continue
                preferred_hour = await prediction_engine.calculate_preferred_hour(s, tenant_id)
                scheduled_for = prediction_engine.suggest_schedule(
                    preferred_hour=preferred_hour,
                    due_date=due_date,
                    preference=preference,
                    now=now,
                )
                candidate = ReminderCandidate(
                    tenant_id=tenant_id,
                    type=ReminderType.DEADLINE,
                    foreign_id=str(assignment_id),
                    scheduled_for=scheduled_for,
                    title=f"Upcoming: {title}",
                    message=f'Your assignment "{title}" is due on {due_date.strftime("%a %d %b %Y %H:%M UTC")}.',
                    metadata={"assignmentId": str(assignment_id), "dueDate": due_date.isoformat()},
                )
                _, created = await dedupe_or_create(s, candidate, now)
                await s.commit()
                _tally(report, created)
            except Exception as exc:  # noqa: BLE001
                await s.rollback()
                report.errors += 1
                _LOGGER.error("Deadline reminder failed assignment_id=%s: %s", assignment_id, exc)


async def schedule_inactivity_reminders(now: datetime, report: TickReport) -> None:
    async with db.session_scope() as s:
        res = await s.execute(
            select(db.Account.id, db.Account.last_login_at)
            .where(db.Account.reminder_opt_out.is_(False))
            .order_by(db.Account.id)
            .limit(_batch_size() * 2)
        )
        accounts = res.all()

    for tenant_id, last_login_at in accounts:
        async with db.session_scope() as s:
            try:
                preference = await db.get_or_create_preference(s, tenant_id)
                if not preference.smart_reminders_enabled:
                    await s.commit()
                    continue
                preferred_hour = await prediction_engine.calculate_preferred_hour(s, tenant_id)
                target = prediction_engine.compute_inactivity_schedule(
                    preferred_hour=preferred_hour,
                    last_login_at=last_login_at,
                    preference=preference,
                    now=now,
                )
                if target < now:
                    await s.commit()
                    continue
                candidate = ReminderCandidate(
                    tenant_id=tenant_id,
                    type=ReminderType.INACTIVITY,
                    foreign_id=tenant_id,
                    scheduled_for=target,
                    title="We miss you at SemesterStride",
                    message="Jump back in to keep your study plan on track.",
                    metadata={
                        "reason": "inactivity",
                        "inactivityThresholdHours": preference.inactivity_threshold_hours,
                    },
                )
                _, created = await dedupe_or_create(s, candidate, now)
                await s.commit()
                _tally(report, created)
            except Exception as exc:  # noqa: BLE001
                await s.rollback()
                report.errors += 1
                _LOGGER.error("Inactivity reminder failed tenant_id=%s: %s", tenant_id, exc)


def behaviour_key(candidate: datetime) -> str:
    return f"behaviour_{db.as_utc(candidate).date().isoformat()}"


async def schedule_behavioural_reminders(now: datetime, report: TickReport) -> None:
    async with db.session_scope() as s:
        res = await s.execute(
            select(
                db.ReminderAnalytics.tenant_id,
                db.ReminderAnalytics.preferred_hour_of_day,
                db.ReminderAnalytics.average_completion_lead_hours,
            )
            .order_by(db.ReminderAnalytics.tenant_id)
            .limit(_batch_size())
        )
        rows = res.all()

    for tenant_id, preferred_hour, lead_hours in rows:
        async with db.session_scope() as s:
            try:
                preference = await db.get_or_create_preference(s, tenant_id)
                if not preference.smart_reminders_enabled:
                    await s.commit()
                    continue
                candidate_at = prediction_engine.suggest_schedule(
                    preferred_hour=prediction_engine.clamp_hour(preferred_hour),
                    due_date=None,
                    preference=preference,
                    fallback_minutes=(lead_hours or db.DEFAULT_COMPLETION_LEAD_HOURS) * 60,
                    now=now,
                )
                weekdays = preference.preferred_weekdays
                local_day = prediction_engine.js_weekday(
                    candidate_at.astimezone(prediction_engine.tz_for(preference.timezone))
                )
                if weekdays and local_day not in weekdays:
                    await s.commit()
                    continue
                candidate = ReminderCandidate(
                    tenant_id=tenant_id,
                    type=ReminderType.BEHAVIORAL,
                    foreign_id=behaviour_key(candidate_at),
                    scheduled_for=candidate_at,
                    title="Quick study suggestion",
                    message="Based on your recent activity, now is a great time for a focused session.",
                    metadata={"reason": "behavioural", "hint": "study-session"},
                )
                _, created = await dedupe_or_create(s, candidate, now)
                await s.commit()
                _tally(report, created)
            except Exception as exc:  # noqa: BLE001
                await s.rollback()
                report.errors += 1
                _LOGGER.error("Behavioural reminder failed tenant_id=%s: %s", tenant_id, exc)


async def auto_complete_finished_assignments(now: datetime, report: TickReport) -> None:
    async with db.session_scope() as s:
        res = await s.execute(
            select(db.Reminder.id)
            .join(db.Assignment, db.Assignment.id == db.Reminder.foreign_id)
            .where(
                db.Reminder.type == ReminderType.DEADLINE.value,
                db.Reminder.status.in_([st.value for st in LIVE_STATUSES]),
                db.Assignment.progress >= 100,
            )
            .limit(_batch_size())
        )
        reminder_ids = list(res.scalars())

    for rid in reminder_ids:
        async with db.session_scope() as s:
            try:
                reminder = await s.get(db.Reminder, rid)
                if reminder is None or not reminder.is_live:
                    continue
                reminder.status = ReminderStatus.COMPLETED.value
                reminder.completion_logged_at = now
                reminder.log(InteractionAction.AUTO_COMPLETED.value, now, {"reason": "assignment_completed"})
                await s.commit()
                report.auto_completed += 1
            except Exception as exc:  # noqa: BLE001
                await s.rollback()
                report.errors += 1
                _LOGGER.error("Auto-complete failed reminder_id=%s: %s", rid, exc)


# ──────────────────────────────────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────────────────────────────────

def build_payload(reminder: db.Reminder) -> PushPayload:
    return PushPayload(
        title=reminder.title,
        body=reminder.message,
        data=PushData(
            reminder_id=reminder.id,
            type=ReminderType(reminder.type),
            scheduled_for=db.as_utc(reminder.scheduled_for),
        ),
    )


async def _plan_delivery(s: AsyncSession, reminder: db.Reminder) -> tuple[DeliveryState | None, list[dict]]:
    """Decide up front whether anything is sent; ``None`` means fan out to the targets."""
    if not get_capabilities().push:
        return DeliveryState.DEGRADED, []

    preference = await s.get(db.ReminderPreference, reminder.tenant_id)
    if preference is not None and not preference.push_enabled:
        _LOGGER.info("Push disabled by preference tenant_id=%s", reminder.tenant_id)
        return DeliveryState.PUSH_DISABLED, []

    subscriptions = await db.list_push_subscriptions(s, reminder.tenant_id)
    if not subscriptions:
        _LOGGER.info("No push subscription found for tenant_id=%s", reminder.tenant_id)
        return DeliveryState.NO_SUBSCRIPTION, []

    return None, [sub.subscription_info() for sub in subscriptions]


async def _deliver(targets: list[dict], body: str) -> DeliveryState:
    outcome = await push.fan_out(targets, body)
    if any(failure is None for failure in outcome):
        return DeliveryState.DELIVERED
    return DeliveryState.FAILED


async def _dispatch_one(rid: str, now: datetime) -> bool:
    # no session is held while the transport runs
    async with db.session_scope() as s:
        reminder = await s.get(db.Reminder, rid)
        if reminder is None or ReminderStatus(reminder.status) not in DISPATCHABLE_STATUSES:
            return False
        state, targets = await _plan_delivery(s, reminder)
        body = build_payload(reminder).to_json()

    if state is None:
        state = await _deliver(targets, body)

    async with db.session_scope() as s:
        reminder = await s.get(db.Reminder, rid)
        if reminder is None or ReminderStatus(reminder.status) not in DISPATCHABLE_STATUSES:
            _LOGGER.info("Reminder %s changed during delivery; leaving status as is", rid)
            return False
        reminder.status = ReminderStatus.SENT.value
        reminder.sent_at = now
        reminder.delivery_state = state.value
        reminder.log(InteractionAction.SENT.value, now, {"deliveryState": state.value})
        await s.commit()

    if state is DeliveryState.DEGRADED:
        _LOGGER.warning("Reminder %s marked sent without delivery (push transport not configured)", rid)
    return True


async def dispatch_due_reminders(now: datetime, report: TickReport) -> None:
    window_start = now - timedelta(minutes=settings.DISPATCH_WINDOW_MINUTES)
    async with db.session_scope() as s:
        res = await s.execute(
            select(db.Reminder.id)
            .where(
                db.Reminder.scheduled_for >= window_start,
                db.Reminder.scheduled_for <= now,
                db.Reminder.status.in_([st.value for st in DISPATCHABLE_STATUSES]),
            )
            .order_by(db.Reminder.scheduled_for)
            .limit(_batch_size())
        )
        reminder_ids = list(res.scalars())

    for rid in reminder_ids:
        try:
            if await _dispatch_one(rid, now):
                report.dispatched += 1
        except Exception as exc:  # noqa: BLE001
            report.errors += 1
            _LOGGER.error("Dispatch failed reminder_id=%s: %s", rid, exc)


# ──────────────────────────────────────────────────────────────────────────
# Retention sweep
# ──────────────────────────────────────────────────────────────────────────

async def clean_up_resolved_reminders(now: datetime, report: TickReport) -> None:
    async with db.session_scope() as s:
        swept = await db.dismiss_where(
            s, [ReminderStatus.SENT.value], now - timedelta(hours=settings.SENT_RETENTION_HOURS)
        )
        reclaimed = await db.dismiss_where(
            s,
            [st.value for st in DISPATCHABLE_STATUSES],
            now - timedelta(hours=settings.STALE_RECLAIM_HOURS),
        )
        await s.commit()
    report.swept += len(swept)
    report.reclaimed += len(reclaimed)
    if reclaimed:
        _LOGGER.info("Reclaimed %d stale undispatched reminders", len(reclaimed))


async def run_tick(now: datetime | None = None) -> TickReport:
    now = db.as_utc(now) if now else db.utcnow()
    report = TickReport()
    await schedule_deadline_reminders(now, report)
    await schedule_inactivity_reminders(now, report)
    await schedule_behavioural_reminders(now, report)
    await auto_complete_finished_assignments(now, report)
    await dispatch_due_reminders(now, report)
    await clean_up_resolved_reminders(now, report)
    _LOGGER.info("Reminder tick finished: %s", report.as_dict())
    return report


# ──────────────────────────────────────────────────────────────────────────
# Interactions
# ──────────────────────────────────────────────────────────────────────────

def _parse_when(value: Any, label: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise InvalidAction(f"Invalid date provided for {label}")
    return db.as_utc(parsed)


def resolve_snooze(metadata: Optional[Dict[str, Any]], preference: db.ReminderPreference | None, acted_at: datetime) -> datetime:
    metadata = metadata or {}
    if metadata.get("snoozedUntil"):
        return _parse_when(metadata["snoozedUntil"], "snoozedUntil")
    minutes = metadata.get("snoozeMinutes")
    if minutes is None:
        durations = (preference.snooze_durations_minutes if preference else None) or [10]
        minutes = durations[0]
    try:
        minutes = int(minutes)
    except (TypeError, ValueError):
        raise InvalidAction("snoozeMinutes must be an integer")
    if minutes <= 0:
        raise InvalidAction("snoozeMinutes must be positive")
    return acted_at + timedelta(minutes=minutes)


def _apply_transition(
    reminder: db.Reminder,
    action: InteractionAction,
    acted_at: datetime,
    snoozed_until: datetime | None = None,
) -> bool:
    current = ReminderStatus(reminder.status)
    if current in TERMINAL_STATUSES:
        _LOGGER.info("Reminder %s is %s; %s recorded without a transition", reminder.id, current.value, action.value)
        return False

    if action is InteractionAction.DELIVERED:
        target = ReminderStatus.SENT
    elif action is InteractionAction.SNOOZED:
        target = ReminderStatus.SNOOZED
    elif action is InteractionAction.DISMISSED:
        target = ReminderStatus.DISMISSED
    else:
        target = ReminderStatus.COMPLETED

    if not can_transition(current.value, target.value):
        return False

    reminder.status = target.value
    if action is InteractionAction.DELIVERED:
        reminder.delivered_at = acted_at
    elif action is InteractionAction.SNOOZED:
        reminder.snoozed_until = snoozed_until
        reminder.scheduled_for = snoozed_until
    elif action is InteractionAction.COMPLETED:
        reminder.completion_logged_at = acted_at
    return True


async def log_reminder_interaction(
    reminder_id: str,
    action: Any,
    metadata: Optional[Dict[str, Any]] = None,
    now: datetime | None = None,
) -> db.Reminder:
    """Record a client interaction, apply its transition and learn from it.

    The interaction row, the status change and the analytics update commit
    together; an analytics failure is logged and does not block the rest.
    """
    parsed = parse_action(action)
    acted_at = db.as_utc(now) if now else db.utcnow()

    async with db.session_scope() as s:
        reminder = await s.get(db.Reminder, reminder_id)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        preference = await s.get(db.ReminderPreference, reminder.tenant_id)

        details = _jsonable(metadata)
        snoozed_until = None
        if parsed is InteractionAction.SNOOZED:
            snoozed_until = resolve_snooze(metadata, preference, acted_at)
            details = {**(details or {}), "snoozedUntil": snoozed_until.isoformat()}

        reminder.log(parsed.value, acted_at, details)
        _apply_transition(reminder, parsed, acted_at, snoozed_until)

        await prediction_engine.update_analytics_with_interaction(
            s,
            reminder=reminder,
            action=parsed.value,
            acted_at=acted_at,
            tz=prediction_engine.tz_for(preference.timezone if preference else None),
        )
        await s.commit()
        return reminder


async def acknowledge_reminder(reminder_id: str, now: datetime | None = None) -> db.Reminder:
    """Client confirmed the notification arrived. Safe to call repeatedly."""
    acted_at = db.as_utc(now) if now else db.utcnow()
    async with db.session_scope() as s:
        reminder = await s.get(db.Reminder, reminder_id)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        reminder.log(InteractionAction.DELIVERED.value, acted_at)
        _apply_transition(reminder, InteractionAction.DELIVERED, acted_at)
        await s.commit()
        return reminder
