"""Timing model for reminders.

``suggest_schedule`` and ``compute_inactivity_schedule`` place a reminder on
the tenant's preferred hour while respecting quiet hours; the smoothing
helpers learn that preferred hour (and the typical completion lead) from
recorded interactions. All wall-clock reasoning happens in the tenant's
timezone, all returned datetimes are UTC.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from app.types.reminder_contract import InteractionAction, QuietHours
from config import settings
from db.db import (
    DEFAULT_COMPLETION_LEAD_HOURS, DEFAULT_PREFERRED_HOUR, UTC,
    Reminder, ReminderAnalytics, ReminderPreference, as_utc, utcnow,
)

_LOGGER = logging.getLogger(__name__)

SMOOTHING_FACTOR = 0.35
DEFAULT_FALLBACK_MINUTES = 180
MIN_RESCHEDULE_MINUTES = 30


def tz_for(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_hour(hour: float | None) -> int:
    if hour is None or (isinstance(hour, float) and math.isnan(hour)):
        return DEFAULT_PREFERRED_HOUR
    return min(23, max(0, _round_half_up(hour)))


def in_quiet_hours(hour: int, quiet: QuietHours) -> bool:
    if not quiet.enabled:
        return False
    if quiet.start_hour < quiet.end_hour:
        return quiet.start_hour <= hour < quiet.end_hour
    return hour >= quiet.start_hour or hour < quiet.end_hour


def _lead_minutes(preference: ReminderPreference | None, fallback_minutes: float) -> float:
    if preference is not None and preference.default_lead_minutes is not None:
        return preference.default_lead_minutes
    return fallback_minutes


def suggest_schedule(
    *,
    preferred_hour: int,
    due_date: datetime | None,
    preference: ReminderPreference | None,
    fallback_minutes: float = DEFAULT_FALLBACK_MINUTES,
    now: datetime | None = None,
) -> datetime:
    now = as_utc(now) if now else utcnow()
    tz = tz_for(preference.timezone if preference else None)
    quiet = preference.quiet_hours if preference else QuietHours()
    lead = _lead_minutes(preference, fallback_minutes)
    preferred_hour = clamp_hour(preferred_hour)

    anchor = as_utc(due_date) if due_date else now + timedelta(minutes=lead)
    latest = (anchor - timedelta(minutes=lead)).astimezone(tz)
    candidate = latest.replace(hour=preferred_hour, minute=0, second=0, microsecond=0)
    if due_date and candidate > latest:
        # the preferred hour on the lead day is already past the lead point
        candidate -= timedelta(days=1)

    if in_quiet_hours(candidate.hour, quiet):
        candidate = candidate.replace(hour=(quiet.end_hour + 1) % 24)
        if in_quiet_hours(candidate.hour, quiet):
            candidate = candidate.replace(hour=quiet.end_hour)

    candidate = candidate.astimezone(UTC)
    if candidate < now:
        candidate = now + timedelta(minutes=max(MIN_RESCHEDULE_MINUTES, lead / 2))
    return candidate


def compute_inactivity_schedule(
    *,
    preferred_hour: int,
    last_login_at: datetime | None,
    preference: ReminderPreference | None,
    now: datetime | None = None,
) -> datetime:
    """Last login plus the inactivity threshold, snapped to the preferred hour.

    The result may lie in the past; the caller decides whether to skip it.
    """
    now = as_utc(now) if now else utcnow()
    tz = tz_for(preference.timezone if preference else None)
    threshold = (preference.inactivity_threshold_hours if preference else None) or 72
    base = (as_utc(last_login_at) or now) + timedelta(hours=threshold)
    local = base.astimezone(tz).replace(hour=clamp_hour(preferred_hour), minute=0, second=0, microsecond=0)
    return local.astimezone(UTC)


async def calculate_preferred_hour(s: AsyncSession, tenant_id: str) -> int:
    try:
        analytics = await s.get(ReminderAnalytics, tenant_id)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Failed to compute preferred hour tenant_id=%s: %s", tenant_id, exc)
        return DEFAULT_PREFERRED_HOUR
    if analytics is None:
        return DEFAULT_PREFERRED_HOUR
    return clamp_hour(analytics.preferred_hour_of_day)


# ──────────────────────────────────────────────────────────────────────────
# Learning
# ──────────────────────────────────────────────────────────────────────────

def smooth(previous: float, observation: float, alpha: float = SMOOTHING_FACTOR) -> float:
    return alpha * observation + (1 - alpha) * previous


def js_weekday(value: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return value.isoweekday() % 7


def apply_interaction(
    analytics: ReminderAnalytics,
    *,
    scheduled_for: datetime | None,
    action: str,
    acted_at: datetime,
    tz: ZoneInfo,
    now: datetime | None = None,
) -> ReminderAnalytics:
    acted_at = as_utc(acted_at)
    if scheduled_for is not None:
        scheduled_for = as_utc(scheduled_for)
        previous_hour = analytics.preferred_hour_of_day
        if previous_hour is None:
            previous_hour = DEFAULT_PREFERRED_HOUR
        analytics.preferred_hour_of_day = clamp_hour(smooth(previous_hour, acted_at.astimezone(tz).hour))

        if action == InteractionAction.COMPLETED.value:
            lead_hours = abs((acted_at - scheduled_for).total_seconds()) / 3600
            previous_lead = analytics.average_completion_lead_hours
            if previous_lead is None:
                previous_lead = DEFAULT_COMPLETION_LEAD_HOURS
            analytics.average_completion_lead_hours = max(1.0, smooth(previous_lead, lead_hours))

        analytics.preferred_day_of_week = js_weekday(scheduled_for.astimezone(tz))

    analytics.sample_size = (analytics.sample_size or 0) + 1
    analytics.last_computed_at = as_utc(now) if now else utcnow()
    return analytics


async def update_analytics_with_interaction(
    s: AsyncSession,
    *,
    reminder: Reminder,
    action: str,
    acted_at: datetime,
    tz: ZoneInfo,
) -> bool:
    """Fold one interaction into the tenant's analytics row inside ``s``.

    Never raises: a failure is logged and leaves the row untouched so the
    interaction itself still commits.
    """
    analytics = None
    try:
        with s.no_autoflush:
            analytics = await s.get(ReminderAnalytics, reminder.tenant_id)
            created = analytics is None
            if created:
                analytics = ReminderAnalytics.fresh(reminder.tenant_id)
            apply_interaction(
                analytics,
                scheduled_for=reminder.scheduled_for,
                action=action,
                acted_at=acted_at,
                tz=tz,
            )
            if created:
                s.add(analytics)
        return True
    except Exception as exc:  # noqa: BLE001
        if analytics is not None and analytics in s:
            s.expire(analytics)
        _LOGGER.error("Failed to update reminder analytics tenant_id=%s: %s", reminder.tenant_id, exc)
        return False
