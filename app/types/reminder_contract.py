"""Pydantic models and enums that define the contract between the reminder
engine and its collaborators (HTTP routes, workers, push clients).

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.errors import InvalidAction


class ReminderType(str, Enum):
    DEADLINE = "DEADLINE"
    INACTIVITY = "INACTIVITY"
    BEHAVIORAL = "BEHAVIORAL"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    QUEUED = "queued"
    SENT = "sent"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"
    COMPLETED = "completed"


class InteractionAction(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"
    COMPLETED = "completed"
    AUTO_COMPLETED = "auto_completed"


class DeliveryState(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    DEGRADED = "degraded"
    NO_SUBSCRIPTION = "no_subscription"
    PUSH_DISABLED = "push_disabled"


LIVE_STATUSES = frozenset(
    {ReminderStatus.SCHEDULED, ReminderStatus.QUEUED, ReminderStatus.SENT, ReminderStatus.SNOOZED}
)
DISPATCHABLE_STATUSES = frozenset(
    {ReminderStatus.SCHEDULED, ReminderStatus.QUEUED, ReminderStatus.SNOOZED}
)
TERMINAL_STATUSES = frozenset({ReminderStatus.DISMISSED, ReminderStatus.COMPLETED})

# Actions a client may record; sent/auto_completed are engine-only.
CLIENT_ACTIONS = frozenset(
    {
        InteractionAction.DELIVERED,
        InteractionAction.SNOOZED,
        InteractionAction.DISMISSED,
        InteractionAction.COMPLETED,
    }
)

TRANSITIONS: Dict[ReminderStatus, frozenset] = {
    ReminderStatus.SCHEDULED: frozenset(
        {ReminderStatus.QUEUED, ReminderStatus.SENT, ReminderStatus.SNOOZED,
         ReminderStatus.DISMISSED, ReminderStatus.COMPLETED}
    ),
    ReminderStatus.QUEUED: frozenset(
        {ReminderStatus.SENT, ReminderStatus.SNOOZED, ReminderStatus.DISMISSED, ReminderStatus.COMPLETED}
    ),
    ReminderStatus.SENT: frozenset(
        {ReminderStatus.SENT, ReminderStatus.SNOOZED, ReminderStatus.DISMISSED, ReminderStatus.COMPLETED}
    ),
    ReminderStatus.SNOOZED: frozenset(
        {ReminderStatus.SENT, ReminderStatus.SNOOZED, ReminderStatus.DISMISSED, ReminderStatus.COMPLETED}
    ),
    ReminderStatus.DISMISSED: frozenset(),
    ReminderStatus.COMPLETED: frozenset(),
}

# `queued` is reserved: generators never produce it, but it is reachable
# from `scheduled` for pre-dispatch staging.


def can_transition(current: str, target: str) -> bool:
    return ReminderStatus(target) in TRANSITIONS[ReminderStatus(current)]


def parse_action(value: Any) -> InteractionAction:
    """Validate a client-supplied action string.

    Raises ``InvalidAction`` for anything outside the client allow-list.
    """
    try:
        action = InteractionAction(value)
    except ValueError:
        raise InvalidAction(f"Invalid interaction action: {value!r}")
    if action not in CLIENT_ACTIONS:
        raise InvalidAction(f"Invalid interaction action: {value!r}")
    return action


# ──────────────────────────────
# Requests
# ──────────────────────────────


class InteractionRequest(BaseModel):
    action: str
    metadata: Optional[Dict[str, Any]] = None


class QuietHours(BaseModel):
    """Quiet window in local hours; ``start_hour == end_hour`` disables it."""

    model_config = ConfigDict(populate_by_name=True)

    start_hour: int = Field(0, ge=0, le=23, alias="startHour")
    end_hour: int = Field(0, ge=0, le=23, alias="endHour")

    @property
    def enabled(self) -> bool:
        return self.start_hour != self.end_hour


class PreferenceUpdate(BaseModel):
    """Tenant-editable preference fields. Anything else in the body is ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    timezone: Optional[str] = None
    default_lead_minutes: Optional[int] = Field(None, ge=0, alias="defaultLeadMinutes")
    inactivity_threshold_hours: Optional[int] = Field(None, ge=1, alias="inactivityThresholdHours")
    behaviour_lookback_days: Optional[int] = Field(None, ge=1, alias="behaviourLookbackDays")
    quiet_hours: Optional[QuietHours] = Field(None, alias="quietHours")
    preferred_weekdays: Optional[List[int]] = Field(None, alias="preferredWeekdays")
    snooze_durations_minutes: Optional[List[int]] = Field(None, alias="snoozeDurationsMinutes")
    smart_reminders_enabled: Optional[bool] = Field(None, alias="smartRemindersEnabled")
    push_enabled: Optional[bool] = Field(None, alias="pushEnabled")

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        if v is None:
            return v
        try:
            from zoneinfo import ZoneInfo
            ZoneInfo(v)
        except Exception:
            raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
        return v

    @field_validator("preferred_weekdays")
    def _validate_weekdays(cls, v):  # noqa: N805
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("preferredWeekdays must be between 0 (Sunday) and 6 (Saturday)")
        return v

    @field_validator("snooze_durations_minutes")
    def _validate_snoozes(cls, v):  # noqa: N805
        if v is not None and any(m <= 0 for m in v):
            raise ValueError("snoozeDurationsMinutes must be positive")
        return v

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, exclude_none=True, exclude={"tenant_id"})
        if "quiet_hours" in data:
            data["quiet_start_hour"] = data["quiet_hours"]["start_hour"]
            data["quiet_end_hour"] = data["quiet_hours"]["end_hour"]
        data.pop("quiet_hours", None)
        return data


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    endpoint: str
    keys: PushKeys
    user_agent: Optional[str] = Field(None, alias="userAgent")

    @field_validator("tenant_id", "endpoint")
    def _non_empty(cls, v):  # noqa: N805
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class PushSubscriptionDelete(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    endpoint: str
    tenant_id: Optional[str] = Field(None, alias="tenantId")


# ──────────────────────────────
# Wire format
# ──────────────────────────────

SNOOZE_OPTIONS = [10, 30, 60]


class PushData(BaseModel):
    reminder_id: str = Field(serialization_alias="reminderId")
    type: ReminderType
    scheduled_for: datetime = Field(serialization_alias="scheduledFor")
    snooze_options: List[int] = Field(default_factory=lambda: list(SNOOZE_OPTIONS), serialization_alias="snoozeOptions")


class PushPayload(BaseModel):
    """Body handed to the Web Push transport for one reminder."""

    title: str
    body: str
    data: PushData

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ──────────────────────────────
# Candidates
# ──────────────────────────────


class ReminderCandidate(BaseModel):
    """A generator's proposal, submitted through the dedup upsert."""

    tenant_id: str
    type: ReminderType
    foreign_id: str
    scheduled_for: datetime
    title: str
    message: str
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _aware(self):  # noqa: N805
        if self.scheduled_for.tzinfo is None:
            raise ValueError("scheduled_for must be timezone-aware")
        return self
