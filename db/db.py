"""
Async DB helpers for the reminder engine.
Uses SQLAlchemy 2.0 + asyncpg driver (aiosqlite under tests) – no raw SQL
strings in app code beyond the live-status index predicate.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Sequence
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    delete, select, text, update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, relationship
)
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from sqlalchemy.pool import StaticPool

from app.types.reminder_contract import (
    LIVE_STATUSES, QuietHours, ReminderCandidate, ReminderStatus,
)
from config import settings

UTC = timezone.utc

# Partial-index predicate shared by the DDL and the upsert conflict target;
# both must render identically for ON CONFLICT to match the index.
LIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(LIVE_STATUSES, key=lambda s: s.value))
)

DEFAULT_PREFERRED_HOUR = 18
DEFAULT_LEAD_MINUTES = 180
DEFAULT_INACTIVITY_THRESHOLD_HOURS = 72
DEFAULT_COMPLETION_LEAD_HOURS = 6.0


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        return url
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        url = _build_url()
        if url.startswith("sqlite"):
            # one shared connection so in-memory databases survive across sessions
            _engine = create_async_engine(
                url, poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine

def _get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_maker

def get_session() -> AsyncGenerator[AsyncSession, None]:
    maker = _get_session_maker()
    async def _session_scope():
        async with maker() as session:
            yield session
    return _session_scope()

@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Context-managed session for callers that may raise or return early."""
    async with _get_session_maker()() as session:
        yield session

def dialect_name() -> str:
    return get_engine().dialect.name

def _insert(model):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    if dialect_name() == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index(
            "uq_reminders_live_dedup_key",
            "tenant_id", "type", "foreign_id",
            unique=True,
            postgresql_where=text(LIVE_STATUS_SQL),
            sqlite_where=text(LIVE_STATUS_SQL),
        ),
        Index("ix_reminders_status_scheduled_for", "status", "scheduled_for"),
    )

    id:                   Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id:            Mapped[str] = mapped_column(String(128), index=True)
    type:                 Mapped[str] = mapped_column(String(16))
    foreign_id:           Mapped[str] = mapped_column(String(128))
    title:                Mapped[str] = mapped_column(Text)
    message:              Mapped[str] = mapped_column(Text)
    channel:              Mapped[str] = mapped_column(String(16), default="push")
    scheduled_for:        Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    snoozed_until:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status:               Mapped[str] = mapped_column(String(16), default=ReminderStatus.SCHEDULED.value)
    sent_at:              Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at:         Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completion_logged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivery_state:       Mapped[str | None] = mapped_column(String(32))
    # encrypted blob; `metadata` is reserved on declarative classes
    payload_metadata:     Mapped[str | None] = mapped_column(Text)
    created_at:           Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:           Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    interactions: Mapped[list["ReminderInteraction"]] = relationship(
        back_populates="reminder",
        order_by="ReminderInteraction.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_live(self) -> bool:
        return ReminderStatus(self.status) in LIVE_STATUSES

    def log(self, action: str, acted_at: datetime, details: dict[str, Any] | None = None) -> "ReminderInteraction":
        entry = ReminderInteraction(action=action, acted_at=acted_at, details=details)
        self.interactions.append(entry)
        return entry


class ReminderInteraction(Base):
    """Append-only audit row; never updated or deleted by the engine."""

    __tablename__ = "reminder_interactions"

    id:          Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reminder_id: Mapped[str] = mapped_column(ForeignKey("reminders.id", ondelete="CASCADE"), index=True)
    action:      Mapped[str] = mapped_column(String(32))
    acted_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True))
    details:     Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    reminder: Mapped[Reminder] = relationship(back_populates="interactions")


class ReminderPreference(Base):
    __tablename__ = "reminder_preferences"

    tenant_id:                  Mapped[str] = mapped_column(String(128), primary_key=True)
    timezone:                   Mapped[str] = mapped_column(String(64), default=lambda: settings.DEFAULT_TIMEZONE)
    default_lead_minutes:       Mapped[int | None] = mapped_column(Integer, default=DEFAULT_LEAD_MINUTES)
    inactivity_threshold_hours: Mapped[int] = mapped_column(Integer, default=DEFAULT_INACTIVITY_THRESHOLD_HOURS)
    behaviour_lookback_days:    Mapped[int] = mapped_column(Integer, default=30)
    quiet_start_hour:           Mapped[int] = mapped_column(Integer, default=0)
    quiet_end_hour:             Mapped[int] = mapped_column(Integer, default=0)
    preferred_weekdays:         Mapped[list[int]] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5])
    snooze_durations_minutes:   Mapped[list[int]] = mapped_column(JSON, default=lambda: [10, 30, 60])
    smart_reminders_enabled:    Mapped[bool] = mapped_column(Boolean, default=True)
    push_enabled:               Mapped[bool] = mapped_column(Boolean, default=True)
    created_at:                 Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:                 Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @classmethod
    def fresh(cls, tenant_id: str) -> "ReminderPreference":
        return cls(
            tenant_id=tenant_id,
            timezone=settings.DEFAULT_TIMEZONE,
            default_lead_minutes=DEFAULT_LEAD_MINUTES,
            inactivity_threshold_hours=DEFAULT_INACTIVITY_THRESHOLD_HOURS,
            behaviour_lookback_days=30,
            quiet_start_hour=0,
            quiet_end_hour=0,
            preferred_weekdays=[1, 2, 3, 4, 5],
            snooze_durations_minutes=[10, 30, 60],
            smart_reminders_enabled=True,
            push_enabled=True,
        )

    @property
    def quiet_hours(self) -> QuietHours:
        return QuietHours(start_hour=self.quiet_start_hour or 0, end_hour=self.quiet_end_hour or 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "timezone": self.timezone,
            "defaultLeadMinutes": self.default_lead_minutes,
            "inactivityThresholdHours": self.inactivity_threshold_hours,
            "behaviourLookbackDays": self.behaviour_lookback_days,
            "quietHours": {"startHour": self.quiet_start_hour, "endHour": self.quiet_end_hour},
            "preferredWeekdays": list(self.preferred_weekdays or []),
            "snoozeDurationsMinutes": list(self.snooze_durations_minutes or []),
            "smartRemindersEnabled": self.smart_reminders_enabled,
            "pushEnabled": self.push_enabled,
        }


class ReminderAnalytics(Base):
    __tablename__ = "reminder_analytics"

    tenant_id:                     Mapped[str] = mapped_column(String(128), primary_key=True)
    preferred_hour_of_day:         Mapped[int] = mapped_column(Integer, default=DEFAULT_PREFERRED_HOUR)
    preferred_day_of_week:         Mapped[int] = mapped_column(Integer, default=1)
    average_completion_lead_hours: Mapped[float] = mapped_column(Float, default=DEFAULT_COMPLETION_LEAD_HOURS)
    average_inactivity_hours:      Mapped[float] = mapped_column(Float, default=96.0)
    sample_size:                   Mapped[int] = mapped_column(Integer, default=0)
    last_computed_at:              Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @classmethod
    def fresh(cls, tenant_id: str) -> "ReminderAnalytics":
        return cls(
            tenant_id=tenant_id,
            preferred_hour_of_day=DEFAULT_PREFERRED_HOUR,
            preferred_day_of_week=1,
            average_completion_lead_hours=DEFAULT_COMPLETION_LEAD_HOURS,
            average_inactivity_hours=96.0,
            sample_size=0,
        )

    def to_dict(self) -> dict[str, Any]:
        last = as_utc(self.last_computed_at)
        return {
            "tenantId": self.tenant_id,
            "preferredHourOfDay": self.preferred_hour_of_day,
            "preferredDayOfWeek": self.preferred_day_of_week,
            "averageCompletionLeadHours": self.average_completion_lead_hours,
            "averageInactivityHours": self.average_inactivity_hours,
            "sampleSize": self.sample_size,
            "lastComputedAt": last.isoformat() if last else None,
        }


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id:         Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id:  Mapped[str] = mapped_column(String(128), index=True)
    endpoint:   Mapped[str] = mapped_column(Text, unique=True)
    p256dh:     Mapped[str] = mapped_column(Text)
    auth:       Mapped[str] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def subscription_info(self) -> dict[str, Any]:
        """Shape expected by the Web Push transport."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


# Collaborator tables: owned by the planner CRUD side, read-only here.

class Account(Base):
    __tablename__ = "accounts"

    id:               Mapped[str] = mapped_column(String(128), primary_key=True)
    last_login_at:    Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reminder_opt_out: Mapped[bool] = mapped_column(Boolean, default=False)


class Assignment(Base):
    __tablename__ = "assignments"

    id:        Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), index=True)
    title:     Mapped[str] = mapped_column(Text)
    due_date:  Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    progress:  Mapped[int] = mapped_column(Integer, default=0)

    @property
    def is_complete(self) -> bool:
        return (self.progress or 0) >= 100


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. CRUD helpers
# ──────────────────────────────────────────────────────────────────────

# 5.1 Dedup upsert -----------------------------------------------------
async def upsert_live_reminder(
    s: AsyncSession,
    candidate: ReminderCandidate,
    metadata_blob: str | None,
    now: datetime | None = None,
) -> tuple[str, bool]:
    """Insert the candidate unless a live reminder owns its dedup key.

    On conflict with the live partial unique index the existing row's
    ``scheduled_for`` moves to the candidate time, but only while that row
    is still pending (``scheduled``/``queued``) and not yet due. Due rows
    wait for the dispatcher; ``sent``/``snoozed`` rows keep the time the
    dispatcher or the tenant gave them. Returns ``(reminder_id, created)``.
    """
    new_id = str(uuid4())
    now = as_utc(now) if now else utcnow()
    stmt = _insert(Reminder).values(
        id=new_id,
        tenant_id=candidate.tenant_id,
        type=candidate.type.value,
        foreign_id=candidate.foreign_id,
        title=candidate.title,
        message=candidate.message,
        channel="push",
        scheduled_for=as_utc(candidate.scheduled_for),
        status=ReminderStatus.SCHEDULED.value,
        payload_metadata=metadata_blob,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "type", "foreign_id"],
        index_where=text(LIVE_STATUS_SQL),
        set_={"scheduled_for": stmt.excluded.scheduled_for, "updated_at": now},
        where=(
            Reminder.status.in_([ReminderStatus.SCHEDULED.value, ReminderStatus.QUEUED.value])
            & (Reminder.scheduled_for > now)
        ),
    ).returning(Reminder.id)
    res = await s.execute(stmt)
    rid = res.scalar_one_or_none()
    if rid is None:
        # conflict hit a row the WHERE left alone; nothing is returned for it
        rid = (await s.execute(
            select(Reminder.id).where(
                Reminder.tenant_id == candidate.tenant_id,
                Reminder.type == candidate.type.value,
                Reminder.foreign_id == candidate.foreign_id,
                Reminder.status.in_([st.value for st in LIVE_STATUSES]),
            )
        )).scalar_one()
    return rid, rid == new_id


# 5.2 Preferences ------------------------------------------------------
async def get_or_create_preference(s: AsyncSession, tenant_id: str) -> ReminderPreference:
    pref = await s.get(ReminderPreference, tenant_id)
    if pref is not None:
        return pref
    defaults = ReminderPreference.fresh(tenant_id)
    values = {c.key: getattr(defaults, c.key) for c in ReminderPreference.__table__.columns
              if getattr(defaults, c.key, None) is not None}
    values["created_at"] = values["updated_at"] = utcnow()
    await s.execute(_insert(ReminderPreference).values(**values).on_conflict_do_nothing(
        index_elements=["tenant_id"]
    ))
    return (await s.execute(
        select(ReminderPreference).where(ReminderPreference.tenant_id == tenant_id)
    )).scalar_one()


async def update_preference(tenant_id: str, changes: dict[str, Any]) -> dict[str, Any]:
    async for s in get_session():
        pref = await get_or_create_preference(s, tenant_id)
        for key, value in changes.items():
            setattr(pref, key, value)
        await s.commit()
        data = pref.to_dict()
    return data


async def read_preference(tenant_id: str) -> dict[str, Any]:
    async for s in get_session():
        pref = await get_or_create_preference(s, tenant_id)
        await s.commit()
        data = pref.to_dict()
    return data


# 5.3 Analytics --------------------------------------------------------
async def read_analytics(tenant_id: str) -> dict[str, Any] | None:
    async for s in get_session():
        row = await s.get(ReminderAnalytics, tenant_id)
        data = row.to_dict() if row else None
    return data


# 5.4 Reminder reads ---------------------------------------------------
async def list_live_reminders(
    tenant_id: str,
    start: datetime,
    end: datetime | None = None,
    limit: int = 50,
) -> list[Reminder]:
    async for s in get_session():
        stmt = select(Reminder).where(
            Reminder.tenant_id == tenant_id,
            Reminder.status.in_([st.value for st in LIVE_STATUSES]),
            Reminder.scheduled_for >= start,
        )
        if end:
            stmt = stmt.where(Reminder.scheduled_for <= end)
        stmt = stmt.order_by(Reminder.scheduled_for).limit(limit)
        res = await s.execute(stmt)
        rows = list(res.scalars())
    return rows


async def list_reminder_history(tenant_id: str, start: datetime, limit: int = 100) -> list[Reminder]:
    async for s in get_session():
        stmt = (
            select(Reminder)
            .where(Reminder.tenant_id == tenant_id, Reminder.scheduled_for >= start)
            .order_by(Reminder.scheduled_for.desc())
            .limit(limit)
        )
        res = await s.execute(stmt)
        rows = list(res.scalars())
    return rows


async def get_reminder(reminder_id: str) -> Reminder | None:
    async for s in get_session():
        reminder = await s.get(Reminder, reminder_id)
    return reminder


# 5.5 Push subscriptions -----------------------------------------------
async def upsert_push_subscription(
    tenant_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: str | None = None,
) -> PushSubscription:
    now = utcnow()
    stmt = _insert(PushSubscription).values(
        tenant_id=tenant_id, endpoint=endpoint, p256dh=p256dh, auth=auth,
        user_agent=user_agent, created_at=now, updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["endpoint"],
        set_={
            "tenant_id": stmt.excluded.tenant_id,
            "p256dh": stmt.excluded.p256dh,
            "auth": stmt.excluded.auth,
            "user_agent": stmt.excluded.user_agent,
            "updated_at": now,
        },
    ).returning(PushSubscription.id)
    async for s in get_session():
        sid = (await s.execute(stmt)).scalar_one()
        await s.commit()
        sub = await s.get(PushSubscription, sid, populate_existing=True)
    return sub


async def delete_push_subscription(endpoint: str, tenant_id: str | None = None) -> int:
    async for s in get_session():
        stmt = delete(PushSubscription).where(PushSubscription.endpoint == endpoint)
        if tenant_id:
            stmt = stmt.where(PushSubscription.tenant_id == tenant_id)
        res = await s.execute(stmt)
        await s.commit()
        removed = res.rowcount or 0
    return removed


async def list_push_subscriptions(s: AsyncSession, tenant_id: str) -> Sequence[PushSubscription]:
    res = await s.execute(select(PushSubscription).where(PushSubscription.tenant_id == tenant_id))
    return res.scalars().all()


# 5.6 Bulk transitions -------------------------------------------------
async def dismiss_where(s: AsyncSession, statuses: Sequence[str], older_than: datetime) -> list[str]:
    """Move matching reminders to ``dismissed``; returns the affected ids."""
    res = await s.execute(
        update(Reminder)
        .where(Reminder.status.in_(list(statuses)), Reminder.scheduled_for < older_than)
        .values(status=ReminderStatus.DISMISSED.value, updated_at=utcnow())
        .returning(Reminder.id)
    )
    return list(res.scalars())


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_maker = None
