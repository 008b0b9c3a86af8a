import os

# must be set before config / db are imported by any test module
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

import db
from config import get_capabilities, settings


@pytest.fixture(autouse=True)
def plain_capabilities(monkeypatch):
    """Every test starts with no encryption key and no push credentials."""
    monkeypatch.setattr(settings, "REMINDER_ENCRYPTION_KEY", None)
    monkeypatch.setattr(settings, "WEB_PUSH_VAPID_PUBLIC_KEY", None)
    monkeypatch.setattr(settings, "WEB_PUSH_VAPID_PRIVATE_KEY", None)
    get_capabilities.cache_clear()
    yield
    get_capabilities.cache_clear()


@pytest.fixture
def enable_push(monkeypatch):
    monkeypatch.setattr(settings, "WEB_PUSH_VAPID_PUBLIC_KEY", "BPublicKeyForTests")
    monkeypatch.setattr(settings, "WEB_PUSH_VAPID_PRIVATE_KEY", "private-key-for-tests")
    get_capabilities.cache_clear()
    return get_capabilities()


@pytest.fixture
def enable_encryption(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(settings, "REMINDER_ENCRYPTION_KEY", key)
    get_capabilities.cache_clear()
    return key


@pytest_asyncio.fixture
async def database():
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


def make_reminder(**overrides) -> db.Reminder:
    values = dict(
        id=str(uuid4()),
        tenant_id="tenant-1",
        type="DEADLINE",
        foreign_id="assignment-1",
        title="Upcoming: Essay",
        message="Your essay is due soon.",
        channel="push",
        scheduled_for=datetime(2025, 3, 9, 18, tzinfo=timezone.utc),
        status="scheduled",
    )
    values.update(overrides)
    return db.Reminder(**values)


async def store(*rows) -> None:
    async with db.session_scope() as s:
        s.add_all(rows)
        await s.commit()


async def load_reminder(reminder_id: str) -> db.Reminder:
    async with db.session_scope() as s:
        return await s.get(db.Reminder, reminder_id)
