"""Celery task that drives the reminder engine tick."""

from __future__ import annotations

import asyncio
import logging

import redis

from app.celery_app import celery_app
from app.services import reminder_scheduler
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

TICK_LOCK_NAME = "reminder-engine:tick"


def _tick_lock():
    """Cluster-wide lock so only one replica runs a tick at a time."""
    client = redis.Redis.from_url(settings.REDIS_URL)
    return client.lock(TICK_LOCK_NAME, timeout=settings.TICK_LOCK_TIMEOUT, blocking=False)


async def _run_once() -> dict:
    try:
        report = await reminder_scheduler.run_tick()
    finally:
        # each asyncio.run gets a fresh loop; pooled connections must not outlive it
        await db.dispose_engine()
    return report.as_dict()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.run_tick", bind=True)
def run_tick(self):  # noqa: D401
    """Run one generate/dispatch/sweep pass unless another replica holds the lock."""
    lock = _tick_lock()
    if not lock.acquire(blocking=False):
        _LOGGER.info("Reminder tick skipped: another instance holds %s", TICK_LOCK_NAME)
        return {"skipped": True}
    try:
        return asyncio.run(_run_once())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Reminder scheduler failed: %s", exc)
        return {"failed": True, "error": str(exc)}
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            _LOGGER.warning("Reminder tick lock expired before release")
