from __future__ import annotations

"""Cron-style entrypoint for a single reminder tick.
Run via a platform schedule every 5 minutes when Celery beat is not deployed:
    python -m app.scripts.run_tick
Only schedule this on one instance; the Celery task takes a Redis lock instead.
"""

import asyncio
import logging

from app.services import reminder_scheduler
from config import settings
import db

_LOGGER = logging.getLogger(__name__)


async def main() -> dict:
    try:
        report = await reminder_scheduler.run_tick()
    finally:
        await db.dispose_engine()
    return report.as_dict()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL)
    _LOGGER.info("[CRON] run_tick: job started")
    try:
        summary = asyncio.run(main())
        _LOGGER.info("[CRON] run_tick: job completed successfully %s", summary)
    except Exception as e:
        _LOGGER.error("[CRON] run_tick: job failed: %s", e)
