"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A app.celery_app worker -Q reminder -l info --concurrency=2
    celery -A app.celery_app beat -l info
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("reminder_engine", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.reminder.run_tick": {"queue": "reminder"},
}

# Beat schedule: one reminder tick every REMINDER_TICK_SECONDS (5 min by default)
celery_app.conf.beat_schedule = {
    "reminder-tick": {
        "task": "app.workers.reminder.run_tick",
        "schedule": settings.REMINDER_TICK_SECONDS,
    }
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
