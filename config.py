import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from cryptography.fernet import Fernet
from dotenv import load_dotenv

load_dotenv()

_LOGGER = logging.getLogger(__name__)


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker + tick lock) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Metadata encryption ---
    REMINDER_ENCRYPTION_KEY = os.environ.get("REMINDER_ENCRYPTION_KEY")

    # --- Web Push (VAPID) ---
    WEB_PUSH_VAPID_PUBLIC_KEY = os.environ.get("WEB_PUSH_VAPID_PUBLIC_KEY")
    WEB_PUSH_VAPID_PRIVATE_KEY = os.environ.get("WEB_PUSH_VAPID_PRIVATE_KEY")
    WEB_PUSH_CONTACT = os.environ.get("WEB_PUSH_CONTACT", "mailto:support@semesterstride.app")
    WEB_PUSH_TIMEOUT = float(os.environ.get("WEB_PUSH_TIMEOUT", "10"))

    # --- Tick tuning ---
    REMINDER_MAX_BATCH_SIZE = int(os.environ.get("REMINDER_MAX_BATCH_SIZE", "100"))
    REMINDER_TICK_SECONDS = float(os.environ.get("REMINDER_TICK_SECONDS", "300"))
    DEADLINE_LOOKAHEAD_HOURS = int(os.environ.get("DEADLINE_LOOKAHEAD_HOURS", "48"))
    DISPATCH_WINDOW_MINUTES = int(os.environ.get("DISPATCH_WINDOW_MINUTES", "5"))
    SENT_RETENTION_HOURS = int(os.environ.get("SENT_RETENTION_HOURS", "24"))
    STALE_RECLAIM_HOURS = int(os.environ.get("STALE_RECLAIM_HOURS", "24"))
    TICK_LOCK_TIMEOUT = int(os.environ.get("TICK_LOCK_TIMEOUT", "240"))

    # --- Misc ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")

settings = Settings()


@dataclass(frozen=True)
class Capabilities:
    """What this process can actually do, decided once at startup.

    ``encryption`` is False when ``REMINDER_ENCRYPTION_KEY`` is missing or
    malformed (metadata is stored as plain JSON). ``push`` is False when the
    VAPID key pair is incomplete (reminders still transition to ``sent`` but
    with ``delivery_state="degraded"``).
    """

    encryption: bool
    push: bool

    @property
    def degraded(self) -> bool:
        return not (self.encryption and self.push)


@lru_cache(maxsize=1)
def get_capabilities() -> Capabilities:
    encryption = False
    key = settings.REMINDER_ENCRYPTION_KEY
    if not key:
        _LOGGER.warning("REMINDER_ENCRYPTION_KEY is not set; reminder metadata will be stored in plain text.")
    else:
        try:
            Fernet(key)
            encryption = True
        except (ValueError, TypeError):
            _LOGGER.error("REMINDER_ENCRYPTION_KEY must be a Fernet key (urlsafe base64 of 32 bytes); storing metadata in plain text.")

    push = bool(settings.WEB_PUSH_VAPID_PUBLIC_KEY and settings.WEB_PUSH_VAPID_PRIVATE_KEY)
    if not push:
        _LOGGER.warning("WEB_PUSH_VAPID_PUBLIC_KEY or WEB_PUSH_VAPID_PRIVATE_KEY not configured. Push delivery disabled.")

    return Capabilities(encryption=encryption, push=push)
