"""Fernet helpers for the opaque reminder ``metadata`` blob.

Without a usable ``REMINDER_ENCRYPTION_KEY`` the blob is plain JSON; reads
accept both forms so switching the key on later does not strand old rows.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from app.errors import CryptoFailure
from config import get_capabilities, settings

_LOGGER = logging.getLogger(__name__)

# version byte 0x80 plus the high bytes of the timestamp, base64url encoded
FERNET_TOKEN_PREFIX = "gAAAAA"


def _fernet() -> Fernet | None:
    if not get_capabilities().encryption:
        return None
    return Fernet(settings.REMINDER_ENCRYPTION_KEY)


def encrypt(payload: Any) -> str | None:
    if payload is None:
        return None
    serialized = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    f = _fernet()
    if f is None:
        return serialized
    return f.encrypt(serialized.encode("utf-8")).decode("ascii")


def _loads(plaintext: str) -> Any:
    try:
        return json.loads(plaintext)
    except ValueError:
        return plaintext


def decrypt(token: str | None) -> Any:
    """Raises ``CryptoFailure`` when a token cannot be opened with the current key."""
    if not token:
        return None
    f = _fernet()
    if f is None or not token.startswith(FERNET_TOKEN_PREFIX):
        # plain JSON written while encryption was off
        return _loads(token)
    try:
        plaintext = f.decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as exc:
        raise CryptoFailure("reminder metadata could not be decrypted") from exc
    return _loads(plaintext)


def safe_decrypt(token: str | None, reminder_id: str | None = None) -> Any:
    try:
        return decrypt(token)
    except CryptoFailure as exc:
        _LOGGER.warning("Failed to decrypt reminder metadata reminder_id=%s: %s", reminder_id, exc)
        return None
