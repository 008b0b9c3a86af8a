"""Exceptions raised by the reminder engine.

Only ``ReminderNotFound`` and ``InvalidAction`` ever reach a caller; the
others are raised and caught per item inside a tick and end up in the log.
"""


class ReminderError(Exception):
    pass


class ReminderNotFound(ReminderError):
    pass


class InvalidAction(ReminderError):
    pass


class TransportFailure(ReminderError):
    """A single push subscription refused or failed to accept a payload."""

    def __init__(self, endpoint: str, reason: str, status_code: int | None = None):
        super().__init__(f"push to {endpoint} failed: {reason}")
        self.endpoint = endpoint
        self.reason = reason
        self.status_code = status_code


class CryptoFailure(ReminderError):
    pass
