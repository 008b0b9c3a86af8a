import asyncio
import logging
from typing import Iterable

from pywebpush import WebPushException, webpush

from app.errors import TransportFailure
from config import get_capabilities, settings

_LOGGER = logging.getLogger(__name__)


def send_push(subscription_info: dict, body: str) -> None:
    """Hand one payload to one subscription endpoint. Raises ``TransportFailure``."""
    endpoint = subscription_info.get("endpoint", "?")
    if not get_capabilities().push:
        _LOGGER.debug("[Push] DEV mode: would send to %s: %s", endpoint, body)
        return
    try:
        webpush(
            subscription_info=subscription_info,
            data=body,
            vapid_private_key=settings.WEB_PUSH_VAPID_PRIVATE_KEY,
            # webpush mutates the claims dict (aud/exp), so never share it
            vapid_claims={"sub": settings.WEB_PUSH_CONTACT},
            timeout=settings.WEB_PUSH_TIMEOUT,
        )
    except WebPushException as exc:
        status = getattr(exc.response, "status_code", None)
        raise TransportFailure(endpoint, str(exc), status) from exc
    except Exception as exc:  # noqa: BLE001
        raise TransportFailure(endpoint, repr(exc)) from exc


async def fan_out(subscriptions: Iterable[dict], body: str) -> list[TransportFailure | None]:
    """Send to every subscription concurrently and wait for all of them.

    One slot per subscription: ``None`` on success, the failure otherwise.
    """
    subs = list(subscriptions)
    results = await asyncio.gather(
        *(asyncio.to_thread(send_push, sub, body) for sub in subs),
        return_exceptions=True,
    )
    outcome: list[TransportFailure | None] = []
    for sub, res in zip(subs, results):
        if isinstance(res, TransportFailure):
            _LOGGER.error("Failed to send push notification endpoint=%s: %s", res.endpoint, res.reason)
            outcome.append(res)
        elif isinstance(res, BaseException):
            failure = TransportFailure(sub.get("endpoint", "?"), repr(res))
            _LOGGER.error("Failed to send push notification endpoint=%s: %r", failure.endpoint, res)
            outcome.append(failure)
        else:
            outcome.append(None)
    return outcome
