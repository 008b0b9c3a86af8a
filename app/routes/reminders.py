from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from app.errors import InvalidAction, ReminderNotFound
from app.services import reminder_scheduler
from app.types.reminder_contract import (
    InteractionRequest, PreferenceUpdate, PushSubscriptionDelete, PushSubscriptionIn,
)
from app.utils.crypto import safe_decrypt
from config import get_capabilities, settings
import db

MAX_REMINDER_LIMIT = 100

router = APIRouter(prefix="/v1/reminders", tags=["reminders"])


def _iso(value: datetime | None) -> str | None:
    value = db.as_utc(value)
    return value.isoformat() if value else None


def sanitize_reminder(reminder: db.Reminder) -> dict[str, Any]:
    return {
        "id": reminder.id,
        "tenantId": reminder.tenant_id,
        "type": reminder.type,
        "foreignId": reminder.foreign_id,
        "title": reminder.title,
        "message": reminder.message,
        "channel": reminder.channel,
        "status": reminder.status,
        "deliveryState": reminder.delivery_state,
        "scheduledFor": _iso(reminder.scheduled_for),
        "snoozedUntil": _iso(reminder.snoozed_until),
        "sentAt": _iso(reminder.sent_at),
        "deliveredAt": _iso(reminder.delivered_at),
        "completionLoggedAt": _iso(reminder.completion_logged_at),
        "metadata": safe_decrypt(reminder.payload_metadata, reminder.id),
        "interactions": [
            {"action": i.action, "actedAt": _iso(i.acted_at), "metadata": i.details}
            for i in reminder.interactions
        ],
    }


@router.get("")
async def list_reminders(
    tenant_id: str = Query(..., alias="tenantId"),
    window_start: Optional[datetime] = Query(None, alias="windowStart"),
    window_end: Optional[datetime] = Query(None, alias="windowEnd"),
    limit: int = Query(50, ge=1),
):
    start = db.as_utc(window_start) if window_start else db.utcnow() - timedelta(days=7)
    reminders = await db.list_live_reminders(
        tenant_id, start, db.as_utc(window_end), min(limit, MAX_REMINDER_LIMIT)
    )
    return {"status": "success", "data": [sanitize_reminder(r) for r in reminders]}


@router.get("/history")
async def reminder_history(
    tenant_id: str = Query(..., alias="tenantId"),
    days: int = Query(30, ge=1),
):
    start = db.utcnow() - timedelta(days=days)
    reminders = await db.list_reminder_history(tenant_id, start, MAX_REMINDER_LIMIT)
    return {"status": "success", "data": [sanitize_reminder(r) for r in reminders]}


@router.post("/{reminder_id}/interactions", status_code=status.HTTP_204_NO_CONTENT)
async def record_interaction(reminder_id: str, body: InteractionRequest):
    try:
        await reminder_scheduler.log_reminder_interaction(reminder_id, body.action, body.metadata)
    except InvalidAction as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    except ReminderNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Reminder not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{reminder_id}/acknowledge")
async def acknowledge(reminder_id: str):
    try:
        await reminder_scheduler.acknowledge_reminder(reminder_id)
    except ReminderNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Reminder not found")
    return {"status": "success"}


@router.get("/preferences")
async def get_preferences(tenant_id: str = Query(..., alias="tenantId")):
    return {"status": "success", "data": await db.read_preference(tenant_id)}


@router.put("/preferences")
async def put_preferences(body: PreferenceUpdate):
    data = await db.update_preference(body.tenant_id, body.changes())
    return {"status": "success", "data": data}


@router.get("/analytics")
async def get_analytics(tenant_id: str = Query(..., alias="tenantId")):
    return {"status": "success", "data": await db.read_analytics(tenant_id)}


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def register_subscription(body: PushSubscriptionIn, request: Request):
    sub = await db.upsert_push_subscription(
        body.tenant_id,
        body.endpoint,
        body.keys.p256dh,
        body.keys.auth,
        request.headers.get("user-agent") or body.user_agent,
    )
    return {
        "status": "success",
        "data": {"id": sub.id, "tenantId": sub.tenant_id, "endpoint": sub.endpoint},
    }


@router.delete("/subscriptions", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_subscription(body: PushSubscriptionDelete):
    await db.delete_push_subscription(body.endpoint, body.tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/config/webpush")
async def webpush_config():
    return {
        "status": "success",
        "data": {
            "vapidPublicKey": settings.WEB_PUSH_VAPID_PUBLIC_KEY or None,
            "pushEnabled": get_capabilities().push,
        },
    }
