import logging

from fastapi import FastAPI

import db
from app.routes.reminders import router as reminders_router
from config import get_capabilities, settings

logging.basicConfig(level=settings.LOG_LEVEL)

app = FastAPI()

app.include_router(reminders_router)

# Engine is created lazily on first use; schema is managed via Alembic migrations.

@app.on_event("startup")
async def startup_event():
    caps = get_capabilities()
    if caps.degraded:
        logging.getLogger(__name__).warning(
            "Reminder engine running in reduced mode: encryption=%s push=%s", caps.encryption, caps.push
        )

@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


@app.get("/healthz")
async def healthz():
    caps = get_capabilities()
    return {"status": "ok", "encryption": caps.encryption, "push": caps.push}
