from __future__ import annotations

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, select, text

from apps.helpdesk_backend.models import OutboxEvent
from common_core import db as core_db

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/readyz")
def readyz():
    db = core_db.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        stuck = db.execute(
            select(func.count(OutboxEvent.id))
            .where(OutboxEvent.processed_at_utc.is_(None))
            .where(OutboxEvent.attempts > 0)
        ).scalar_one()
    except Exception as e:
        raise HTTPException(status_code=503, detail="DB_UNAVAILABLE") from e
    finally:
        db.close()
    return {"ok": True, "outbox_retrying": int(stuck)}
