from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from apps.helpdesk_backend.escalation import run_escalation_sweep
from apps.helpdesk_backend.security_deps import require_cron
from apps.helpdesk_backend.tat_reminders import run_tat_reminder_sweep
from apps.helpdesk_worker.dispatcher import run_dispatcher_batch
from common_core import db as core_db
from common_core.config import settings

log = logging.getLogger("helpdesk.cron")
router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron)])


@router.post("/auto-escalate")
def auto_escalate():
    db = core_db.SessionLocal()
    try:
        summary = run_escalation_sweep(db)
        return {"ok": True, **summary.as_dict()}
    except Exception as e:
        db.rollback()
        log.exception("cron_auto_escalate_failed")
        raise HTTPException(status_code=500, detail="ESCALATION_FAILED") from e
    finally:
        db.close()


@router.post("/process-outbox")
def process_outbox(max_events: Optional[int] = None):
    n = settings.dispatcher_max_events if max_events is None else max(1, min(max_events, 100))
    result = run_dispatcher_batch(n, session_factory=core_db.SessionLocal)
    return {"ok": True, "processed": result.processed, "errors": result.errors}


@router.post("/tat-reminders")
def tat_reminders():
    if not settings.tat_reminders_enabled:
        return {"ok": True, "queued": 0, "disabled": True}
    db = core_db.SessionLocal()
    try:
        return {"ok": True, "queued": run_tat_reminder_sweep(db)}
    except Exception as e:
        db.rollback()
        log.exception("cron_tat_reminders_failed")
        raise HTTPException(status_code=500, detail="TAT_REMINDERS_FAILED") from e
    finally:
        db.close()
