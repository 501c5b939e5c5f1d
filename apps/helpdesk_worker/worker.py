from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from apps.helpdesk_backend.escalation import run_escalation_sweep
from apps.helpdesk_backend.tat_reminders import run_tat_reminder_sweep
from apps.helpdesk_worker.critical_alerts import send_critical_alert
from apps.helpdesk_worker.dispatcher import run_dispatcher_batch
from common_core.config import settings
from common_core.db import SessionLocal
from common_core.guardrails import validate_runtime_secrets
from common_core.logging_setup import configure_logging

log = logging.getLogger("helpdesk.worker")

FAIL_STREAK_ALERT = 3
# UTC hour at which the daily TAT digest goes out
TAT_REMINDER_HOUR = 3


def _escalate_once() -> None:
    db = SessionLocal()
    try:
        summary = run_escalation_sweep(db)
        if summary.escalated_count or summary.error_count:
            log.info(
                "escalation_sweep_summary",
                extra={"component": "helpdesk_worker", "count": summary.escalated_count, "err": summary.error_count},
            )
    finally:
        db.close()


def _remind_once() -> None:
    db = SessionLocal()
    try:
        run_tat_reminder_sweep(db)
    finally:
        db.close()


def main() -> None:
    configure_logging(component="helpdesk_worker")
    validate_runtime_secrets()
    log.info("worker_started", extra={"component": "helpdesk_worker"})

    dispatch_fail_streak = 0
    escalation_fail_streak = 0
    last_escalation = 0.0
    last_reminder_date = None

    while True:
        try:
            result = run_dispatcher_batch()
            dispatch_fail_streak = 0
            if result.errors:
                log.warning("outbox_batch_errors", extra={"count": result.processed, "err": result.errors})
        except Exception as e:
            dispatch_fail_streak += 1
            log.error("outbox_dispatch_failed", extra={"err": str(e), "count": dispatch_fail_streak})
            if dispatch_fail_streak >= FAIL_STREAK_ALERT:
                send_critical_alert("helpdesk_worker_outbox_fail", str(e))

        now = time.time()
        if now - last_escalation > settings.escalation_interval_seconds:
            try:
                _escalate_once()
                last_escalation = now
                escalation_fail_streak = 0
            except Exception as e:
                escalation_fail_streak += 1
                log.error("escalation_sweep_failed", extra={"err": str(e), "count": escalation_fail_streak})
                if escalation_fail_streak >= FAIL_STREAK_ALERT:
                    send_critical_alert("helpdesk_worker_escalation_fail", str(e))

        current = datetime.now(timezone.utc)
        if (
            settings.tat_reminders_enabled
            and current.hour == TAT_REMINDER_HOUR
            and last_reminder_date != current.date()
        ):
            try:
                _remind_once()
                last_reminder_date = current.date()
            except Exception as e:
                log.error("tat_reminder_sweep_failed", extra={"err": str(e)})

        time.sleep(settings.worker_poll_seconds)


if __name__ == "__main__":
    main()
