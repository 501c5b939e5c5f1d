from __future__ import annotations

import os

from common_core.db import SessionLocal
from apps.helpdesk_backend.outbox import list_stuck

MAX_ROWS = int(os.environ.get("MAX_ROWS", "100"))


def _fmt(d) -> str:
    return d.isoformat() + "Z" if d else "-"


def main():
    db = SessionLocal()
    try:
        rows = list_stuck(db, limit=MAX_ROWS)
        if not rows:
            print("No retrying outbox events.")
            return
        print(f"{len(rows)} unprocessed event(s) with attempts > 0:")
        for r in rows:
            print(
                f"id={r.id} type={r.event_type} attempts={r.attempts} "
                f"next_retry={_fmt(r.next_retry_at_utc)} created={_fmt(r.created_at_utc)} "
                f"error={(r.last_error or '-')[:120]}"
            )
    finally:
        db.close()


if __name__ == "__main__":
    main()
