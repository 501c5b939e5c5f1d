"""Make stuck outbox events eligible again right away.

Usage: python -m tools.requeue_outbox 12 15 40
       REQUEUE_ALL=1 python -m tools.requeue_outbox
Set DRY_RUN=1 to see what would change without committing.
"""

from __future__ import annotations

import os
import sys

from common_core.db import SessionLocal
from apps.helpdesk_backend.outbox import list_stuck, requeue

DRY_RUN = os.environ.get("DRY_RUN", "0") == "1"
REQUEUE_ALL = os.environ.get("REQUEUE_ALL", "0") == "1"
MAX_BATCH = int(os.environ.get("MAX_BATCH", "200"))


def main(argv: list[str]) -> int:
    db = SessionLocal()
    try:
        if REQUEUE_ALL:
            ids = [r.id for r in list_stuck(db, limit=MAX_BATCH)]
        else:
            ids = [int(a) for a in argv]
        if not ids:
            print("Nothing to requeue.")
            return 0
        n = requeue(db, ids)
        if DRY_RUN:
            db.rollback()
            print(f"DRY_RUN would requeue={n}")
        else:
            db.commit()
            print(f"COMMIT requeued={n}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
