from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.models import Ticket, TicketGroup

log = logging.getLogger("helpdesk.groups")


def archive_group_if_all_closed(db, group_id: int) -> bool:
    """Archive a ticket group once every ticket in it is resolved. Commits."""
    group = db.get(TicketGroup, group_id)
    if group is None or group.is_archived:
        return False

    group_statuses = db.execute(select(Ticket.status).where(Ticket.group_id == group_id)).scalars().all()
    if not group_statuses or not all(statuses.is_final(s) for s in group_statuses):
        return False

    group.is_archived = True
    group.updated_at_utc = datetime.now(timezone.utc).replace(tzinfo=None)
    db.commit()
    log.info("ticket_group_archived", extra={"group_id": group_id})
    return True
