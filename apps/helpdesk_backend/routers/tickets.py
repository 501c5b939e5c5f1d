from __future__ import annotations

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from apps.helpdesk_backend import services
from apps.helpdesk_backend.models import Ticket
from apps.helpdesk_backend.security_deps import Actor, get_actor, http_error
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from common_core import db as core_db
from common_core import rbac
from common_core.errors import HelpdeskError

log = logging.getLogger("helpdesk.tickets")
router = APIRouter(prefix="/tickets", tags=["tickets"])


class StatusIn(BaseModel):
    status: str = Field(min_length=1, max_length=64)


class TicketIn(BaseModel):
    category: str = Field(min_length=1, max_length=64)
    location: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=10000)
    group_id: Optional[int] = None


class CommentIn(BaseModel):
    text: str = Field(min_length=1, max_length=services.MAX_COMMENT_LEN)


class TatIn(BaseModel):
    hours: float = Field(gt=0, le=services.MAX_TAT_HOURS)
    reason: Optional[str] = Field(default=None, max_length=2000)


class EscalateIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


def _iso(d) -> Optional[str]:
    return d.isoformat() + "Z" if d else None


def ticket_out(t: Ticket) -> dict[str, Any]:
    meta = TicketMetadata.parse(t.metadata_json)
    return {
        "id": t.id,
        "status": t.status,
        "created_by": t.created_by,
        "assigned_to": t.assigned_to,
        "category": t.category,
        "location": t.location,
        "group_id": t.group_id,
        "escalation_level": t.escalation_level,
        "escalated_to": t.escalated_to,
        "last_escalated_at_utc": _iso(t.last_escalated_at_utc),
        "created_at_utc": _iso(t.created_at_utc),
        "updated_at_utc": _iso(t.updated_at_utc),
        "metadata": meta.dump(),
    }


def _run(op_name: str, fn, *args, **kwargs) -> dict[str, Any]:
    db = core_db.SessionLocal()
    try:
        t = fn(db, *args, **kwargs)
        return {"ok": True, "ticket": ticket_out(t)}
    except HelpdeskError as e:
        db.rollback()
        raise http_error(e) from e
    except Exception as e:
        db.rollback()
        log.exception(f"{op_name}_failed")
        raise HTTPException(status_code=500, detail="INTERNAL_ERROR") from e
    finally:
        db.close()


@router.post("")
def create(body: TicketIn, actor: Annotated[Actor, Depends(get_actor)]):
    if actor.role != rbac.STUDENT and not rbac.is_admin(actor.role):
        raise HTTPException(status_code=403, detail="FORBIDDEN")
    return _run(
        "ticket_create",
        services.open_ticket,
        actor.id,
        body.category,
        body.location,
        body.description,
        body.group_id,
    )


@router.patch("/{ticket_id}/status")
def update_status(ticket_id: int, body: StatusIn, actor: Annotated[Actor, Depends(get_actor)]):
    return _run(
        "ticket_status_update",
        services.transition_status,
        ticket_id,
        actor.id,
        actor.role,
        body.status,
    )


@router.post("/{ticket_id}/comments")
def comment(ticket_id: int, body: CommentIn, actor: Annotated[Actor, Depends(get_actor)]):
    return _run("ticket_comment", services.add_comment, ticket_id, actor.id, actor.role, body.text)


@router.post("/{ticket_id}/tat")
def set_tat(ticket_id: int, body: TatIn, actor: Annotated[Actor, Depends(get_actor)]):
    return _run(
        "ticket_tat", services.set_tat, ticket_id, actor.id, actor.role, body.hours, body.reason
    )


@router.post("/{ticket_id}/escalate")
def escalate(ticket_id: int, body: EscalateIn, actor: Annotated[Actor, Depends(get_actor)]):
    return _run(
        "ticket_escalate", services.escalate_ticket, ticket_id, actor.id, actor.role, body.reason
    )
