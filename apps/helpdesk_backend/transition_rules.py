"""Who may move a ticket from which status to which.

``TRANSITION_RULES`` is evaluated top to bottom; the first rule whose role set
contains the caller's role governs the request. If that rule's ownership
predicate, source statuses or target statuses do not hold, the request is
refused with the rule's denial code. A role no rule mentions is refused
outright.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.models import Committee, Ticket, TicketCommitteeTag, TicketGroup
from common_core import rbac
from common_core.errors import TransitionPermissionError

Predicate = Callable[..., bool]


def caller_created_ticket(db, ticket: Ticket, actor_id: str) -> bool:
    return ticket.created_by == actor_id


def caller_heads_tagged_committee(db, ticket: Ticket, actor_id: str) -> bool:
    """True when the ticket, directly or through its group, is tagged to a committee the caller heads."""
    committee_ids = db.execute(select(Committee.id).where(Committee.head_id == actor_id)).scalars().all()
    if not committee_ids:
        return False

    tagged = db.execute(
        select(TicketCommitteeTag.id)
        .where(TicketCommitteeTag.ticket_id == ticket.id)
        .where(TicketCommitteeTag.committee_id.in_(committee_ids))
        .limit(1)
    ).first()
    if tagged:
        return True

    if ticket.group_id is None:
        return False
    group = db.get(TicketGroup, ticket.group_id)
    return bool(group and group.committee_id in committee_ids)


@dataclass(frozen=True)
class TransitionRule:
    name: str
    roles: frozenset[str]
    from_statuses: Optional[frozenset[str]] = None  # None = any
    to_statuses: Optional[frozenset[str]] = None
    predicate: Optional[Predicate] = None
    predicate_denial: str = "FORBIDDEN"
    status_denial: str = "FORBIDDEN"
    takes_ownership: bool = False

    def violation(self, db, ticket: Ticket, actor_id: str, from_status: str, to_status: str) -> Optional[str]:
        if self.predicate is not None and not self.predicate(db, ticket, actor_id):
            return self.predicate_denial
        if self.from_statuses is not None and from_status not in self.from_statuses:
            return self.status_denial
        if self.to_statuses is not None and to_status not in self.to_statuses:
            return self.status_denial
        return None


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        name="student_reopen_own_resolved",
        roles=frozenset({rbac.STUDENT}),
        from_statuses=frozenset({statuses.RESOLVED}),
        to_statuses=frozenset({statuses.REOPENED}),
        predicate=caller_created_ticket,
        predicate_denial="STUDENT_NOT_OWNER",
        status_denial="STUDENT_REOPEN_ONLY",
    ),
    TransitionRule(
        name="committee_resolve_tagged",
        roles=frozenset({rbac.COMMITTEE}),
        to_statuses=frozenset({statuses.RESOLVED}),
        predicate=caller_heads_tagged_committee,
        predicate_denial="COMMITTEE_NOT_TAGGED",
        status_denial="COMMITTEE_RESOLVE_ONLY",
    ),
    TransitionRule(
        name="admin_any",
        roles=rbac.ADMIN_ROLES,
        takes_ownership=True,
    ),
)

DENIAL_MESSAGES: dict[str, str] = {
    "STUDENT_NOT_OWNER": "Students can only change tickets they created",
    "STUDENT_REOPEN_ONLY": "Students can only reopen resolved tickets",
    "COMMITTEE_NOT_TAGGED": "You can only update tickets tagged to your committee",
    "COMMITTEE_RESOLVE_ONLY": "Committee members can only mark tickets as resolved",
    "FORBIDDEN": "Forbidden",
}


def authorize_transition(
    db, ticket: Ticket, actor_id: str, role: str, from_status: str, to_status: str
) -> TransitionRule:
    role = rbac.normalize_role(role)
    for rule in TRANSITION_RULES:
        if role not in rule.roles:
            continue
        code = rule.violation(db, ticket, actor_id, from_status, to_status)
        if code is not None:
            raise TransitionPermissionError(code, f"{DENIAL_MESSAGES.get(code, code)} ({rule.name})")
        return rule
    raise TransitionPermissionError("FORBIDDEN", f"Role {role or '<none>'!r} may not change ticket status")
