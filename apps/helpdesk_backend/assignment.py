from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, or_, select

from apps.helpdesk_backend.models import EscalationRule, User
from common_core.rbac import SUPER_ADMIN

log = logging.getLogger("helpdesk.assignment")


@dataclass(frozen=True)
class EscalationTarget:
    assignee_id: str
    level: int


class DbAssignmentResolver:
    """Walks the ``escalation_rules`` chain for a category/location.

    Rules without a location apply to every location of the category; rules
    for the ticket's own location are considered alongside them and win ties.
    The next target is the lowest rule level above the ticket's current level.
    """

    def __init__(self, db):
        self.db = db

    def next_target(
        self, category: str, location: str | None, current_level: int
    ) -> EscalationTarget | None:
        q = select(EscalationRule).where(EscalationRule.category == category)
        if location:
            q = q.where(
                or_(EscalationRule.location == location, EscalationRule.location.is_(None))
            )
        else:
            q = q.where(EscalationRule.location.is_(None))
        # at equal level a rule for the exact location beats a catch-all one
        q = q.where(EscalationRule.level > current_level).order_by(
            EscalationRule.level.asc(),
            case((EscalationRule.location.is_(None), 1), else_=0),
            EscalationRule.id.asc(),
        )
        for rule in self.db.execute(q).scalars():
            if not rule.user_id:
                continue
            if self.db.get(User, rule.user_id) is None:
                log.warning("escalation_rule_user_missing", extra={"rule_id": rule.id})
                continue
            return EscalationTarget(assignee_id=rule.user_id, level=int(rule.level))
        return None

    def fallback_assignee(self) -> str | None:
        """Any super admin; used once the chain runs out."""
        return self.db.execute(
            select(User.id).where(User.role == SUPER_ADMIN).order_by(User.id.asc()).limit(1)
        ).scalar_one_or_none()
