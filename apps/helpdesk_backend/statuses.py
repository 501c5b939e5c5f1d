from __future__ import annotations

from dataclasses import dataclass

from common_core.errors import ValidationError

OPEN = "open"
IN_PROGRESS = "in_progress"
AWAITING_STUDENT = "awaiting_student"
REOPENED = "reopened"
ESCALATED = "escalated"
FORWARDED = "forwarded"
RESOLVED = "resolved"


@dataclass(frozen=True)
class StatusMeta:
    value: str
    label: str
    is_final: bool = False
    pauses_tat: bool = False


STATUS_META: dict[str, StatusMeta] = {
    OPEN: StatusMeta(OPEN, "Open"),
    IN_PROGRESS: StatusMeta(IN_PROGRESS, "In Progress"),
    AWAITING_STUDENT: StatusMeta(AWAITING_STUDENT, "Awaiting Student Response", pauses_tat=True),
    REOPENED: StatusMeta(REOPENED, "Reopened"),
    ESCALATED: StatusMeta(ESCALATED, "Escalated"),
    FORWARDED: StatusMeta(FORWARDED, "Forwarded"),
    RESOLVED: StatusMeta(RESOLVED, "Resolved", is_final=True),
}

ALL_STATUSES = frozenset(STATUS_META)

STATUS_ALIASES: dict[str, str] = {
    "awaiting_student_response": AWAITING_STUDENT,
    "closed": RESOLVED,
}


def canonical_or_none(status: str | None) -> str | None:
    if not status:
        return None
    s = status.strip().lower()
    if s in STATUS_META:
        return s
    return STATUS_ALIASES.get(s)


def canonical_status(status: str | None) -> str:
    """Map caller input to exactly one canonical status or reject it."""
    canonical = canonical_or_none(status)
    if canonical is None:
        raise ValidationError("INVALID_STATUS", f"Unknown ticket status: {status!r}")
    return canonical


def is_final(status: str | None) -> bool:
    canonical = canonical_or_none(status)
    return bool(canonical and STATUS_META[canonical].is_final)


def label(status: str | None) -> str:
    canonical = canonical_or_none(status)
    if canonical is None:
        return status or ""
    return STATUS_META[canonical].label
