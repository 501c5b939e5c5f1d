from datetime import timedelta
from itertools import product

import pytest
from sqlalchemy import select

from apps.helpdesk_backend import services, statuses
from apps.helpdesk_backend.models import OutboxEvent, TicketCommitteeTag, TicketGroup
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from apps.helpdesk_backend.transition_rules import TRANSITION_RULES
from common_core.errors import ConfigurationError, NotFoundError, TransitionPermissionError, ValidationError

ACTORS = {
    "student": "stu1",
    "committee": "com1",
    "admin": "adm1",
    "super_admin": "sup1",
    "guest": "stu2",
}


def _allowed(role, from_status, to_status):
    if role == "student":
        return from_status == statuses.RESOLVED and to_status == statuses.REOPENED
    if role == "committee":
        return to_status == statuses.RESOLVED
    return role in ("admin", "super_admin")


def _events(db, ticket_id):
    rows = db.execute(
        select(OutboxEvent).where(OutboxEvent.event_type == "ticket.status.updated").order_by(OutboxEvent.id)
    ).scalars()
    return [r for r in rows if r.payload_json.get("ticket_id") == ticket_id]


def test_rules_table_order():
    assert [r.name for r in TRANSITION_RULES] == [
        "student_reopen_own_resolved",
        "committee_resolve_tagged",
        "admin_any",
    ]


def test_permission_matrix_enumerated(db, seeded, make_ticket, clock):
    for role, from_status, to_status in product(ACTORS, sorted(statuses.ALL_STATUSES), sorted(statuses.ALL_STATUSES)):
        t = make_ticket(status=from_status, assigned_to="adm2")
        db.add(TicketCommitteeTag(ticket_id=t.id, committee_id=seeded.cultural_id))
        db.commit()
        actor = ACTORS[role]

        if _allowed(role, from_status, to_status):
            out = services.transition_status(db, t.id, actor, role, to_status, now=clock())
            assert out.status == to_status
            meta = TicketMetadata.parse(out.metadata_json)
            assert (meta.tat_pause_start is not None) == (to_status == statuses.AWAITING_STUDENT)
            if role in ("admin", "super_admin"):
                assert out.assigned_to == actor
            else:
                assert out.assigned_to == "adm2"
            events = _events(db, t.id)
            assert len(events) == 1
            assert events[0].payload_json["old_status"] == from_status
            assert events[0].payload_json["new_status"] == to_status
            assert events[0].payload_json["actor_id"] == actor
        else:
            with pytest.raises(TransitionPermissionError):
                services.transition_status(db, t.id, actor, role, to_status, now=clock())
            db.refresh(t)
            assert t.status == from_status
            assert t.assigned_to == "adm2"
            assert _events(db, t.id) == []


def test_student_denials_name_the_rule(db, make_ticket):
    t = make_ticket(status="open")
    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t.id, "stu1", "student", "reopened")
    assert ei.value.code == "STUDENT_REOPEN_ONLY"

    t2 = make_ticket(status="resolved", created_by="stu1")
    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t2.id, "stu2", "student", "reopened")
    assert ei.value.code == "STUDENT_NOT_OWNER"


def test_committee_needs_a_tag_and_only_resolves(db, seeded, make_ticket):
    t = make_ticket(status="in_progress")
    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t.id, "com1", "committee-delegate", "resolved")
    assert ei.value.code == "COMMITTEE_NOT_TAGGED"

    db.add(TicketCommitteeTag(ticket_id=t.id, committee_id=seeded.cultural_id))
    db.commit()
    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t.id, "com1", "committee", "in_progress")
    assert ei.value.code == "COMMITTEE_RESOLVE_ONLY"

    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t.id, "com2", "committee", "resolved")
    assert ei.value.code == "COMMITTEE_NOT_TAGGED"

    out = services.transition_status(db, t.id, "com1", "committee", "closed")
    assert out.status == "resolved"


def test_committee_tagged_through_group(db, seeded, make_ticket, clock):
    g = TicketGroup(name="Fest prep", committee_id=seeded.sports_id, created_at_utc=clock())
    db.add(g)
    db.commit()
    t = make_ticket(status="open", group_id=g.id)
    out = services.transition_status(db, t.id, "com2", "committee", "resolved")
    assert out.status == "resolved"


def test_unknown_status_rejected_before_lookup(db, make_ticket):
    t = make_ticket(status="open")
    with pytest.raises(ValidationError):
        services.transition_status(db, t.id, "adm1", "admin", "done")
    with pytest.raises(NotFoundError):
        services.transition_status(db, 99999, "adm1", "admin", "resolved")


def test_unknown_stored_status_is_configuration_error(db, make_ticket):
    t = make_ticket(status="legacy_weird")
    with pytest.raises(ConfigurationError):
        services.transition_status(db, t.id, "adm1", "admin", "resolved")


def test_lifecycle_scenario(db, make_ticket, clock):
    t = services.open_ticket(db, "stu1", "Hostel", "Block A", "Tap leaking", now=clock())
    assert t.status == "open"

    t = services.transition_status(db, t.id, "adm1", "admin", "in_progress", now=clock.advance(hours=1))
    assert t.assigned_to == "adm1"

    t = services.transition_status(db, t.id, "adm1", "admin", "awaiting_student", now=clock.advance(hours=1))
    assert TicketMetadata.parse(t.metadata_json).tat_pause_start == clock()

    with pytest.raises(TransitionPermissionError) as ei:
        services.transition_status(db, t.id, "stu1", "student", "reopened", now=clock.advance(minutes=5))
    assert ei.value.code == "STUDENT_REOPEN_ONLY"

    t = services.transition_status(db, t.id, "adm1", "admin", "resolved", now=clock.advance(hours=2))
    meta = TicketMetadata.parse(t.metadata_json)
    assert meta.tat_pause_start is None
    assert meta.resolved_at == clock()

    t = services.transition_status(db, t.id, "stu1", "student", "reopened", now=clock.advance(days=1))
    meta = TicketMetadata.parse(t.metadata_json)
    assert t.status == "reopened"
    assert meta.reopen_count == 1
    assert meta.tat is None and meta.tat_date is None
    assert meta.tat_pause_start is None and meta.tat_paused_duration is None
    assert meta.reopened_at == clock()


def test_leaving_awaiting_student_folds_pause(db, make_ticket, clock):
    deadline = clock() + timedelta(hours=24)
    t = make_ticket(status="in_progress", metadata={"tat": "24 hours", "tatDate": deadline.isoformat()})
    services.transition_status(db, t.id, "adm1", "admin", "awaiting_student", now=clock())
    t = services.transition_status(db, t.id, "adm1", "admin", "in_progress", now=clock.advance(hours=3))
    meta = TicketMetadata.parse(t.metadata_json)
    assert meta.tat_paused_duration == 3 * 3600
    assert meta.effective_tat_deadline(clock()) == deadline + timedelta(hours=3)


def test_reopen_increments_each_time(db, make_ticket, clock):
    t = make_ticket(status="resolved", metadata={"reopenCount": 2, "tat": "4 hours"})
    t = services.transition_status(db, t.id, "stu1", "student", "reopened", now=clock())
    assert TicketMetadata.parse(t.metadata_json).reopen_count == 3


def test_group_archived_when_last_ticket_resolves(db, make_ticket, clock):
    g = TicketGroup(name="Wifi outage", created_at_utc=clock())
    db.add(g)
    db.commit()
    a = make_ticket(status="resolved", group_id=g.id)
    b = make_ticket(status="in_progress", group_id=g.id)
    assert a.status == "resolved"

    services.transition_status(db, b.id, "adm1", "admin", "resolved", now=clock())
    db.refresh(g)
    assert g.is_archived is True


def test_group_archive_failure_does_not_undo_transition(db, make_ticket, clock):
    g = TicketGroup(name="Mess food", created_at_utc=clock())
    db.add(g)
    db.commit()
    t = make_ticket(status="open", group_id=g.id)

    def boom(group_id):
        raise RuntimeError("archive store down")

    out = services.transition_status(db, t.id, "adm1", "admin", "resolved", now=clock(), archiver=boom)
    assert out.status == "resolved"
    db.expire_all()
    assert len(_events(db, t.id)) == 1


def test_transition_rereads_row_held_by_the_session(db, session_factory, make_ticket, clock):
    t = make_ticket(status="in_progress", assigned_to="adm1")
    other = session_factory()
    try:
        services.transition_status(other, t.id, "adm1", "admin", "resolved", now=clock())
    finally:
        other.close()

    # db still holds the in_progress copy from make_ticket
    reopened = services.transition_status(db, t.id, "stu1", "student", "reopened", now=clock())
    assert reopened.status == "reopened"
    assert TicketMetadata.parse(reopened.metadata_json).reopen_count == 1
