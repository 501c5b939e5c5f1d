from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from common_core.db import Base


class User(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True)
    email = Column(String(256), nullable=True)
    full_name = Column(String(128), nullable=True)
    role = Column(String(32), nullable=False, index=True)  # student, committee, admin, super_admin


class Committee(Base):
    __tablename__ = "committees"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    head_id = Column(String(64), ForeignKey("users.id"), nullable=True, index=True)


class TicketGroup(Base):
    __tablename__ = "ticket_groups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    committee_id = Column(Integer, ForeignKey("committees.id"), nullable=True, index=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at_utc = Column(DateTime, nullable=False)
    updated_at_utc = Column(DateTime, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(String(32), nullable=False, index=True, default="open")
    created_by = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    assigned_to = Column(String(64), ForeignKey("users.id"), nullable=True, index=True)
    category = Column(String(64), nullable=False)  # Hostel, College, Committee
    location = Column(String(128), nullable=True)
    group_id = Column(Integer, ForeignKey("ticket_groups.id"), nullable=True, index=True)
    description = Column(Text, nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)
    last_escalated_at_utc = Column(DateTime, nullable=True)
    escalated_to = Column(String(64), nullable=True)  # level_N, super_admin, super_admin_urgent
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at_utc = Column(DateTime, nullable=False, index=True)
    updated_at_utc = Column(DateTime, nullable=True, index=True)


class TicketCommitteeTag(Base):
    __tablename__ = "ticket_committee_tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False, index=True)
    committee_id = Column(Integer, ForeignKey("committees.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("ticket_id", "committee_id", name="uq_ticket_committee_tag"),
    )


class EscalationRule(Base):
    __tablename__ = "escalation_rules"
    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(64), nullable=False)
    location = Column(String(128), nullable=True)  # NULL = applies to every location
    level = Column(Integer, nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        Index("ix_escalation_rules_category_location_level", "category", "location", "level"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)
    payload_json = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at_utc = Column(DateTime, nullable=True, index=True)
    next_retry_at_utc = Column(DateTime, nullable=True, index=True)
    last_error = Column(String(300), nullable=True)
    created_at_utc = Column(DateTime, nullable=False)


class NotificationLog(Base):
    __tablename__ = "notification_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, nullable=True, index=True)
    outbox_event_id = Column(Integer, nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    channel = Column(String(16), nullable=False)  # slack, email
    notification_type = Column(String(64), nullable=False)
    message_id = Column(String(256), nullable=True)
    sent_at_utc = Column(DateTime, nullable=False)
