"""initial helpdesk schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

import sqlalchemy as sa

from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("full_name", sa.String(length=128), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, index=True),
    )

    op.create_table(
        "committees",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("head_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True, index=True),
    )

    op.create_table(
        "ticket_groups",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("committee_id", sa.Integer(), sa.ForeignKey("committees.id"), nullable=True, index=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
        sa.Column("updated_at_utc", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open", index=True),
        sa.Column("created_by", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("assigned_to", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True, index=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("location", sa.String(length=128), nullable=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("ticket_groups.id"), nullable=True, index=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_escalated_at_utc", sa.DateTime(), nullable=True),
        sa.Column("escalated_to", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False, index=True),
        sa.Column("updated_at_utc", sa.DateTime(), nullable=True, index=True),
    )

    op.create_table(
        "ticket_committee_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("tickets.id"), nullable=False, index=True),
        sa.Column("committee_id", sa.Integer(), sa.ForeignKey("committees.id"), nullable=False, index=True),
        sa.UniqueConstraint("ticket_id", "committee_id", name="uq_ticket_committee_tag"),
    )

    op.create_table(
        "escalation_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("location", sa.String(length=128), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True),
    )
    op.create_index(
        "ix_escalation_rules_category_location_level",
        "escalation_rules",
        ["category", "location", "level"],
    )

    op.create_table(
        "outbox",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(length=64), nullable=False, index=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_at_utc", sa.DateTime(), nullable=True, index=True),
        sa.Column("next_retry_at_utc", sa.DateTime(), nullable=True, index=True),
        sa.Column("last_error", sa.String(length=300), nullable=True),
        sa.Column("created_at_utc", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ticket_id", sa.Integer(), nullable=True, index=True),
        sa.Column("outbox_event_id", sa.Integer(), nullable=True, index=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.String(length=256), nullable=True),
        sa.Column("sent_at_utc", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("notification_log")
    op.drop_table("outbox")
    op.drop_index("ix_escalation_rules_category_location_level", table_name="escalation_rules")
    op.drop_table("escalation_rules")
    op.drop_table("ticket_committee_tags")
    op.drop_table("tickets")
    op.drop_table("ticket_groups")
    op.drop_table("committees")
    op.drop_table("users")
