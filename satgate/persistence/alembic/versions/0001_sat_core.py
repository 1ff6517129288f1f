"""create action token, messaging and audit tables

Revision ID: 0001_sat_core
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_sat_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # One row per minted token; consumed_at flips once through a conditional UPDATE.
    op.create_table(
        "sat_tokens",
        sa.Column("token_id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("feature", sa.String(), nullable=False),
        sa.Column("method", sa.String(length=8), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sat_tokens_subject_id", "sat_tokens", ["subject_id"], unique=False)
    op.create_index("ix_sat_tokens_expires_at", "sat_tokens", ["expires_at"], unique=False)

    op.create_table(
        "coaches",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("whatsapp_link", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_coaches_slug", "coaches", ["slug"], unique=True)
    op.create_index("ix_coaches_user_id", "coaches", ["user_id"], unique=False)

    op.create_table(
        "coach_athletes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("coach_id", sa.String(), sa.ForeignKey("coaches.id"), nullable=False),
        sa.Column("athlete_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(), server_default="LEAD", nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("coach_id", "athlete_id", name="uq_coach_athletes_pair"),
    )
    op.create_index("ix_coach_athletes_coach_status", "coach_athletes", ["coach_id", "status"], unique=False)
    op.create_index("ix_coach_athletes_athlete_id", "coach_athletes", ["athlete_id"], unique=False)

    # Messages double as the quota ledger: usage is a count over this table.
    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("coach_id", sa.String(), sa.ForeignKey("coaches.id"), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_messages_user_coach_created",
        "messages",
        ["user_id", "coach_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "user_entitlements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("feature_key", sa.String(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_entitlements_user_id", "user_entitlements", ["user_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_user_entitlements_user_id", table_name="user_entitlements")
    op.drop_table("user_entitlements")
    op.drop_index("ix_messages_user_coach_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_coach_athletes_athlete_id", table_name="coach_athletes")
    op.drop_index("ix_coach_athletes_coach_status", table_name="coach_athletes")
    op.drop_table("coach_athletes")
    op.drop_index("ix_coaches_user_id", table_name="coaches")
    op.drop_index("ix_coaches_slug", table_name="coaches")
    op.drop_table("coaches")
    op.drop_index("ix_sat_tokens_expires_at", table_name="sat_tokens")
    op.drop_index("ix_sat_tokens_subject_id", table_name="sat_tokens")
    op.drop_table("sat_tokens")
    op.drop_table("users")
