"""initial credit ledger and session schema

Revision ID: 0001_marketplace
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_marketplace"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("level >= 1", name="ck_credit_accounts_level"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "skills",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("teacher_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("credits_required", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_skills_teacher_id", "skills", ["teacher_id"])

    op.create_table(
        "skill_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("teacher_id", sa.String(), nullable=False),
        sa.Column("skill_id", sa.String(), nullable=True),
        sa.Column("origin", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_amount", sa.Integer(), nullable=False),
        sa.Column("credits_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_by", sa.String(), nullable=True),
        sa.Column("dispute_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits_amount > 0", name="ck_skill_sessions_credits_positive"),
        sa.CheckConstraint("learner_id <> teacher_id", name="ck_skill_sessions_distinct_parties"),
        sa.ForeignKeyConstraint(["learner_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["teacher_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["skill_id"], ["skills.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_skill_sessions_learner_id", "skill_sessions", ["learner_id"])
    op.create_index("ix_skill_sessions_teacher_id", "skill_sessions", ["teacher_id"])
    op.create_index("ix_skill_sessions_status", "skill_sessions", ["status"])
    op.create_index("ix_skill_sessions_created_at", "skill_sessions", ["created_at"])

    op.create_table(
        "session_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["skill_sessions.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_session_timeline_session_id", "session_timeline", ["session_id"])

    op.create_table(
        "bounties",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("poster_id", sa.String(), nullable=False),
        sa.Column("claimer_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("credits_offered", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits_offered > 0", name="ck_bounties_credits_positive"),
        sa.ForeignKeyConstraint(["poster_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["claimer_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["session_id"], ["skill_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bounties_poster_id", "bounties", ["poster_id"])
    op.create_index("ix_bounties_status", "bounties", ["status"])
    op.create_index("ix_bounties_session_id", "bounties", ["session_id"])
    op.create_index("ix_bounties_expires_at", "bounties", ["expires_at"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("bounty_id", sa.String(), nullable=True),
        sa.Column("related_entry_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_ledger_entries_amount_nonzero"),
        sa.CheckConstraint(
            "type IN ('earned', 'spent', 'refund', 'adjustment', 'locked', 'unlocked')",
            name="ck_ledger_entries_type",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["session_id"], ["skill_sessions.id"]),
        sa.ForeignKeyConstraint(["bounty_id"], ["bounties.id"]),
        sa.ForeignKeyConstraint(["related_entry_id"], ["ledger_entries.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_ledger_entries_idempotency_key"),
    )
    op.create_index("ix_ledger_entries_user_id", "ledger_entries", ["user_id"])
    op.create_index("ix_ledger_entries_session_id", "ledger_entries", ["session_id"])
    op.create_index("ix_ledger_entries_bounty_id", "ledger_entries", ["bounty_id"])
    op.create_index("ix_ledger_entries_related_entry_id", "ledger_entries", ["related_entry_id"])
    op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"])

    op.create_table(
        "live_classes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("host_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("credit_cost", sa.Integer(), nullable=False),
        sa.Column("max_attendees", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credit_cost > 0", name="ck_live_classes_cost_positive"),
        sa.CheckConstraint("max_attendees > 0", name="ck_live_classes_capacity_positive"),
        sa.ForeignKeyConstraint(["host_id"], ["credit_accounts.user_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_live_classes_host_id", "live_classes", ["host_id"])
    op.create_index("ix_live_classes_status", "live_classes", ["status"])

    op.create_table(
        "live_class_attendances",
        sa.Column("class_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("paid_status", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["class_id"], ["live_classes.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["credit_accounts.user_id"]),
        sa.ForeignKeyConstraint(["session_id"], ["skill_sessions.id"]),
        sa.PrimaryKeyConstraint("class_id", "user_id"),
    )
    op.create_index("ix_live_class_attendances_paid_status", "live_class_attendances", ["paid_status"])
    op.create_index("ix_live_class_attendances_session_id", "live_class_attendances", ["session_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("scope", "key"),
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_table("outbox_events")
    op.drop_table("idempotency_keys")
    op.drop_table("live_class_attendances")
    op.drop_table("live_classes")
    op.drop_table("ledger_entries")
    op.drop_table("bounties")
    op.drop_table("session_timeline")
    op.drop_table("skill_sessions")
    op.drop_table("skills")
    op.drop_table("credit_accounts")
