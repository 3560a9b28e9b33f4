"""one terminal entry per hold; sweeper and outbox hot-path indexes

Revision ID: 0003_hold_guards
Revises: 0002_ledger_entry_guards
Create Date: 2026-10-13
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_hold_guards"
down_revision = "0002_ledger_entry_guards"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # A hold is resolved by exactly one `spent` or `unlocked` entry.
    op.create_index(
        "uq_ledger_entries_hold_terminal",
        "ledger_entries",
        ["related_entry_id"],
        unique=True,
        postgresql_where=sa.text("type IN ('spent', 'unlocked')"),
    )
    op.create_index(
        "ix_ledger_entries_type_created_at",
        "ledger_entries",
        ["type", "created_at"],
    )
    op.create_index(
        "ix_skill_sessions_status_created_at",
        "skill_sessions",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_skill_sessions_status_created_at", table_name="skill_sessions")
    op.drop_index("ix_ledger_entries_type_created_at", table_name="ledger_entries")
    op.drop_index("uq_ledger_entries_hold_terminal", table_name="ledger_entries")
