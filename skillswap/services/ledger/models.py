"""Ledger database models: per-user accounts and append-only credit entries."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, event, func
from sqlalchemy.orm import Mapped, mapped_column

from skillswap.common.db import Base, utcnow

EARNED = "earned"
SPENT = "spent"
REFUND = "refund"
ADJUSTMENT = "adjustment"
LOCKED = "locked"
UNLOCKED = "unlocked"

ENTRY_TYPES = (EARNED, SPENT, REFUND, ADJUSTMENT, LOCKED, UNLOCKED)
# Entries that move the settled total; holds only move `reserved`.
SETTLED_TYPES = (EARNED, SPENT, REFUND, ADJUSTMENT)
HOLD_TERMINAL_TYPES = (SPENT, UNLOCKED)


class CreditAccount(Base):
    """Per-user ledger aggregate.

    The row carries no balance; it exists so balance-affecting writes for one
    user can be serialized with `SELECT ... FOR UPDATE`.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (CheckConstraint("level >= 1", name="ck_credit_accounts_level"),)

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    level: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerEntry(Base):
    """Immutable signed credit movement for one user."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_entries_amount_nonzero"),
        CheckConstraint(
            "type IN ('earned', 'spent', 'refund', 'adjustment', 'locked', 'unlocked')",
            name="ck_ledger_entries_type",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id"), index=True)
    entry_type: Mapped[str] = mapped_column("type", String)
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    session_id: Mapped[str | None] = mapped_column(ForeignKey("skill_sessions.id"), nullable=True, index=True)
    bounty_id: Mapped[str | None] = mapped_column(ForeignKey("bounties.id"), nullable=True, index=True)
    related_entry_id: Mapped[str | None] = mapped_column(
        ForeignKey("ledger_entries.id"), nullable=True, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


@event.listens_for(LedgerEntry, "before_update")
def _reject_entry_update(mapper, connection, target) -> None:
    raise RuntimeError("ledger_entries is append-only; UPDATE is not allowed")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_entry_delete(mapper, connection, target) -> None:
    raise RuntimeError("ledger_entries is append-only; DELETE is not allowed")
