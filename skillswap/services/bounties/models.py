"""Bounty database models."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from skillswap.common.db import Base, utcnow

OPEN = "open"
CLAIMED = "claimed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"


class Bounty(Base):
    """Learner-posted request for help, backed by a credit hold until claimed."""

    __tablename__ = "bounties"
    __table_args__ = (CheckConstraint("credits_offered > 0", name="ck_bounties_credits_positive"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    poster_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id"), index=True)
    claimer_id: Mapped[str | None] = mapped_column(ForeignKey("credit_accounts.user_id"), nullable=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(String, default="")
    credits_offered: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default=OPEN, index=True)
    session_id: Mapped[str | None] = mapped_column(ForeignKey("skill_sessions.id"), nullable=True, index=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
