"""Live-class database models."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from skillswap.common.db import Base, utcnow

SCHEDULED = "scheduled"
LIVE = "live"
COMPLETED = "completed"
CANCELLED = "cancelled"

# Attendance payment status.
RESERVED = "reserved"
PAID = "paid"
REFUNDED = "refunded"
LEFT = "cancelled"

ACTIVE_ATTENDANCE = (RESERVED, PAID)


class LiveClass(Base):
    """Group session run by one host; every seat is backed by its own skill session."""

    __tablename__ = "live_classes"
    __table_args__ = (
        CheckConstraint("credit_cost > 0", name="ck_live_classes_cost_positive"),
        CheckConstraint("max_attendees > 0", name="ck_live_classes_capacity_positive"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    host_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id"), index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(String, default="")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    credit_cost: Mapped[int] = mapped_column(Integer)
    max_attendees: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default=SCHEDULED, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Attendance(Base):
    """One user's seat in a class; re-booking after leaving reuses the row."""

    __tablename__ = "live_class_attendances"

    class_id: Mapped[str] = mapped_column(ForeignKey("live_classes.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id"), primary_key=True)
    paid_status: Mapped[str] = mapped_column(String, default=RESERVED, index=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("skill_sessions.id"), index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
