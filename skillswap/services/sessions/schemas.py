"""API request/response schemas for session endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from skillswap.services.ledger.schemas import LedgerEntryResponse


class SessionCreateRequest(BaseModel):
    """Learner's request to book a skill session."""

    teacher_id: str = Field(min_length=1)
    skill_id: str = Field(min_length=1)
    credits_amount: int = Field(gt=0)


class ScheduleRequest(BaseModel):
    scheduled_at: datetime


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ResolveRequest(BaseModel):
    """Operator decision on a disputed session."""

    outcome: Literal["complete", "cancel"]
    reason: str = Field(min_length=1, max_length=500)


class SkillUpsertRequest(BaseModel):
    teacher_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    credits_required: int = Field(gt=0)
    status: Literal["active", "inactive"] = "active"


class SkillResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    teacher_id: str
    title: str
    credits_required: int
    status: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    learner_id: str
    teacher_id: str
    skill_id: str | None = None
    origin: str
    status: str
    state_version: int
    credits_amount: int
    credits_locked: bool
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    disputed_at: datetime | None = None
    disputed_by: str | None = None
    dispute_reason: str | None = None
    created_at: datetime


class TransitionResponse(BaseModel):
    """Session state after a lifecycle call and the ledger entries it wrote."""

    session: SessionResponse
    replayed: bool
    entries: list[LedgerEntryResponse]


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str | None = None
    to_state: str
    event: str
    actor_id: str | None = None
    reason: str
    created_at: datetime
