"""API request/response schemas for bounty endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from skillswap.services.sessions.schemas import SessionResponse


class BountyCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    credits_offered: int = Field(gt=0)
    expires_at: datetime | None = None


class BountyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    poster_id: str
    claimer_id: str | None = None
    title: str
    description: str
    credits_offered: int
    status: str
    session_id: str | None = None
    cancellation_reason: str | None = None
    expires_at: datetime | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class BountyActionResponse(BaseModel):
    bounty: BountyResponse
    session: SessionResponse | None = None
    replayed: bool
