"""API request/response schemas for live-class endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LiveClassCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, gt=0, le=480)
    credit_cost: int = Field(gt=0)
    max_attendees: int | None = Field(default=None, gt=0)


class LiveClassResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host_id: str
    title: str
    description: str
    scheduled_at: datetime
    duration_minutes: int
    credit_cost: int
    max_attendees: int
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None


class AttendanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    class_id: str
    user_id: str
    paid_status: str
    session_id: str
    joined_at: datetime
    left_at: datetime | None = None


class BookingResponse(BaseModel):
    attendance: AttendanceResponse
    replayed: bool


class ClassCompletionResponse(BaseModel):
    class_id: str
    completed_attendees: int
    total_credits_transferred: int
    replayed: bool
