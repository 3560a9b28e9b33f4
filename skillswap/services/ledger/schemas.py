"""API request/response schemas for ledger endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AccountCreateRequest(BaseModel):
    """Profile-created hook from the user service."""

    user_id: str = Field(min_length=1)
    level: int = Field(default=1, ge=1, le=5)
    initial_grant: int | None = Field(default=None, ge=0)


class LevelUpdateRequest(BaseModel):
    level: int = Field(ge=1, le=5)


class AdjustmentRequest(BaseModel):
    amount: int
    entry_type: Literal["adjustment", "refund"] = "adjustment"
    description: str = Field(min_length=1, max_length=500)
    idempotency_key: str = Field(min_length=5, max_length=200)


class BalanceResponse(BaseModel):
    user_id: str
    total: int
    reserved: int
    available: int


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    entry_type: str
    amount: int
    balance_after: int
    session_id: str | None = None
    bounty_id: str | None = None
    related_entry_id: str | None = None
    description: str
    created_at: datetime


class LedgerPageResponse(BaseModel):
    balance: BalanceResponse
    entries: list[LedgerEntryResponse]
    total_count: int
    limit: int
    offset: int


class AdjustmentResponse(BaseModel):
    entry: LedgerEntryResponse
    balance: BalanceResponse
