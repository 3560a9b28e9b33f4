"""Service wiring and request dependencies for the HTTP API."""

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request

from skillswap.common.config import settings
from skillswap.common.db import SessionLocal
from skillswap.common.ratelimit import RateLimitExceeded, TokenBucket
from skillswap.services.bounties.service import BountyService
from skillswap.services.ledger.reservations import ReservationManager
from skillswap.services.ledger.store import LedgerStore
from skillswap.services.ledger.transfers import TransferEngine
from skillswap.services.live_classes.service import LiveClassService
from skillswap.services.sessions.service import SessionService
from skillswap.services.sessions.sweeper import ExpirySweeper


@dataclass
class Services:
    session_factory: object
    store: LedgerStore
    reservations: ReservationManager
    transfers: TransferEngine
    sessions: SessionService
    bounties: BountyService
    live_classes: LiveClassService
    sweeper: ExpirySweeper


def build_services(session_factory) -> Services:
    """Wire every component against one session factory."""

    store = LedgerStore(session_factory, initial_grant=settings.initial_credit_grant)
    reservations = ReservationManager(store)
    transfers = TransferEngine(store)
    sessions = SessionService(
        session_factory,
        store,
        reservations,
        transfers,
        max_session_credits=settings.max_session_credits,
    )
    bounties = BountyService(
        session_factory,
        store,
        reservations,
        sessions,
        min_claim_level=settings.bounty_min_claim_level,
    )
    live_classes = LiveClassService(
        session_factory,
        store,
        sessions,
        min_host_level=settings.live_class_min_host_level,
        default_capacity=settings.live_class_default_capacity,
    )
    sweeper = ExpirySweeper(
        session_factory,
        sessions,
        bounties=bounties,
        timeout_hours=settings.reservation_timeout_hours,
        batch_size=settings.sweep_batch_size,
    )
    return Services(
        session_factory=session_factory,
        store=store,
        reservations=reservations,
        transfers=transfers,
        sessions=sessions,
        bounties=bounties,
        live_classes=live_classes,
        sweeper=sweeper,
    )


@lru_cache
def get_services() -> Services:
    return build_services(SessionLocal)


@lru_cache
def get_rate_limiter() -> TokenBucket:
    return TokenBucket.from_url(settings.redis_url, settings.rate_limit_per_minute)


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Actor identity forwarded by the upstream auth layer."""

    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    return x_user_id


def is_operator(x_api_key: str | None = Header(default=None)) -> bool:
    return x_api_key is not None and x_api_key == settings.api_key


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def rate_limit(request: Request, limiter: TokenBucket = Depends(get_rate_limiter)) -> None:
    actor = request.headers.get("x-user-id") or (request.client.host if request.client else "anonymous")
    try:
        limiter.consume(actor)
    except RateLimitExceeded as exc:
        raise HTTPException(status_code=429, detail="rate limit exceeded") from exc
