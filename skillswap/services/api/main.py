"""HTTP surface for the credit ledger, session lifecycle, bounties and live classes.

Actor identity arrives in `X-User-Id` from the upstream auth layer; operator
and internal routes require `X-API-Key`. The outbox publisher and the expiry
sweeper run as background tasks for the lifetime of the app.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from skillswap.common.config import settings
from skillswap.common.errors import Forbidden, SkillSwapError
from skillswap.common.events import KafkaBus
from skillswap.common.logging import configure_logging, logger, trace_id_ctx, user_id_ctx
from skillswap.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from skillswap.common.outbox import run_outbox_publisher
from skillswap.common.startup import log_startup_config
from skillswap.common.tracing import instrument_app, setup_tracing
from skillswap.services.api.deps import (
    Services,
    current_user,
    get_services,
    is_operator,
    rate_limit,
    require_api_key,
)
from skillswap.services.bounties.schemas import BountyActionResponse, BountyCreateRequest, BountyResponse
from skillswap.services.ledger.schemas import (
    AccountCreateRequest,
    AdjustmentRequest,
    AdjustmentResponse,
    BalanceResponse,
    LedgerEntryResponse,
    LedgerPageResponse,
    LevelUpdateRequest,
)
from skillswap.services.live_classes.schemas import (
    AttendanceResponse,
    BookingResponse,
    ClassCompletionResponse,
    LiveClassCreateRequest,
    LiveClassResponse,
)
from skillswap.services.sessions.models import OutboxEvent
from skillswap.services.sessions.schemas import (
    CancelRequest,
    DisputeRequest,
    ResolveRequest,
    ScheduleRequest,
    SessionCreateRequest,
    SessionResponse,
    SkillResponse,
    SkillUpsertRequest,
    TimelineEntryResponse,
    TransitionResponse,
)

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "RATE_LIMIT_PER_MINUTE",
        "MAX_SESSION_CREDITS",
        "INITIAL_CREDIT_GRANT",
        "RESERVATION_TIMEOUT_HOURS",
        "SWEEP_INTERVAL_SECONDS",
    ],
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and expiry sweeper with the app lifecycle."""

    services = get_services()
    bus = KafkaBus()
    tasks = []
    if settings.outbox_publisher_enabled:
        tasks.append(
            asyncio.create_task(
                run_outbox_publisher(services.session_factory, OutboxEvent, bus, settings.service_name)
            )
        )
    if settings.sweeper_enabled:
        tasks.append(asyncio.create_task(services.sweeper.run_forever(settings.sweep_interval_seconds)))
    yield
    for task in tasks:
        task.cancel()
    await bus.close()


app = FastAPI(title="SkillSwap Credits", lifespan=lifespan)
instrument_app(app)


@app.exception_handler(SkillSwapError)
async def skillswap_error_handler(_: Request, exc: SkillSwapError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency; bind correlation ids for logging."""

    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    user_id_ctx.set(request.headers.get("x-user-id") or "")
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _transition_response(result) -> TransitionResponse:
    return TransitionResponse(
        session=SessionResponse.model_validate(result.session),
        replayed=result.replayed,
        entries=[LedgerEntryResponse.model_validate(entry) for entry in result.entries],
    )


def _ensure_self(user_id: str, actor_id: str | None, operator: bool) -> None:
    if not operator and actor_id != user_id:
        raise Forbidden("cannot read another user's ledger", details={"user_id": user_id})


# sessions


@app.post("/sessions", response_model=TransitionResponse, status_code=201, dependencies=[Depends(rate_limit)])
def create_session(
    req: SessionCreateRequest,
    response: Response,
    actor_id: str = Depends(current_user),
    idempotency_key: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    """Request a session with a teacher; holds `credits_amount` from the learner."""

    result = services.sessions.create_request(
        learner_id=actor_id,
        teacher_id=req.teacher_id,
        skill_id=req.skill_id,
        credits_amount=req.credits_amount,
        idempotency_key=idempotency_key,
    )
    if result.replayed:
        response.status_code = 200
    return _transition_response(result)


@app.post("/sessions/{session_id}/accept", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def accept_session(session_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return _transition_response(services.sessions.accept(session_id, actor_id))


@app.post("/sessions/{session_id}/schedule", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def schedule_session(
    session_id: str,
    req: ScheduleRequest,
    actor_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    return _transition_response(services.sessions.schedule(session_id, actor_id, req.scheduled_at))


@app.post("/sessions/{session_id}/start", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def start_session(session_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return _transition_response(services.sessions.start(session_id, actor_id))


@app.post("/sessions/{session_id}/complete", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def complete_session(
    session_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)
):
    """Complete a session and move its held credits to the teacher."""

    return _transition_response(services.sessions.complete(session_id, actor_id))


@app.post("/sessions/{session_id}/cancel", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def cancel_session(
    session_id: str,
    req: CancelRequest | None = None,
    actor_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    reason = req.reason if req is not None else None
    return _transition_response(services.sessions.cancel(session_id, actor_id, reason=reason))


@app.post("/sessions/{session_id}/dispute", response_model=TransitionResponse, dependencies=[Depends(rate_limit)])
def dispute_session(
    session_id: str,
    req: DisputeRequest,
    actor_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    return _transition_response(services.sessions.dispute(session_id, actor_id, req.reason))


@app.post(
    "/sessions/{session_id}/resolve",
    response_model=TransitionResponse,
    dependencies=[Depends(require_api_key)],
)
def resolve_session(session_id: str, req: ResolveRequest, services: Services = Depends(get_services)):
    """Operator decision on a disputed session."""

    return _transition_response(services.sessions.resolve(session_id, req.outcome, req.reason))


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    x_user_id: str | None = Header(default=None),
    operator: bool = Depends(is_operator),
    services: Services = Depends(get_services),
):
    session = services.sessions.get(session_id, actor_id=x_user_id, operator=operator)
    return SessionResponse.model_validate(session)


@app.get("/sessions/{session_id}/timeline", response_model=list[TimelineEntryResponse])
def get_session_timeline(
    session_id: str,
    x_user_id: str | None = Header(default=None),
    operator: bool = Depends(is_operator),
    services: Services = Depends(get_services),
):
    rows = services.sessions.timeline(session_id, actor_id=x_user_id, operator=operator)
    return [TimelineEntryResponse.model_validate(row) for row in rows]


@app.get("/users/{user_id}/sessions", response_model=list[SessionResponse])
def list_user_sessions(
    user_id: str,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    x_user_id: str | None = Header(default=None),
    operator: bool = Depends(is_operator),
    services: Services = Depends(get_services),
):
    _ensure_self(user_id, x_user_id, operator)
    return [SessionResponse.model_validate(s) for s in services.sessions.list_for_user(user_id, status, limit)]


# ledger


@app.get("/users/{user_id}/balance", response_model=BalanceResponse)
def get_balance(
    user_id: str,
    x_user_id: str | None = Header(default=None),
    operator: bool = Depends(is_operator),
    services: Services = Depends(get_services),
):
    """Derived `{total, reserved, available}`; never cached."""

    _ensure_self(user_id, x_user_id, operator)
    return BalanceResponse(**services.store.get_balance(user_id).as_dict())


@app.get("/users/{user_id}/ledger", response_model=LedgerPageResponse)
def get_ledger(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    x_user_id: str | None = Header(default=None),
    operator: bool = Depends(is_operator),
    services: Services = Depends(get_services),
):
    _ensure_self(user_id, x_user_id, operator)
    entries, total_count, balance = services.store.history(user_id, limit=limit, offset=offset)
    return LedgerPageResponse(
        balance=BalanceResponse(**balance.as_dict()),
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        total_count=total_count,
        limit=limit,
        offset=offset,
    )


@app.post(
    "/internal/accounts",
    response_model=BalanceResponse,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
def open_account(req: AccountCreateRequest, services: Services = Depends(get_services)):
    """Profile-created hook: open the ledger and post the initial grant."""

    balance = services.store.open_account(req.user_id, level=req.level, initial_grant=req.initial_grant)
    return BalanceResponse(**balance.as_dict())


@app.post("/internal/accounts/{user_id}/level", dependencies=[Depends(require_api_key)])
def set_account_level(user_id: str, req: LevelUpdateRequest, services: Services = Depends(get_services)):
    account = services.store.set_level(user_id, req.level)
    return {"user_id": account.user_id, "level": account.level}


@app.post(
    "/internal/accounts/{user_id}/adjustments",
    response_model=AdjustmentResponse,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
def post_adjustment(user_id: str, req: AdjustmentRequest, services: Services = Depends(get_services)):
    entry, balance = services.store.post_adjustment(
        user_id,
        req.amount,
        description=req.description,
        idempotency_key=req.idempotency_key,
        entry_type=req.entry_type,
    )
    return AdjustmentResponse(
        entry=LedgerEntryResponse.model_validate(entry),
        balance=BalanceResponse(**balance.as_dict()),
    )


@app.put("/internal/skills/{skill_id}", response_model=SkillResponse, dependencies=[Depends(require_api_key)])
def upsert_skill(skill_id: str, req: SkillUpsertRequest, services: Services = Depends(get_services)):
    skill = services.sessions.upsert_skill(
        skill_id,
        teacher_id=req.teacher_id,
        title=req.title,
        credits_required=req.credits_required,
        status=req.status,
    )
    return SkillResponse.model_validate(skill)


# bounties


def _bounty_response(outcome) -> BountyActionResponse:
    return BountyActionResponse(
        bounty=BountyResponse.model_validate(outcome.bounty),
        session=SessionResponse.model_validate(outcome.session) if outcome.session is not None else None,
        replayed=outcome.replayed,
    )


@app.post("/bounties", response_model=BountyActionResponse, status_code=201, dependencies=[Depends(rate_limit)])
def post_bounty(
    req: BountyCreateRequest,
    response: Response,
    actor_id: str = Depends(current_user),
    idempotency_key: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    outcome = services.bounties.post(
        actor_id,
        req.title,
        req.credits_offered,
        description=req.description,
        expires_at=req.expires_at,
        idempotency_key=idempotency_key,
    )
    if outcome.replayed:
        response.status_code = 200
    return _bounty_response(outcome)


@app.get("/bounties", response_model=list[BountyResponse])
def list_bounties(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
):
    return [BountyResponse.model_validate(b) for b in services.bounties.list_open(limit=limit, offset=offset)]


@app.get("/bounties/{bounty_id}", response_model=BountyResponse)
def get_bounty(bounty_id: str, services: Services = Depends(get_services)):
    return BountyResponse.model_validate(services.bounties.get(bounty_id))


@app.post("/bounties/{bounty_id}/claim", response_model=BountyActionResponse, dependencies=[Depends(rate_limit)])
def claim_bounty(bounty_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return _bounty_response(services.bounties.claim(bounty_id, actor_id))


@app.post("/bounties/{bounty_id}/cancel", response_model=BountyActionResponse, dependencies=[Depends(rate_limit)])
def cancel_bounty(bounty_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return _bounty_response(services.bounties.cancel(bounty_id, actor_id))


# live classes


@app.post("/live-classes", response_model=LiveClassResponse, status_code=201, dependencies=[Depends(rate_limit)])
def create_live_class(
    req: LiveClassCreateRequest,
    actor_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    live_class = services.live_classes.create_class(
        actor_id,
        req.title,
        req.scheduled_at,
        req.credit_cost,
        description=req.description,
        duration_minutes=req.duration_minutes,
        max_attendees=req.max_attendees,
    )
    return LiveClassResponse.model_validate(live_class)


@app.get("/live-classes/{class_id}", response_model=LiveClassResponse)
def get_live_class(class_id: str, services: Services = Depends(get_services)):
    return LiveClassResponse.model_validate(services.live_classes.get(class_id))


@app.get("/live-classes/{class_id}/roster", response_model=list[AttendanceResponse])
def get_live_class_roster(class_id: str, services: Services = Depends(get_services)):
    return [AttendanceResponse.model_validate(a) for a in services.live_classes.roster(class_id)]


@app.post("/live-classes/{class_id}/book", response_model=BookingResponse, dependencies=[Depends(rate_limit)])
def book_live_class(class_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    booking = services.live_classes.book(class_id, actor_id)
    return BookingResponse(attendance=AttendanceResponse.model_validate(booking.attendance), replayed=booking.replayed)


@app.post("/live-classes/{class_id}/leave", response_model=BookingResponse, dependencies=[Depends(rate_limit)])
def leave_live_class(class_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    booking = services.live_classes.leave(class_id, actor_id)
    return BookingResponse(attendance=AttendanceResponse.model_validate(booking.attendance), replayed=booking.replayed)


@app.post("/live-classes/{class_id}/start", response_model=LiveClassResponse, dependencies=[Depends(rate_limit)])
def start_live_class(class_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return LiveClassResponse.model_validate(services.live_classes.start_class(class_id, actor_id))


@app.post(
    "/live-classes/{class_id}/complete",
    response_model=ClassCompletionResponse,
    dependencies=[Depends(rate_limit)],
)
def complete_live_class(
    class_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)
):
    completion = services.live_classes.complete_class(class_id, actor_id)
    return ClassCompletionResponse(
        class_id=completion.class_id,
        completed_attendees=completion.completed_attendees,
        total_credits_transferred=completion.total_credits_transferred,
        replayed=completion.replayed,
    )


@app.post("/live-classes/{class_id}/cancel", response_model=LiveClassResponse, dependencies=[Depends(rate_limit)])
def cancel_live_class(class_id: str, actor_id: str = Depends(current_user), services: Services = Depends(get_services)):
    return LiveClassResponse.model_validate(services.live_classes.cancel_class(class_id, actor_id))


# operations


class SweepRequest(BaseModel):
    now: datetime | None = None


@app.post("/internal/sweep", dependencies=[Depends(require_api_key)])
def sweep_expired(req: SweepRequest | None = None, services: Services = Depends(get_services)):
    """Run one expiry pass immediately."""

    report = services.sweeper.sweep_expired(now=req.now if req is not None else None)
    logger.info("manual sweep cancelled=%s", report.cancelled_count)
    return report.as_dict()


@app.get("/reconciliation", dependencies=[Depends(require_api_key)])
def reconciliation(limit: int = Query(default=1000, ge=1, le=10000), services: Services = Depends(get_services)):
    """Ledger invariant report: negative balances, unbalanced sessions, doubly resolved holds."""

    return services.store.reconcile(limit=limit)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
