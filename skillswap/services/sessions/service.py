"""Session lifecycle service.

Every lifecycle call is one database transaction: lock the session row,
check the caller's role, decide apply / replay / reject from the current
status, run the ledger side effect, then write the guarded status update,
its timeline row and its outbox event. A failure anywhere rolls all of it
back, so a session status and its credit movements never disagree.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from skillswap.common.db import as_utc, utcnow
from skillswap.common.errors import (
    AlreadyCompleted,
    Conflict,
    Forbidden,
    InvalidRequest,
    NotFound,
    SkillSwapError,
)
from skillswap.common.idempotency import client_key, entry_key, hold_key, lookup, remember
from skillswap.common.logging import logger, session_id_ctx, trace_id_ctx
from skillswap.common.metrics import (
    idempotent_replays_total,
    session_transition_errors_total,
    session_transitions_total,
)
from skillswap.common.outbox import enqueue_event
from skillswap.common.state_machine import (
    APPLY,
    CANCELLED,
    COMPLETED,
    DISPUTED,
    IN_PROGRESS,
    OPERATOR,
    REPLAY,
    REQUESTED,
    RULES,
    SCHEDULED,
    SESSION_STATUSES,
    TEACHER,
    plan_transition,
    validate_transition,
)
from skillswap.services.ledger.models import EARNED, SPENT, UNLOCKED, LedgerEntry
from skillswap.services.ledger.reservations import ReservationManager
from skillswap.services.ledger.store import LedgerStore
from skillswap.services.ledger.transfers import TransferEngine
from skillswap.services.sessions.models import (
    DIRECT,
    LIVE_CLASS,
    ORIGINS,
    SKILL_ACTIVE,
    SKILL_INACTIVE,
    OutboxEvent,
    Skill,
    SessionTimeline,
    SkillSession,
)

APPLIED = "applied"
REPLAYED = "replayed"
SYSTEM_ACTOR = "system"

CREATE_SCOPE = "session.create"

# listener(db, session, event, from_status, to_status), called inside the transition transaction.
Listener = Callable[..., None]


@dataclass
class TransitionResult:
    session: SkillSession
    outcome: str
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def replayed(self) -> bool:
        return self.outcome == REPLAYED


class SessionService:
    """Owns session state progression and its ledger side effects."""

    def __init__(
        self,
        session_factory,
        store: LedgerStore,
        reservations: ReservationManager,
        transfers: TransferEngine,
        max_session_credits: int,
        service_name: str = "sessions",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.reservations = reservations
        self.transfers = transfers
        self.max_session_credits = max_session_credits
        self.service_name = service_name
        self.listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    # catalog mirror

    def upsert_skill(self, skill_id: str, teacher_id: str, title: str, credits_required: int, status: str) -> Skill:
        if status not in (SKILL_ACTIVE, SKILL_INACTIVE):
            raise InvalidRequest(f"unknown skill status: {status}", details={"status": status})
        with self.session_factory() as db:
            skill = db.get(Skill, skill_id)
            if skill is None:
                skill = Skill(id=skill_id)
                db.add(skill)
            skill.teacher_id = teacher_id
            skill.title = title
            skill.credits_required = credits_required
            skill.status = status
            db.commit()
            return skill

    # creation

    def open_session(
        self,
        db,
        *,
        learner_id: str,
        teacher_id: str,
        credits: int,
        origin: str,
        status: str,
        actor_id: str,
        skill_id: str | None = None,
        scheduled_at: datetime | None = None,
        reason: str = "",
    ) -> tuple[SkillSession, LedgerEntry]:
        """Insert a session and reserve its credits in the caller's transaction.

        Shared by direct requests, bounty claims and live-class bookings.
        """

        if origin not in ORIGINS:
            raise InvalidRequest(f"unknown session origin: {origin}")
        if isinstance(credits, bool) or not isinstance(credits, int) or not 0 < credits <= self.max_session_credits:
            raise InvalidRequest(
                f"credits must be between 1 and {self.max_session_credits}",
                details={"credits": credits},
            )
        if learner_id == teacher_id:
            raise InvalidRequest("learner and teacher must be different users")
        self.store.get_account(db, teacher_id)

        now = utcnow()
        session = SkillSession(
            id=str(uuid4()),
            learner_id=learner_id,
            teacher_id=teacher_id,
            skill_id=skill_id,
            origin=origin,
            status=status,
            state_version=0,
            credits_amount=credits,
            credits_locked=True,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        db.flush()
        hold = self.reservations.reserve(
            db,
            learner_id,
            credits,
            session_id=session.id,
            description=f"Credits reserved for session {session.id}",
        )
        db.add(
            SessionTimeline(
                session_id=session.id,
                from_state=None,
                to_state=status,
                event="create",
                actor_id=actor_id,
                reason=reason or f"{origin}_created",
            )
        )
        self._enqueue(db, session, f"sessions.{status}", actor_id)
        db.flush()
        session_transitions_total.labels(service=self.service_name, event="create", outcome=APPLIED).inc()
        logger.info(
            "session_opened session_id=%s origin=%s learner_id=%s teacher_id=%s credits=%s",
            session.id,
            origin,
            learner_id,
            teacher_id,
            credits,
        )
        return session, hold

    def create_request(
        self,
        learner_id: str,
        teacher_id: str,
        skill_id: str,
        credits_amount: int,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        """Learner books a skill: new `requested` session plus its credit hold."""

        try:
            with self.session_factory() as db:
                self.store.lock_account(db, learner_id)
                key = client_key(learner_id, idempotency_key) if idempotency_key else None
                if key is not None:
                    existing_id = lookup(db, CREATE_SCOPE, key)
                    if existing_id is not None:
                        idempotent_replays_total.labels(service=self.service_name, operation=CREATE_SCOPE).inc()
                        return TransitionResult(session=db.get(SkillSession, existing_id), outcome=REPLAYED)

                skill = db.get(Skill, skill_id)
                if skill is None:
                    raise NotFound(f"skill {skill_id} not found", details={"skill_id": skill_id})
                if skill.teacher_id != teacher_id:
                    raise InvalidRequest("skill does not belong to this teacher", details={"skill_id": skill_id})
                if skill.status != SKILL_ACTIVE:
                    raise InvalidRequest("skill is not active", details={"skill_id": skill_id})
                if credits_amount != skill.credits_required:
                    raise InvalidRequest(
                        "credits must match the skill price",
                        details={"credits": credits_amount, "credits_required": skill.credits_required},
                    )

                session, hold = self.open_session(
                    db,
                    learner_id=learner_id,
                    teacher_id=teacher_id,
                    credits=credits_amount,
                    origin=DIRECT,
                    status=REQUESTED,
                    actor_id=learner_id,
                    skill_id=skill_id,
                )
                if key is not None:
                    remember(db, CREATE_SCOPE, key, session.id)
                db.commit()
                return TransitionResult(session=session, outcome=APPLIED, entries=[hold])
        except IntegrityError as exc:
            raise Conflict("concurrent request with the same idempotency key") from exc
        except SkillSwapError as exc:
            self._record_error("create", exc)
            raise

    # lifecycle events

    def accept(self, session_id: str, actor_id: str) -> TransitionResult:
        return self._run(session_id, "accept", actor_id)

    def schedule(self, session_id: str, actor_id: str, scheduled_at: datetime) -> TransitionResult:
        return self._run(session_id, "schedule", actor_id, scheduled_at=scheduled_at)

    def start(self, session_id: str, actor_id: str) -> TransitionResult:
        return self._run(session_id, "start", actor_id)

    def complete(self, session_id: str, actor_id: str) -> TransitionResult:
        return self._run(session_id, "complete", actor_id)

    def cancel(self, session_id: str, actor_id: str, reason: str | None = None) -> TransitionResult:
        return self._run(session_id, "cancel", actor_id, reason=reason)

    def dispute(self, session_id: str, actor_id: str, reason: str) -> TransitionResult:
        return self._run(session_id, "dispute", actor_id, reason=reason)

    def resolve(self, session_id: str, outcome: str, reason: str, operator_id: str = OPERATOR) -> TransitionResult:
        """Operator settles a disputed session by completing or cancelling it."""

        if outcome not in ("complete", "cancel"):
            raise InvalidRequest("resolution must be 'complete' or 'cancel'")
        return self._run(session_id, f"resolve_{outcome}", operator_id, reason=reason, operator=True)

    def _run(self, session_id: str, event: str, actor_id: str, **options) -> TransitionResult:
        # A losing writer on a unique ledger key retries once and then sees the settled state.
        for attempt in (1, 2):
            try:
                with self.session_factory() as db:
                    result = self.apply(db, session_id, event, actor_id, **options)
                    db.commit()
                    return result
            except IntegrityError as exc:
                logger.info("session_transition_raced session_id=%s event=%s attempt=%s", session_id, event, attempt)
                if attempt == 2:
                    raise Conflict(
                        f"session {session_id} changed concurrently; retry",
                        details={"session_id": session_id, "event": event},
                    ) from exc
        raise AssertionError("unreachable")

    def apply(
        self,
        db,
        session_id: str,
        event: str,
        actor_id: str | None,
        *,
        reason: str | None = None,
        scheduled_at: datetime | None = None,
        operator: bool = False,
        system: bool = False,
        via_adapter: bool = False,
    ) -> TransitionResult:
        """Run one lifecycle event inside the caller's transaction."""

        token = session_id_ctx.set(session_id)
        try:
            session = self.lock_session(db, session_id)
            return self._apply_locked(
                db,
                session,
                event,
                actor_id,
                reason=reason,
                scheduled_at=scheduled_at,
                operator=operator,
                system=system,
                via_adapter=via_adapter,
            )
        except SkillSwapError as exc:
            self._record_error(event, exc)
            raise
        finally:
            session_id_ctx.reset(token)

    def _apply_locked(
        self,
        db,
        session: SkillSession,
        event: str,
        actor_id: str | None,
        *,
        reason: str | None,
        scheduled_at: datetime | None,
        operator: bool,
        system: bool,
        via_adapter: bool,
    ) -> TransitionResult:
        rule = RULES[event]
        self._authorize(session, rule, actor_id, operator=operator, system=system, via_adapter=via_adapter)
        outcome = plan_transition(rule, session.status)

        if event == "schedule":
            scheduled_at = self._validate_schedule(scheduled_at)
            if outcome == APPLY and session.status == SCHEDULED and as_utc(session.scheduled_at) == scheduled_at:
                outcome = REPLAY
        if event == "dispute" and not (reason or "").strip():
            raise InvalidRequest("a dispute needs a reason")

        if outcome == REPLAY:
            session_transitions_total.labels(service=self.service_name, event=event, outcome=REPLAYED).inc()
            logger.info("session_transition_replayed session_id=%s event=%s status=%s", session.id, event, session.status)
            settled = self._settled_entries(db, session, rule.target)
            return TransitionResult(session=session, outcome=REPLAYED, entries=settled)

        actor = actor_id or SYSTEM_ACTOR
        now = utcnow()
        entries: list[LedgerEntry] = []
        fields: dict = {}
        if rule.target == SCHEDULED:
            fields["scheduled_at"] = scheduled_at
        elif rule.target == IN_PROGRESS:
            fields["started_at"] = now
        elif rule.target == COMPLETED:
            entries = self._transfer(db, session)
            fields.update(completed_at=now, credits_locked=False)
        elif rule.target == CANCELLED:
            if session.credits_locked:
                entries = [self.reservations.release(db, session_id=session.id)]
            fields.update(
                cancelled_at=now, cancelled_by=actor, cancellation_reason=reason or "cancelled", credits_locked=False
            )
        elif rule.target == DISPUTED:
            fields.update(disputed_at=now, disputed_by=actor, dispute_reason=reason)

        self._transition(db, session, rule.target, event, actor, reason or event, **fields)
        return TransitionResult(session=session, outcome=APPLIED, entries=entries)

    def _transfer(self, db, session: SkillSession) -> list[LedgerEntry]:
        try:
            transfer = self.transfers.complete(db, session)
        except AlreadyCompleted as exc:
            # Credits moved earlier but the status write never landed; finish the status move only.
            logger.warning("session_transfer_already_applied session_id=%s status=%s", session.id, session.status)
            transfer = exc.result
        return [transfer.spent, transfer.earned]

    def _settled_entries(self, db, session: SkillSession, target: str) -> list[LedgerEntry]:
        """Entries that settled the session into `target`, looked up by their structural keys."""

        if session.status != target:
            return []
        if target == COMPLETED:
            types = (SPENT, EARNED)
        elif target == CANCELLED:
            types = (UNLOCKED,)
        else:
            return []
        prefix = hold_key(session_id=session.id)
        entries = [self.store.entry_by_key(db, entry_key(prefix, entry_type)) for entry_type in types]
        return [entry for entry in entries if entry is not None]

    def _authorize(self, session: SkillSession, rule, actor_id, *, operator: bool, system: bool, via_adapter: bool) -> None:
        if rule.actor == OPERATOR:
            if not operator:
                raise Forbidden("operator access required", details={"event": rule.event})
            return
        if system:
            return
        if session.origin == LIVE_CLASS and not via_adapter:
            raise Forbidden(
                "live-class sessions are managed through the class",
                details={"session_id": session.id, "event": rule.event},
            )
        if rule.actor == TEACHER and actor_id != session.teacher_id:
            raise Forbidden(f"only the teacher can {rule.event} this session", details={"event": rule.event})
        if actor_id not in (session.learner_id, session.teacher_id):
            raise Forbidden("not a participant of this session", details={"session_id": session.id})

    def _validate_schedule(self, scheduled_at: datetime | None) -> datetime:
        if scheduled_at is None:
            raise InvalidRequest("scheduled_at is required")
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= utcnow():
            raise InvalidRequest("scheduled_at must be in the future")
        return scheduled_at

    def lock_session(self, db, session_id: str, skip_locked: bool = False) -> SkillSession | None:
        """Row-lock one session; with `skip_locked` a busy row yields None."""

        session = db.execute(
            select(SkillSession)
            .where(SkillSession.id == session_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if session is None and not skip_locked:
            raise NotFound(f"session {session_id} not found", details={"session_id": session_id})
        return session

    def _transition(
        self,
        db,
        session: SkillSession,
        new_status: str,
        event: str,
        actor_id: str,
        reason: str,
        **fields,
    ) -> None:
        """Apply one validated status change with optimistic concurrency.

        The write is guarded by `(id, status, state_version)` so a stale
        concurrent writer loses with `Conflict` instead of overwriting.
        """

        validate_transition(session.status, new_status)
        from_status = session.status
        current_version = session.state_version

        result = db.execute(
            update(SkillSession)
            .where(
                SkillSession.id == session.id,
                SkillSession.status == from_status,
                SkillSession.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=utcnow(), **fields)
        )
        if result.rowcount != 1:
            raise Conflict(
                f"session {session.id} changed concurrently (expected version {current_version})",
                details={"session_id": session.id, "expected_version": current_version},
            )

        # The ORM-enabled UPDATE synchronizes `session` in the identity map.
        db.add(
            SessionTimeline(
                session_id=session.id,
                from_state=from_status,
                to_state=new_status,
                event=event,
                actor_id=actor_id,
                reason=reason,
            )
        )
        self._enqueue(db, session, f"sessions.{new_status}", actor_id, reason=reason)
        db.flush()
        for listener in self.listeners:
            listener(db, session, event, from_status, new_status)
        session_transitions_total.labels(service=self.service_name, event=event, outcome=APPLIED).inc()
        logger.info(
            "session_transition session_id=%s event=%s from=%s to=%s actor_id=%s",
            session.id,
            event,
            from_status,
            new_status,
            actor_id,
        )

    def _enqueue(self, db, session: SkillSession, event_type: str, actor_id: str, reason: str = "") -> None:
        enqueue_event(
            db,
            OutboxEvent,
            aggregate_type="session",
            aggregate_id=session.id,
            event_type=event_type,
            trace_id=trace_id_ctx.get(),
            payload={
                "session_id": session.id,
                "learner_id": session.learner_id,
                "teacher_id": session.teacher_id,
                "origin": session.origin,
                "status": session.status,
                "credits_amount": session.credits_amount,
                "actor_id": actor_id,
                "reason": reason,
            },
        )

    def _record_error(self, event: str, exc: SkillSwapError) -> None:
        session_transition_errors_total.labels(service=self.service_name, event=event, error_code=exc.code).inc()
        logger.info("session_transition_rejected event=%s code=%s message=%s", event, exc.code, exc.message)

    # reads

    def get(self, session_id: str, actor_id: str | None = None, operator: bool = False) -> SkillSession:
        with self.session_factory() as db:
            session = db.get(SkillSession, session_id)
            if session is None:
                raise NotFound(f"session {session_id} not found", details={"session_id": session_id})
            if not operator and actor_id not in (session.learner_id, session.teacher_id):
                raise Forbidden("not a participant of this session", details={"session_id": session_id})
            return session

    def timeline(self, session_id: str, actor_id: str | None = None, operator: bool = False) -> list[SessionTimeline]:
        self.get(session_id, actor_id=actor_id, operator=operator)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(SessionTimeline)
                    .where(SessionTimeline.session_id == session_id)
                    .order_by(SessionTimeline.created_at)
                ).scalars()
            )

    def list_for_user(self, user_id: str, status: str | None = None, limit: int = 50) -> list[SkillSession]:
        if status is not None and status not in SESSION_STATUSES:
            raise InvalidRequest(f"unknown session status: {status}", details={"status": status})
        with self.session_factory() as db:
            query = select(SkillSession).where(
                or_(SkillSession.learner_id == user_id, SkillSession.teacher_id == user_id)
            )
            if status is not None:
                query = query.where(SkillSession.status == status)
            return list(db.execute(query.order_by(SkillSession.created_at.desc()).limit(limit)).scalars())

    def ledger_entries(self, session_id: str) -> list[LedgerEntry]:
        with self.session_factory() as db:
            return self.store.entries_for_session(db, session_id)
