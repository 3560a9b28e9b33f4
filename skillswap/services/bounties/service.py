"""Bounty entry point over the reservation manager and session state machine."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from skillswap.common.db import as_utc, utcnow, write_session
from skillswap.common.errors import (
    Conflict,
    Forbidden,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
    SkillSwapError,
)
from skillswap.common.idempotency import client_key, lookup, remember
from skillswap.common.logging import logger, trace_id_ctx
from skillswap.common.metrics import idempotent_replays_total
from skillswap.common.outbox import enqueue_event
from skillswap.common.state_machine import ACCEPTED
from skillswap.common.state_machine import CANCELLED as SESSION_CANCELLED
from skillswap.common.state_machine import COMPLETED as SESSION_COMPLETED
from skillswap.common.state_machine import IN_PROGRESS as SESSION_IN_PROGRESS
from skillswap.services.bounties.models import CANCELLED, CLAIMED, COMPLETED, IN_PROGRESS, OPEN, Bounty
from skillswap.services.ledger.reservations import ReservationManager
from skillswap.services.ledger.store import LedgerStore
from skillswap.services.sessions.models import BOUNTY, OutboxEvent, SkillSession
from skillswap.services.sessions.service import SessionService

POST_SCOPE = "bounty.post"

SESSION_TO_BOUNTY = {
    SESSION_IN_PROGRESS: IN_PROGRESS,
    SESSION_COMPLETED: COMPLETED,
    SESSION_CANCELLED: CANCELLED,
}


@dataclass
class BountyOutcome:
    bounty: Bounty
    session: SkillSession | None = None
    replayed: bool = False


class BountyService:
    """Post, claim and cancel bounties; keeps bounty status in step with its session."""

    def __init__(
        self,
        session_factory,
        store: LedgerStore,
        reservations: ReservationManager,
        sessions: SessionService,
        min_claim_level: int,
        service_name: str = "bounties",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.reservations = reservations
        self.sessions = sessions
        self.min_claim_level = min_claim_level
        self.service_name = service_name
        sessions.add_listener(self._on_session_transition)

    def _lock_bounty(self, db, bounty_id: str, skip_locked: bool = False) -> Bounty | None:
        bounty = db.execute(
            select(Bounty)
            .where(Bounty.id == bounty_id)
            .with_for_update(skip_locked=skip_locked)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if bounty is None and not skip_locked:
            raise NotFound(f"bounty {bounty_id} not found", details={"bounty_id": bounty_id})
        return bounty

    def _enqueue(self, db, bounty: Bounty, event_type: str) -> None:
        enqueue_event(
            db,
            OutboxEvent,
            aggregate_type="bounty",
            aggregate_id=bounty.id,
            event_type=event_type,
            trace_id=trace_id_ctx.get(),
            payload={
                "bounty_id": bounty.id,
                "poster_id": bounty.poster_id,
                "claimer_id": bounty.claimer_id,
                "credits_offered": bounty.credits_offered,
                "status": bounty.status,
                "session_id": bounty.session_id,
            },
        )

    def post(
        self,
        poster_id: str,
        title: str,
        credits_offered: int,
        description: str = "",
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> BountyOutcome:
        """Publish a bounty and hold `credits_offered` from the poster."""

        if not 0 < credits_offered <= self.sessions.max_session_credits:
            raise InvalidRequest(
                f"credits must be between 1 and {self.sessions.max_session_credits}",
                details={"credits": credits_offered},
            )
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= utcnow():
                raise InvalidRequest("expires_at must be in the future")

        try:
            with self.session_factory() as db:
                self.store.lock_account(db, poster_id)
                key = client_key(poster_id, idempotency_key) if idempotency_key else None
                if key is not None:
                    existing_id = lookup(db, POST_SCOPE, key)
                    if existing_id is not None:
                        idempotent_replays_total.labels(service=self.service_name, operation=POST_SCOPE).inc()
                        return BountyOutcome(bounty=db.get(Bounty, existing_id), replayed=True)

                bounty = Bounty(
                    poster_id=poster_id,
                    title=title,
                    description=description,
                    credits_offered=credits_offered,
                    status=OPEN,
                    expires_at=expires_at,
                )
                db.add(bounty)
                db.flush()
                self.reservations.reserve(
                    db,
                    poster_id,
                    credits_offered,
                    bounty_id=bounty.id,
                    description=f"Credits reserved for bounty {bounty.id}",
                )
                self._enqueue(db, bounty, "bounties.open")
                if key is not None:
                    remember(db, POST_SCOPE, key, bounty.id)
                db.commit()
                logger.info("bounty_posted bounty_id=%s poster_id=%s credits=%s", bounty.id, poster_id, credits_offered)
                return BountyOutcome(bounty=bounty)
        except IntegrityError as exc:
            raise Conflict("concurrent request with the same idempotency key") from exc

    def claim(self, bounty_id: str, claimer_id: str) -> BountyOutcome:
        """Turn an open bounty into an accepted session taught by the claimer.

        The bounty hold is released and the same amount is reserved again on
        the new session, so the poster's available balance does not move.
        """

        with write_session(self.session_factory, "bounty.claim") as db:
            bounty = self._lock_bounty(db, bounty_id)
            if bounty.status in (CLAIMED, IN_PROGRESS, COMPLETED) and bounty.claimer_id == claimer_id:
                idempotent_replays_total.labels(service=self.service_name, operation="bounty.claim").inc()
                return BountyOutcome(bounty=bounty, session=db.get(SkillSession, bounty.session_id), replayed=True)
            if bounty.status != OPEN:
                raise InvalidStateTransition(
                    f"Cannot claim a bounty that is {bounty.status}",
                    details={"bounty_id": bounty_id, "status": bounty.status},
                )
            now = utcnow()
            if bounty.expires_at is not None and as_utc(bounty.expires_at) <= now:
                raise InvalidStateTransition("bounty has expired", details={"bounty_id": bounty_id})
            if claimer_id == bounty.poster_id:
                raise Forbidden("cannot claim your own bounty", details={"bounty_id": bounty_id})
            claimer = self.store.get_account(db, claimer_id)
            if claimer.level < self.min_claim_level:
                raise Forbidden(
                    f"claiming bounties requires level {self.min_claim_level}",
                    details={"level": claimer.level, "required": self.min_claim_level},
                )

            self.reservations.release(db, bounty_id=bounty.id)
            session, _ = self.sessions.open_session(
                db,
                learner_id=bounty.poster_id,
                teacher_id=claimer_id,
                credits=bounty.credits_offered,
                origin=BOUNTY,
                status=ACCEPTED,
                actor_id=claimer_id,
                reason="bounty_claimed",
            )
            bounty.status = CLAIMED
            bounty.claimer_id = claimer_id
            bounty.session_id = session.id
            bounty.claimed_at = now
            self._enqueue(db, bounty, "bounties.claimed")
            db.commit()
            logger.info("bounty_claimed bounty_id=%s claimer_id=%s session_id=%s", bounty.id, claimer_id, session.id)
            return BountyOutcome(bounty=bounty, session=session)

    def cancel(self, bounty_id: str, actor_id: str) -> BountyOutcome:
        with write_session(self.session_factory, "bounty.cancel") as db:
            bounty = self._lock_bounty(db, bounty_id)
            if actor_id != bounty.poster_id:
                raise Forbidden("only the poster can cancel a bounty", details={"bounty_id": bounty_id})
            if bounty.status == CANCELLED:
                return BountyOutcome(bounty=bounty, replayed=True)
            if bounty.status == COMPLETED:
                raise InvalidStateTransition("Cannot cancel a completed bounty", details={"bounty_id": bounty_id})

            session = None
            if bounty.status == OPEN:
                self.reservations.release(db, bounty_id=bounty.id)
                self._close(db, bounty, "cancelled_by_poster")
            else:
                result = self.sessions.apply(db, bounty.session_id, "cancel", actor_id, reason="bounty_cancelled")
                session = result.session
            db.commit()
            return BountyOutcome(bounty=bounty, session=session)

    def _close(self, db, bounty: Bounty, reason: str) -> None:
        bounty.status = CANCELLED
        bounty.cancelled_at = utcnow()
        bounty.cancellation_reason = reason
        self._enqueue(db, bounty, "bounties.cancelled")
        logger.info("bounty_cancelled bounty_id=%s reason=%s", bounty.id, reason)

    def expire_open(self, now: datetime | None = None) -> list[str]:
        """Cancel open bounties past `expires_at` and release their holds."""

        now = as_utc(now) if now is not None else utcnow()
        with self.session_factory() as db:
            candidates = list(
                db.execute(
                    select(Bounty.id).where(
                        Bounty.status == OPEN,
                        Bounty.expires_at.is_not(None),
                        Bounty.expires_at <= now,
                    )
                ).scalars()
            )
        expired = []
        for bounty_id in candidates:
            try:
                if self._expire_one(bounty_id):
                    expired.append(bounty_id)
            except SkillSwapError as exc:
                # Claimed or cancelled under us; the next pass re-evaluates it.
                logger.warning("bounty_expiry_skip bounty_id=%s code=%s", bounty_id, exc.code)
        return expired

    def _expire_one(self, bounty_id: str) -> bool:
        with write_session(self.session_factory, "bounty.expire") as db:
            bounty = self._lock_bounty(db, bounty_id, skip_locked=True)
            if bounty is None or bounty.status != OPEN:
                return False
            self.reservations.release(db, bounty_id=bounty.id)
            self._close(db, bounty, "expired")
            db.commit()
            return True

    def _on_session_transition(self, db, session: SkillSession, event: str, from_status: str, to_status: str) -> None:
        if session.origin != BOUNTY or to_status not in SESSION_TO_BOUNTY:
            return
        bounty = db.execute(select(Bounty).where(Bounty.session_id == session.id)).scalar_one_or_none()
        if bounty is None:
            return
        new_status = SESSION_TO_BOUNTY[to_status]
        if new_status == CANCELLED:
            self._close(db, bounty, session.cancellation_reason or "session_cancelled")
            return
        bounty.status = new_status
        if new_status == COMPLETED:
            bounty.completed_at = utcnow()
        self._enqueue(db, bounty, f"bounties.{new_status}")

    # reads

    def get(self, bounty_id: str) -> Bounty:
        with self.session_factory() as db:
            bounty = db.get(Bounty, bounty_id)
            if bounty is None:
                raise NotFound(f"bounty {bounty_id} not found", details={"bounty_id": bounty_id})
            return bounty

    def list_open(self, limit: int = 50, offset: int = 0) -> list[Bounty]:
        now = utcnow()
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Bounty)
                    .where(
                        Bounty.status == OPEN,
                        or_(Bounty.expires_at.is_(None), Bounty.expires_at > now),
                    )
                    .order_by(Bounty.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars()
            )
