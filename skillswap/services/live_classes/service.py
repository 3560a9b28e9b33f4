"""Live-class entry point.

Each booking opens its own skill session (learner = attendee, teacher =
host), so seat holds, payouts and refunds go through the same reservation
and transfer paths as one-to-one sessions.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from skillswap.common.db import as_utc, utcnow, write_session
from skillswap.common.errors import Conflict, Forbidden, InvalidRequest, InvalidStateTransition, NotFound
from skillswap.common.logging import logger, trace_id_ctx
from skillswap.common.metrics import idempotent_replays_total
from skillswap.common.outbox import enqueue_event
from skillswap.common.state_machine import CANCELLED as SESSION_CANCELLED
from skillswap.common.state_machine import COMPLETED as SESSION_COMPLETED
from skillswap.common.state_machine import SCHEDULED as SESSION_SCHEDULED
from skillswap.services.ledger.store import LedgerStore
from skillswap.services.live_classes.models import (
    ACTIVE_ATTENDANCE,
    CANCELLED,
    COMPLETED,
    LEFT,
    LIVE,
    PAID,
    REFUNDED,
    RESERVED,
    SCHEDULED,
    Attendance,
    LiveClass,
)
from skillswap.services.sessions.models import LIVE_CLASS, OutboxEvent, SkillSession
from skillswap.services.sessions.service import SessionService

CLASS_CANCELLED_REASON = "class_cancelled"


@dataclass
class Booking:
    attendance: Attendance
    replayed: bool = False


@dataclass
class ClassCompletion:
    class_id: str
    completed_attendees: int
    total_credits_transferred: int
    replayed: bool = False


class LiveClassService:
    def __init__(
        self,
        session_factory,
        store: LedgerStore,
        sessions: SessionService,
        min_host_level: int,
        default_capacity: int,
        service_name: str = "live_classes",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.sessions = sessions
        self.min_host_level = min_host_level
        self.default_capacity = default_capacity
        self.service_name = service_name
        sessions.add_listener(self._on_session_transition)

    def _lock_class(self, db, class_id: str) -> LiveClass:
        live_class = db.execute(
            select(LiveClass)
            .where(LiveClass.id == class_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if live_class is None:
            raise NotFound(f"live class {class_id} not found", details={"class_id": class_id})
        return live_class

    def _require_host(self, live_class: LiveClass, actor_id: str) -> None:
        if actor_id != live_class.host_id:
            raise Forbidden("only the host can manage this class", details={"class_id": live_class.id})

    def _attendances(self, db, class_id: str, statuses=(RESERVED,)) -> list[Attendance]:
        return list(
            db.execute(
                select(Attendance)
                .where(Attendance.class_id == class_id, Attendance.paid_status.in_(statuses))
                .order_by(Attendance.joined_at)
            ).scalars()
        )

    def _enqueue(self, db, live_class: LiveClass, event_type: str, **extra) -> None:
        enqueue_event(
            db,
            OutboxEvent,
            aggregate_type="live_class",
            aggregate_id=live_class.id,
            event_type=event_type,
            trace_id=trace_id_ctx.get(),
            payload={"class_id": live_class.id, "host_id": live_class.host_id, "status": live_class.status, **extra},
        )

    def create_class(
        self,
        host_id: str,
        title: str,
        scheduled_at: datetime,
        credit_cost: int,
        description: str = "",
        duration_minutes: int = 60,
        max_attendees: int | None = None,
    ) -> LiveClass:
        if not 0 < credit_cost <= self.sessions.max_session_credits:
            raise InvalidRequest(
                f"credit cost must be between 1 and {self.sessions.max_session_credits}",
                details={"credit_cost": credit_cost},
            )
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= utcnow():
            raise InvalidRequest("scheduled_at must be in the future")
        with self.session_factory() as db:
            host = self.store.get_account(db, host_id)
            if host.level < self.min_host_level:
                raise Forbidden(
                    f"hosting live classes requires level {self.min_host_level}",
                    details={"level": host.level, "required": self.min_host_level},
                )
            live_class = LiveClass(
                host_id=host_id,
                title=title,
                description=description,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                credit_cost=credit_cost,
                max_attendees=max_attendees or self.default_capacity,
                status=SCHEDULED,
            )
            db.add(live_class)
            db.flush()
            self._enqueue(db, live_class, "live_classes.scheduled")
            db.commit()
            logger.info("live_class_created class_id=%s host_id=%s cost=%s", live_class.id, host_id, credit_cost)
            return live_class

    def book(self, class_id: str, user_id: str) -> Booking:
        """Reserve a seat; the attendee's credits are held on a new session."""

        with write_session(self.session_factory, "live_class.book") as db:
            live_class = self._lock_class(db, class_id)
            attendance = db.get(Attendance, (class_id, user_id))
            if attendance is not None and attendance.paid_status in ACTIVE_ATTENDANCE:
                idempotent_replays_total.labels(service=self.service_name, operation="live_class.book").inc()
                return Booking(attendance=attendance, replayed=True)
            if live_class.status not in (SCHEDULED, LIVE):
                raise InvalidStateTransition(
                    f"Cannot book a class that is {live_class.status}",
                    details={"class_id": class_id, "status": live_class.status},
                )
            if user_id == live_class.host_id:
                raise InvalidRequest("the host cannot book their own class")
            taken = db.execute(
                select(func.count())
                .select_from(Attendance)
                .where(Attendance.class_id == class_id, Attendance.paid_status.in_(ACTIVE_ATTENDANCE))
            ).scalar_one()
            if taken >= live_class.max_attendees:
                raise Conflict("class is full", details={"class_id": class_id, "max_attendees": live_class.max_attendees})

            session, _ = self.sessions.open_session(
                db,
                learner_id=user_id,
                teacher_id=live_class.host_id,
                credits=live_class.credit_cost,
                origin=LIVE_CLASS,
                status=SESSION_SCHEDULED,
                actor_id=user_id,
                scheduled_at=live_class.scheduled_at,
                reason="live_class_booked",
            )
            if attendance is None:
                attendance = Attendance(class_id=class_id, user_id=user_id)
                db.add(attendance)
            attendance.session_id = session.id
            attendance.paid_status = RESERVED
            attendance.joined_at = utcnow()
            attendance.left_at = None
            db.flush()
            if live_class.status == LIVE:
                self.sessions.apply(db, session.id, "start", live_class.host_id, via_adapter=True)
            db.commit()
            logger.info("live_class_booked class_id=%s user_id=%s session_id=%s", class_id, user_id, session.id)
            return Booking(attendance=attendance)

    def leave(self, class_id: str, user_id: str) -> Booking:
        with write_session(self.session_factory, "live_class.leave") as db:
            live_class = self._lock_class(db, class_id)
            attendance = db.get(Attendance, (class_id, user_id))
            if attendance is None:
                raise NotFound("no booking for this class", details={"class_id": class_id, "user_id": user_id})
            if attendance.paid_status in (LEFT, REFUNDED):
                return Booking(attendance=attendance, replayed=True)
            if live_class.status != SCHEDULED or attendance.paid_status != RESERVED:
                raise InvalidStateTransition(
                    f"Cannot leave a class that is {live_class.status}",
                    details={"class_id": class_id, "status": live_class.status},
                )
            self.sessions.apply(db, attendance.session_id, "cancel", user_id, reason="attendee_left", via_adapter=True)
            db.commit()
            return Booking(attendance=attendance)

    def start_class(self, class_id: str, host_id: str) -> LiveClass:
        with write_session(self.session_factory, "live_class.start") as db:
            live_class = self._lock_class(db, class_id)
            self._require_host(live_class, host_id)
            if live_class.status == LIVE:
                return live_class
            if live_class.status != SCHEDULED:
                raise InvalidStateTransition(
                    f"Cannot start a class that is {live_class.status}", details={"class_id": class_id}
                )
            for attendance in self._attendances(db, class_id):
                self.sessions.apply(db, attendance.session_id, "start", host_id, via_adapter=True)
            live_class.status = LIVE
            live_class.started_at = utcnow()
            self._enqueue(db, live_class, "live_classes.live")
            db.commit()
            return live_class

    def complete_class(self, class_id: str, host_id: str) -> ClassCompletion:
        """Pay the host once per reserved seat, one transfer per attendee session."""

        with write_session(self.session_factory, "live_class.complete") as db:
            live_class = self._lock_class(db, class_id)
            self._require_host(live_class, host_id)
            if live_class.status == COMPLETED:
                paid = self._attendances(db, class_id, statuses=(PAID,))
                return ClassCompletion(
                    class_id=class_id,
                    completed_attendees=len(paid),
                    total_credits_transferred=len(paid) * live_class.credit_cost,
                    replayed=True,
                )
            if live_class.status != LIVE:
                raise InvalidStateTransition(
                    f"Cannot complete a class that is {live_class.status}", details={"class_id": class_id}
                )
            completed = 0
            transferred = 0
            for attendance in self._attendances(db, class_id):
                result = self.sessions.apply(db, attendance.session_id, "complete", host_id, via_adapter=True)
                completed += 1
                transferred += sum(entry.amount for entry in result.entries if entry.user_id == host_id)
            live_class.status = COMPLETED
            live_class.ended_at = utcnow()
            self._enqueue(db, live_class, "live_classes.completed", credits_transferred=transferred)
            db.commit()
            logger.info(
                "live_class_completed class_id=%s attendees=%s credits=%s", class_id, completed, transferred
            )
            return ClassCompletion(
                class_id=class_id, completed_attendees=completed, total_credits_transferred=transferred
            )

    def cancel_class(self, class_id: str, host_id: str) -> LiveClass:
        """Cancel the class and refund every outstanding seat."""

        with write_session(self.session_factory, "live_class.cancel") as db:
            live_class = self._lock_class(db, class_id)
            self._require_host(live_class, host_id)
            if live_class.status == CANCELLED:
                return live_class
            if live_class.status == COMPLETED:
                raise InvalidStateTransition("Cannot cancel a completed class", details={"class_id": class_id})
            for attendance in self._attendances(db, class_id):
                self.sessions.apply(
                    db,
                    attendance.session_id,
                    "cancel",
                    host_id,
                    reason=CLASS_CANCELLED_REASON,
                    via_adapter=True,
                )
            live_class.status = CANCELLED
            live_class.ended_at = utcnow()
            self._enqueue(db, live_class, "live_classes.cancelled")
            db.commit()
            return live_class

    def _on_session_transition(self, db, session: SkillSession, event: str, from_status: str, to_status: str) -> None:
        if session.origin != LIVE_CLASS or to_status not in (SESSION_COMPLETED, SESSION_CANCELLED):
            return
        attendance = db.execute(select(Attendance).where(Attendance.session_id == session.id)).scalar_one_or_none()
        if attendance is None:
            return
        if to_status == SESSION_COMPLETED:
            attendance.paid_status = PAID
            return
        attendance.paid_status = REFUNDED if session.cancellation_reason == CLASS_CANCELLED_REASON else LEFT
        attendance.left_at = utcnow()

    # reads

    def get(self, class_id: str) -> LiveClass:
        with self.session_factory() as db:
            live_class = db.get(LiveClass, class_id)
            if live_class is None:
                raise NotFound(f"live class {class_id} not found", details={"class_id": class_id})
            return live_class

    def roster(self, class_id: str) -> list[Attendance]:
        self.get(class_id)
        with self.session_factory() as db:
            return self._attendances(db, class_id, statuses=(RESERVED, PAID, REFUNDED, LEFT))
