"""Live classes: one session per seat, host paid per attendee."""

import pytest
from sqlalchemy.exc import IntegrityError

from skillswap.common.errors import Conflict, Forbidden, InvalidRequest, InvalidStateTransition


def _available(services, user_id):
    return services.store.get_balance(user_id).available


@pytest.fixture
def live_class(services, teacher, future):
    return services.live_classes.create_class(teacher, "Async Python", future, 3, max_attendees=2)


@pytest.fixture
def second_learner(services):
    services.store.open_account("learner-2", initial_grant=10)
    return "learner-2"


def test_host_level_required(services, learner, future):
    with pytest.raises(Forbidden):
        services.live_classes.create_class(learner, "Intro", future, 3)


def test_create_validation(services, teacher, future):
    with pytest.raises(InvalidRequest):
        services.live_classes.create_class(teacher, "Free", future, 0)


def test_booking_holds_cost(services, learner, live_class):
    booking = services.live_classes.book(live_class.id, learner)

    assert booking.attendance.paid_status == "reserved"
    assert _available(services, learner) == 7
    session = services.sessions.get(booking.attendance.session_id, actor_id=learner)
    assert (session.origin, session.status, session.credits_amount) == ("live_class", "scheduled", 3)


def test_booking_twice_replays(services, learner, live_class):
    first = services.live_classes.book(live_class.id, learner)
    again = services.live_classes.book(live_class.id, learner)

    assert again.replayed is True
    assert again.attendance.session_id == first.attendance.session_id
    assert _available(services, learner) == 7


def test_class_capacity(services, learner, second_learner, live_class):
    services.store.open_account("learner-3", initial_grant=10)
    services.live_classes.book(live_class.id, learner)
    services.live_classes.book(live_class.id, second_learner)

    with pytest.raises(Conflict):
        services.live_classes.book(live_class.id, "learner-3")
    assert _available(services, "learner-3") == 10


def test_host_cannot_book(services, teacher, live_class):
    with pytest.raises(InvalidRequest):
        services.live_classes.book(live_class.id, teacher)


def test_complete_pays_host_per_attendee(services, learner, second_learner, teacher, live_class):
    services.live_classes.book(live_class.id, learner)
    services.live_classes.book(live_class.id, second_learner)

    started = services.live_classes.start_class(live_class.id, teacher)
    completion = services.live_classes.complete_class(live_class.id, teacher)

    assert started.status == "live"
    assert completion.completed_attendees == 2
    assert completion.total_credits_transferred == 6
    assert _available(services, teacher) == 6
    assert _available(services, learner) == 7
    assert {a.paid_status for a in services.live_classes.roster(live_class.id)} == {"paid"}

    replay = services.live_classes.complete_class(live_class.id, teacher)
    assert replay.replayed is True
    assert replay.total_credits_transferred == 6
    assert _available(services, teacher) == 6


def test_complete_requires_live_class(services, teacher, live_class):
    with pytest.raises(InvalidStateTransition):
        services.live_classes.complete_class(live_class.id, teacher)


def test_only_host_manages_class(services, learner, live_class):
    with pytest.raises(Forbidden):
        services.live_classes.start_class(live_class.id, learner)


def test_cancel_class_refunds_everyone(services, learner, second_learner, teacher, live_class):
    services.live_classes.book(live_class.id, learner)
    services.live_classes.book(live_class.id, second_learner)

    cancelled = services.live_classes.cancel_class(live_class.id, teacher)

    assert cancelled.status == "cancelled"
    assert _available(services, learner) == 10
    assert _available(services, second_learner) == 10
    assert {a.paid_status for a in services.live_classes.roster(live_class.id)} == {"refunded"}
    with pytest.raises(InvalidStateTransition):
        services.live_classes.book(live_class.id, learner)


def test_leave_then_rebook(services, learner, live_class):
    services.live_classes.book(live_class.id, learner)

    left = services.live_classes.leave(live_class.id, learner)

    assert left.attendance.paid_status == "cancelled"
    assert left.attendance.left_at is not None
    assert _available(services, learner) == 10

    rebooked = services.live_classes.book(live_class.id, learner)
    assert rebooked.replayed is False
    assert rebooked.attendance.session_id != left.attendance.session_id
    assert _available(services, learner) == 7


def test_seat_session_not_driven_directly(services, learner, teacher, live_class):
    session_id = services.live_classes.book(live_class.id, learner).attendance.session_id

    with pytest.raises(Forbidden):
        services.sessions.cancel(session_id, learner)
    with pytest.raises(Forbidden):
        services.sessions.start(session_id, teacher)


def test_duplicate_key_on_booking_is_a_conflict(services, learner, live_class, monkeypatch):
    def duplicate(db, **fields):
        raise IntegrityError("INSERT INTO skill_sessions", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(services.sessions, "open_session", duplicate)

    with pytest.raises(Conflict):
        services.live_classes.book(live_class.id, learner)
    assert services.live_classes.roster(live_class.id) == []
    assert _available(services, learner) == 10
