"""Session lifecycle end to end against the ledger."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from skillswap.common.db import utcnow
from skillswap.common.errors import (
    Conflict,
    Forbidden,
    InsufficientCredits,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
    SessionNotInProgress,
)
from skillswap.services.ledger.models import EARNED, LOCKED, SPENT, UNLOCKED, LedgerEntry
from skillswap.services.sessions.models import OutboxEvent, SessionTimeline, SkillSession


def _balance(services, user_id):
    b = services.store.get_balance(user_id)
    return b.total, b.reserved, b.available


def _entries(session_factory, user_id):
    with session_factory() as db:
        return list(
            db.execute(
                select(LedgerEntry).where(LedgerEntry.user_id == user_id).order_by(LedgerEntry.created_at)
            ).scalars()
        )


def test_request_reserves_credits(services, learner, teacher, skill):
    result = services.sessions.create_request(learner, teacher, skill.id, 7)

    assert result.session.status == "requested"
    assert result.session.credits_locked is True
    assert [e.entry_type for e in result.entries] == [LOCKED]
    assert result.entries[0].amount == -7
    assert result.entries[0].balance_after == 3
    assert _balance(services, learner) == (10, 7, 3)


def test_complete_transfers_held_credits(services, in_progress_session, session_factory):
    result = services.sessions.complete(in_progress_session.id, "learner")

    assert result.session.status == "completed"
    assert result.session.completed_at is not None
    assert result.session.credits_locked is False
    spent, earned = result.entries
    assert (spent.entry_type, spent.amount, spent.balance_after) == (SPENT, -7, 3)
    assert (earned.entry_type, earned.amount, earned.user_id) == (EARNED, 7, "teacher")
    assert earned.related_entry_id == spent.id
    assert _balance(services, "learner") == (3, 0, 3)
    assert _balance(services, "teacher") == (7, 0, 7)
    assert services.store.reconcile()["healthy"] is True


def test_cancel_releases_hold(services, learner, teacher, skill, session_factory):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    result = services.sessions.cancel(session.id, learner, reason="changed my mind")

    assert result.session.status == "cancelled"
    assert result.session.cancelled_by == learner
    assert result.session.credits_locked is False
    assert result.session.cancellation_reason == "changed my mind"
    (unlocked,) = result.entries
    assert (unlocked.entry_type, unlocked.amount, unlocked.balance_after) == (UNLOCKED, 7, 10)
    assert _balance(services, learner) == (10, 0, 10)


def test_insufficient_credits_leaves_ledger_untouched(services, learner, teacher, session_factory):
    pricey = services.sessions.upsert_skill("python-201", teacher, "Python internals", 11, "active")

    with pytest.raises(InsufficientCredits):
        services.sessions.create_request(learner, teacher, pricey.id, 11)

    assert len(_entries(session_factory, learner)) == 1
    with session_factory() as db:
        assert db.execute(select(SkillSession)).scalars().all() == []
    assert _balance(services, learner) == (10, 0, 10)


def test_accept_twice_records_one_transition(services, learner, teacher, skill, session_factory):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    first = services.sessions.accept(session.id, teacher)
    second = services.sessions.accept(session.id, teacher)

    assert first.replayed is False
    assert second.replayed is True
    assert second.session.state_version == first.session.state_version
    with session_factory() as db:
        accepts = db.execute(
            select(SessionTimeline).where(SessionTimeline.session_id == session.id, SessionTimeline.event == "accept")
        ).scalars().all()
    assert len(accepts) == 1


def test_complete_twice_pays_once(services, in_progress_session, session_factory):
    first = services.sessions.complete(in_progress_session.id, "teacher")
    again = services.sessions.complete(in_progress_session.id, "learner")

    assert again.replayed is True
    assert [(e.id, e.entry_type) for e in again.entries] == [(e.id, e.entry_type) for e in first.entries]
    spent = [e for e in _entries(session_factory, "learner") if e.entry_type == SPENT]
    assert len(spent) == 1
    assert _balance(services, "teacher") == (7, 0, 7)


def test_cancel_replay_returns_release(services, learner, teacher, skill):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session
    first = services.sessions.cancel(session.id, learner)

    again = services.sessions.cancel(session.id, teacher)

    assert again.replayed is True
    assert [(e.id, e.entry_type, e.amount) for e in again.entries] == [(first.entries[0].id, UNLOCKED, 7)]
    assert _balance(services, learner) == (10, 0, 10)


def test_replay_of_earlier_step_carries_no_entries(services, in_progress_session):
    services.sessions.complete(in_progress_session.id, "teacher")

    assert services.sessions.start(in_progress_session.id, "teacher").entries == []


def test_only_teacher_accepts(services, learner, teacher, skill):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    with pytest.raises(Forbidden):
        services.sessions.accept(session.id, learner)


def test_outsider_cannot_cancel(services, learner, teacher, skill):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    with pytest.raises(Forbidden):
        services.sessions.cancel(session.id, "someone-else")


def test_complete_requires_in_progress(services, learner, teacher, skill):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    with pytest.raises(SessionNotInProgress):
        services.sessions.complete(session.id, learner)
    assert _balance(services, learner) == (10, 7, 3)


def test_cancel_after_complete_rejected(services, in_progress_session):
    services.sessions.complete(in_progress_session.id, "teacher")

    with pytest.raises(InvalidStateTransition):
        services.sessions.cancel(in_progress_session.id, "learner")
    assert _balance(services, "learner") == (3, 0, 3)


def test_cancel_in_progress_refunds(services, in_progress_session):
    services.sessions.cancel(in_progress_session.id, "teacher", reason="no show")

    assert _balance(services, "learner") == (10, 0, 10)
    assert _balance(services, "teacher") == (0, 0, 0)


def test_reschedule_updates_time_and_replays_same_time(services, learner, teacher, skill, future):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session
    services.sessions.accept(session.id, teacher)
    services.sessions.schedule(session.id, learner, future)

    later = future + timedelta(hours=2)
    moved = services.sessions.schedule(session.id, teacher, later)
    same = services.sessions.schedule(session.id, teacher, later)

    assert moved.replayed is False
    assert same.replayed is True
    assert same.session.state_version == moved.session.state_version


def test_schedule_in_past_rejected(services, learner, teacher, skill):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session
    services.sessions.accept(session.id, teacher)

    with pytest.raises(InvalidRequest):
        services.sessions.schedule(session.id, learner, utcnow() - timedelta(minutes=1))


def test_request_validation(services, learner, teacher, skill):
    oversized = services.sessions.upsert_skill("python-999", teacher, "Everything", 101, "active")

    with pytest.raises(InvalidRequest):
        services.sessions.create_request(learner, teacher, oversized.id, 101)
    with pytest.raises(NotFound):
        services.sessions.create_request(learner, teacher, "no-such-skill", 7)
    with pytest.raises(InvalidRequest):
        services.sessions.create_request(teacher, teacher, skill.id, 7)


def test_underpaying_request_rejected(services, learner, teacher, skill, session_factory):
    for amount in (1, 6, 8):
        with pytest.raises(InvalidRequest) as exc:
            services.sessions.create_request(learner, teacher, skill.id, amount)
        assert exc.value.details == {"credits": amount, "credits_required": 7}

    with session_factory() as db:
        assert db.execute(select(SkillSession)).scalars().all() == []
    assert _balance(services, learner) == (10, 0, 10)


def test_inactive_skill_rejected(services, learner, teacher, skill):
    services.sessions.upsert_skill(skill.id, teacher, skill.title, 7, "inactive")

    with pytest.raises(InvalidRequest):
        services.sessions.create_request(learner, teacher, skill.id, 7)


def test_dispute_keeps_hold_until_operator_resolves(services, in_progress_session):
    disputed = services.sessions.dispute(in_progress_session.id, "learner", "teacher never showed")

    assert disputed.session.status == "disputed"
    assert disputed.session.disputed_by == "learner"
    assert _balance(services, "learner") == (10, 7, 3)

    with pytest.raises(InvalidStateTransition):
        services.sessions.cancel(in_progress_session.id, "learner")


def test_participant_cannot_resolve(services, in_progress_session, session_factory):
    services.sessions.dispute(in_progress_session.id, "learner", "teacher never showed")

    with session_factory() as db:
        with pytest.raises(Forbidden):
            services.sessions.apply(db, in_progress_session.id, "resolve_cancel", "learner", reason="refund")


def test_dispute_needs_reason(services, in_progress_session):
    with pytest.raises(InvalidRequest):
        services.sessions.dispute(in_progress_session.id, "learner", "  ")


def test_operator_resolves_dispute_by_refund(services, in_progress_session):
    services.sessions.dispute(in_progress_session.id, "learner", "teacher never showed")

    result = services.sessions.resolve(in_progress_session.id, "cancel", "refund approved")

    assert result.session.status == "cancelled"
    assert _balance(services, "learner") == (10, 0, 10)


def test_operator_resolves_dispute_by_payout(services, in_progress_session):
    services.sessions.dispute(in_progress_session.id, "teacher", "learner claims no show")

    result = services.sessions.resolve(in_progress_session.id, "complete", "recording shows session")

    assert result.session.status == "completed"
    assert _balance(services, "learner") == (3, 0, 3)
    assert _balance(services, "teacher") == (7, 0, 7)


def test_stale_writer_loses(services, learner, teacher, skill, session_factory):
    session = services.sessions.create_request(learner, teacher, skill.id, 7).session

    with session_factory() as db:
        stale = db.get(SkillSession, session.id)
        services.sessions.accept(session.id, teacher)
        with pytest.raises(Conflict):
            services.sessions._transition(db, stale, "cancelled", "cancel", learner, "stale")


def test_completion_finishes_after_partial_transfer(services, in_progress_session, session_factory):
    # Credits moved but the status write was lost.
    with session_factory() as db:
        session = services.sessions.lock_session(db, in_progress_session.id)
        services.transfers.complete(db, session)
        db.commit()

    result = services.sessions.complete(in_progress_session.id, "teacher")

    assert result.session.status == "completed"
    assert result.replayed is False
    assert _balance(services, "learner") == (3, 0, 3)
    assert _balance(services, "teacher") == (7, 0, 7)


def test_transitions_emit_outbox_events(services, in_progress_session, session_factory):
    services.sessions.complete(in_progress_session.id, "teacher")

    with session_factory() as db:
        types = db.execute(
            select(OutboxEvent.event_type)
            .where(OutboxEvent.aggregate_id == in_progress_session.id)
            .order_by(OutboxEvent.created_at)
        ).scalars().all()
    assert set(types) == {
        "sessions.requested",
        "sessions.accepted",
        "sessions.scheduled",
        "sessions.in_progress",
        "sessions.completed",
    }


def test_timeline_lists_every_transition(services, in_progress_session):
    rows = services.sessions.timeline(in_progress_session.id, actor_id="learner")

    assert [(r.from_state, r.to_state) for r in rows] == [
        (None, "requested"),
        ("requested", "accepted"),
        ("accepted", "scheduled"),
        ("scheduled", "in_progress"),
    ]
    with pytest.raises(Forbidden):
        services.sessions.timeline(in_progress_session.id, actor_id="stranger")


def _duplicate_key_error():
    return IntegrityError(
        "INSERT INTO ledger_entries", {}, Exception("UNIQUE constraint failed: ledger_entries.idempotency_key")
    )


def test_duplicate_key_on_every_attempt_is_a_conflict(services, in_progress_session, monkeypatch):
    attempts = []

    def duplicate(db, session_id, event, actor_id, **options):
        attempts.append(event)
        raise _duplicate_key_error()

    monkeypatch.setattr(services.sessions, "apply", duplicate)

    with pytest.raises(Conflict) as exc:
        services.sessions.complete(in_progress_session.id, "learner")
    assert attempts == ["complete", "complete"]
    assert exc.value.details == {"session_id": in_progress_session.id, "event": "complete"}


def test_duplicate_key_retry_returns_settled_completion(services, in_progress_session, session_factory, monkeypatch):
    real_apply = services.sessions.apply
    winner = []

    def lose_to_concurrent_writer(db, session_id, event, actor_id, **options):
        if not winner:
            with session_factory() as other:
                winner.append(real_apply(other, session_id, event, "teacher", **options))
                other.commit()
            raise _duplicate_key_error()
        return real_apply(db, session_id, event, actor_id, **options)

    monkeypatch.setattr(services.sessions, "apply", lose_to_concurrent_writer)

    result = services.sessions.complete(in_progress_session.id, "learner")

    assert result.replayed is True
    assert [e.id for e in result.entries] == [e.id for e in winner[0].entries]
    assert _balance(services, "teacher") == (7, 0, 7)


def test_concurrent_completes_pay_once(services, in_progress_session, session_factory):
    barrier = threading.Barrier(2)
    outcomes = []

    def complete(actor_id):
        barrier.wait()
        try:
            outcomes.append(services.sessions.complete(in_progress_session.id, actor_id).outcome)
        except Conflict:
            outcomes.append("conflict")

    threads = [threading.Thread(target=complete, args=(actor,)) for actor in ("learner", "teacher")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == 2
    assert "applied" in outcomes
    assert outcomes.count("applied") == 1
    assert set(outcomes) - {"applied"} <= {"replayed", "conflict"}
    spent = [e for e in _entries(session_factory, "learner") if e.entry_type == SPENT]
    assert len(spent) == 1
    assert _balance(services, "learner") == (3, 0, 3)
    assert _balance(services, "teacher") == (7, 0, 7)
    assert services.sessions.get(in_progress_session.id, operator=True).status == "completed"
