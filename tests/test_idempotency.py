"""Client idempotency keys and structural ledger keys."""

import pytest
from sqlalchemy import func, select

from skillswap.common.errors import Conflict, InvalidRequest
from skillswap.common.idempotency import client_key, entry_key, hold_key
from skillswap.services.ledger.models import LOCKED, LedgerEntry
from skillswap.services.sessions.models import SkillSession


def test_hold_key_needs_exactly_one_owner():
    assert hold_key(session_id="s1") == "session:s1"
    assert hold_key(bounty_id="b1") == "bounty:b1"
    assert entry_key(hold_key(session_id="s1"), LOCKED) == "session:s1:locked"
    with pytest.raises(InvalidRequest):
        hold_key()
    with pytest.raises(InvalidRequest):
        hold_key(session_id="s1", bounty_id="b1")


def test_client_key_length_bounds():
    assert client_key("u1", "  req-12345 ") == "u1:req-12345"
    with pytest.raises(InvalidRequest):
        client_key("u1", "abc")
    with pytest.raises(InvalidRequest):
        client_key("u1", "x" * 201)


def test_session_create_replays_on_same_key(services, learner, teacher, short_skill, session_factory):
    first = services.sessions.create_request(learner, teacher, short_skill.id, 3, idempotency_key="book-python-1")
    second = services.sessions.create_request(learner, teacher, short_skill.id, 3, idempotency_key="book-python-1")

    assert second.replayed is True
    assert second.session.id == first.session.id
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(SkillSession)).scalar_one() == 1
        holds = db.execute(
            select(func.count()).select_from(LedgerEntry).where(LedgerEntry.entry_type == LOCKED)
        ).scalar_one()
    assert holds == 1
    assert services.store.get_balance(learner).reserved == 3


def test_same_key_from_different_users_is_independent(services, learner, teacher, short_skill):
    services.store.open_account("learner-2", initial_grant=10)

    a = services.sessions.create_request(learner, teacher, short_skill.id, 3, idempotency_key="book-python-1")
    b = services.sessions.create_request("learner-2", teacher, short_skill.id, 3, idempotency_key="book-python-1")

    assert a.session.id != b.session.id
    assert b.replayed is False


def test_ledger_key_reuse_for_other_effect_conflicts(services, learner, session_factory):
    with session_factory() as db:
        services.store.lock_account(db, learner)
        services.store.append(db, user_id=learner, entry_type="adjustment", amount=2, idempotency_key="manual:x")
        with pytest.raises(Conflict):
            services.store.append(
                db, user_id=learner, entry_type="adjustment", amount=5, idempotency_key="manual:x"
            )
