"""Ledger store: derived balances, append rules and immutability."""

import pytest
from sqlalchemy import select

from skillswap.common.errors import InsufficientCredits, InvalidRequest, NotFound
from skillswap.services.ledger.models import ADJUSTMENT, LedgerEntry


def test_open_account_posts_initial_grant(services):
    balance = services.store.open_account("u1")

    assert balance.as_dict() == {"user_id": "u1", "total": 5, "reserved": 0, "available": 5}


def test_open_account_is_idempotent(services, session_factory):
    services.store.open_account("u1", initial_grant=10)
    balance = services.store.open_account("u1", initial_grant=10)

    assert balance.total == 10
    with session_factory() as db:
        entries = db.execute(select(LedgerEntry).where(LedgerEntry.user_id == "u1")).scalars().all()
    assert len(entries) == 1
    assert entries[0].entry_type == ADJUSTMENT
    assert entries[0].balance_after == 10


def test_balance_of_unknown_user_is_not_found(services):
    with pytest.raises(NotFound):
        services.store.get_balance("ghost")


def test_adjustment_cannot_make_available_negative(services, learner):
    with pytest.raises(InsufficientCredits) as exc:
        services.store.post_adjustment(learner, -11, "chargeback", "chargeback-1")

    assert exc.value.details == {"available": 10, "required": 11}
    assert services.store.get_balance(learner).total == 10


def test_adjustment_replays_on_same_key(services, learner):
    first, _ = services.store.post_adjustment(learner, 3, "goodwill", "goodwill-1", entry_type="refund")
    second, balance = services.store.post_adjustment(learner, 3, "goodwill", "goodwill-1", entry_type="refund")

    assert first.id == second.id
    assert balance.total == 13


def test_adjustment_rejects_session_entry_types(services, learner):
    with pytest.raises(InvalidRequest):
        services.store.post_adjustment(learner, 3, "sneaky", "sneaky-1", entry_type="earned")


def test_append_validates_sign(services, learner, session_factory):
    with session_factory() as db:
        services.store.lock_account(db, learner)
        with pytest.raises(InvalidRequest):
            services.store.append(db, user_id=learner, entry_type="earned", amount=-2, idempotency_key="bad-sign")
        with pytest.raises(InvalidRequest):
            services.store.append(db, user_id=learner, entry_type="locked", amount=2, idempotency_key="bad-lock")
        with pytest.raises(InvalidRequest):
            services.store.append(db, user_id=learner, entry_type="adjustment", amount=0, idempotency_key="zero")


def test_entries_are_append_only(services, learner, session_factory):
    with session_factory() as db:
        entry = db.execute(select(LedgerEntry).where(LedgerEntry.user_id == learner)).scalar_one()
        entry.amount = 1000
        with pytest.raises(RuntimeError):
            db.flush()

    with session_factory() as db:
        entry = db.execute(select(LedgerEntry).where(LedgerEntry.user_id == learner)).scalar_one()
        db.delete(entry)
        with pytest.raises(RuntimeError):
            db.flush()


def test_history_pages_newest_first(services, learner):
    services.store.post_adjustment(learner, 2, "bonus", "bonus-1")
    services.store.post_adjustment(learner, 3, "bonus", "bonus-2")

    entries, total_count, balance = services.store.history(learner, limit=2)

    assert total_count == 3
    assert [e.amount for e in entries] == [3, 2]
    assert balance.available == 15


def test_set_level(services, learner):
    account = services.store.set_level(learner, 3)

    assert account.level == 3
    with pytest.raises(InvalidRequest):
        services.store.set_level(learner, 0)


def test_reconcile_reports_healthy_ledger(services, learner, teacher):
    report = services.store.reconcile()

    assert report["healthy"] is True
    assert report["accounts_checked"] == 2
