"""Ledger store and balance calculator.

Balances are never stored: every read aggregates the append-only entries for
one user in a single statement. Writers lock the user's `credit_accounts` row
first, recompute availability, and only then append, so two concurrent holds
on the same user serialize instead of both passing the balance check.
"""

from dataclasses import dataclass

from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from skillswap.common.errors import Conflict, InsufficientCredits, InvalidRequest, NotFound
from skillswap.common.idempotency import client_key
from skillswap.common.logging import logger
from skillswap.common.metrics import (
    idempotent_replays_total,
    insufficient_credits_total,
    ledger_entries_total,
)
from skillswap.services.ledger.models import (
    ADJUSTMENT,
    EARNED,
    ENTRY_TYPES,
    HOLD_TERMINAL_TYPES,
    LOCKED,
    REFUND,
    SETTLED_TYPES,
    SPENT,
    UNLOCKED,
    CreditAccount,
    LedgerEntry,
)

NEGATIVE_TYPES = (SPENT, LOCKED)
POSITIVE_TYPES = (EARNED, REFUND, UNLOCKED)


@dataclass(frozen=True)
class Balance:
    """Derived balance for one user."""

    user_id: str
    total: int
    reserved: int

    @property
    def available(self) -> int:
        return self.total - self.reserved

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "total": self.total,
            "reserved": self.reserved,
            "available": self.available,
        }


def _validate_amount(entry_type: str, amount: int) -> None:
    if entry_type not in ENTRY_TYPES:
        raise InvalidRequest(f"unknown ledger entry type: {entry_type}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidRequest("ledger amount must be a non-zero integer")
    if entry_type in NEGATIVE_TYPES and amount > 0:
        raise InvalidRequest(f"{entry_type} entries must be negative")
    if entry_type in POSITIVE_TYPES and amount < 0:
        raise InvalidRequest(f"{entry_type} entries must be positive")


class LedgerStore:
    """Single writer of `ledger_entries`; owns balance computation."""

    def __init__(self, session_factory, service_name: str = "ledger", initial_grant: int = 0) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.initial_grant = initial_grant

    # accounts

    def open_account(self, user_id: str, level: int = 1, initial_grant: int | None = None) -> Balance:
        """Create the ledger aggregate for a new profile and post its grant.

        Safe to call repeatedly: the account insert tolerates a concurrent
        creator and the grant carries a fixed idempotency key.
        """

        if level < 1:
            raise InvalidRequest("level must be >= 1")
        grant = self.initial_grant if initial_grant is None else initial_grant
        if grant < 0:
            raise InvalidRequest("initial grant cannot be negative")

        for attempt in (1, 2):
            try:
                with self.session_factory() as db:
                    if db.get(CreditAccount, user_id) is None:
                        db.add(CreditAccount(user_id=user_id, level=level))
                        db.flush()
                    self.lock_account(db, user_id)
                    if grant:
                        self.append(
                            db,
                            user_id=user_id,
                            entry_type=ADJUSTMENT,
                            amount=grant,
                            idempotency_key=f"account:{user_id}:initial_grant",
                            description="Initial credit grant",
                        )
                    db.commit()
                    return self.balance_in(db, user_id)
            except IntegrityError as exc:
                # Another request created the same account between our read and insert.
                logger.info("account open raced user_id=%s attempt=%s", user_id, attempt)
                if attempt == 2:
                    raise Conflict("account creation raced; retry") from exc
        raise AssertionError("unreachable")

    def set_level(self, user_id: str, level: int) -> CreditAccount:
        if level < 1:
            raise InvalidRequest("level must be >= 1")
        with self.session_factory() as db:
            account = self.lock_account(db, user_id)
            account.level = level
            db.commit()
            return account

    def get_account(self, db, user_id: str) -> CreditAccount:
        account = db.get(CreditAccount, user_id)
        if account is None:
            raise NotFound(f"no ledger for user {user_id}", details={"user_id": user_id})
        return account

    def lock_account(self, db, user_id: str) -> CreditAccount:
        """Take the row lock that serializes all ledger writes for `user_id`."""

        account = db.execute(
            select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        if account is None:
            raise NotFound(f"no ledger for user {user_id}", details={"user_id": user_id})
        return account

    def lock_accounts(self, db, *user_ids: str) -> dict[str, CreditAccount]:
        """Lock several accounts in a fixed order to avoid deadlocks."""

        return {user_id: self.lock_account(db, user_id) for user_id in sorted(set(user_ids))}

    # reads

    def balance_in(self, db, user_id: str) -> Balance:
        """Aggregate total and outstanding holds in one statement."""

        terminal = aliased(LedgerEntry)
        outstanding_hold = and_(LedgerEntry.entry_type == LOCKED, terminal.id.is_(None))
        row = db.execute(
            select(
                func.coalesce(
                    func.sum(case((LedgerEntry.entry_type.in_(SETTLED_TYPES), LedgerEntry.amount), else_=0)), 0
                ).label("total"),
                func.coalesce(func.sum(case((outstanding_hold, -LedgerEntry.amount), else_=0)), 0).label(
                    "reserved"
                ),
            )
            .select_from(LedgerEntry)
            .outerjoin(
                terminal,
                and_(
                    terminal.related_entry_id == LedgerEntry.id,
                    terminal.entry_type.in_(HOLD_TERMINAL_TYPES),
                ),
            )
            .where(LedgerEntry.user_id == user_id)
        ).one()
        return Balance(user_id=user_id, total=int(row.total), reserved=int(row.reserved))

    def get_balance(self, user_id: str) -> Balance:
        with self.session_factory() as db:
            self.get_account(db, user_id)
            return self.balance_in(db, user_id)

    def entry_by_key(self, db, idempotency_key: str) -> LedgerEntry | None:
        return db.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def terminal_for(self, db, lock_entry_id: str) -> LedgerEntry | None:
        """Return the `spent` or `unlocked` entry that resolved a hold."""

        return db.execute(
            select(LedgerEntry).where(
                LedgerEntry.related_entry_id == lock_entry_id,
                LedgerEntry.entry_type.in_(HOLD_TERMINAL_TYPES),
            )
        ).scalar_one_or_none()

    def entries_for_session(self, db, session_id: str) -> list[LedgerEntry]:
        return list(
            db.execute(
                select(LedgerEntry).where(LedgerEntry.session_id == session_id).order_by(LedgerEntry.created_at)
            ).scalars()
        )

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[list[LedgerEntry], int, Balance]:
        with self.session_factory() as db:
            self.get_account(db, user_id)
            entries = list(
                db.execute(
                    select(LedgerEntry)
                    .where(LedgerEntry.user_id == user_id)
                    .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
                    .limit(limit)
                    .offset(offset)
                ).scalars()
            )
            total_count = db.execute(
                select(func.count()).select_from(LedgerEntry).where(LedgerEntry.user_id == user_id)
            ).scalar_one()
            return entries, int(total_count), self.balance_in(db, user_id)

    # writes

    def append(
        self,
        db,
        *,
        user_id: str,
        entry_type: str,
        amount: int,
        idempotency_key: str,
        description: str = "",
        session_id: str | None = None,
        bounty_id: str | None = None,
        related_entry_id: str | None = None,
    ) -> LedgerEntry:
        """Write one immutable entry; the caller must hold `user_id`'s account lock.

        `balance_after` is the available balance right after this entry. A
        `spent` entry that resolves a hold leaves availability unchanged
        because the hold already removed those credits.
        """

        existing = self.entry_by_key(db, idempotency_key)
        if existing is not None:
            if (existing.user_id, existing.entry_type, existing.amount) != (user_id, entry_type, amount):
                raise Conflict(
                    "idempotency key already used for a different ledger effect",
                    details={"idempotency_key": idempotency_key},
                )
            idempotent_replays_total.labels(service=self.service_name, operation=f"ledger.{entry_type}").inc()
            return existing

        _validate_amount(entry_type, amount)
        balance = self.balance_in(db, user_id)
        available_delta = amount
        if entry_type == SPENT and related_entry_id is not None:
            hold = db.get(LedgerEntry, related_entry_id)
            if hold is not None and hold.entry_type == LOCKED:
                available_delta -= hold.amount
        available_after = balance.available + available_delta
        if available_after < 0:
            insufficient_credits_total.labels(service=self.service_name).inc()
            raise InsufficientCredits(available=balance.available, required=-available_delta)

        entry = LedgerEntry(
            user_id=user_id,
            entry_type=entry_type,
            amount=amount,
            balance_after=available_after,
            session_id=session_id,
            bounty_id=bounty_id,
            related_entry_id=related_entry_id,
            idempotency_key=idempotency_key,
            description=description,
        )
        db.add(entry)
        db.flush()
        ledger_entries_total.labels(service=self.service_name, entry_type=entry_type).inc()
        logger.info(
            "ledger_entry_appended user_id=%s type=%s amount=%s balance_after=%s key=%s",
            user_id,
            entry_type,
            amount,
            available_after,
            idempotency_key,
        )
        return entry

    def post_adjustment(
        self,
        user_id: str,
        amount: int,
        description: str,
        idempotency_key: str,
        entry_type: str = ADJUSTMENT,
    ) -> tuple[LedgerEntry, Balance]:
        """Operator correction or goodwill refund outside any session."""

        if entry_type not in (ADJUSTMENT, REFUND):
            raise InvalidRequest("manual entries must be adjustment or refund")
        key = f"manual:{client_key(user_id, idempotency_key)}"
        with self.session_factory() as db:
            self.lock_account(db, user_id)
            entry = self.append(
                db,
                user_id=user_id,
                entry_type=entry_type,
                amount=amount,
                idempotency_key=key,
                description=description,
            )
            db.commit()
            return entry, self.balance_in(db, user_id)

    # integrity

    def reconcile(self, limit: int = 1000) -> dict:
        """Check ledger invariants across accounts and sessions."""

        with self.session_factory() as db:
            user_ids = list(
                db.execute(select(CreditAccount.user_id).order_by(CreditAccount.user_id).limit(limit)).scalars()
            )
            negative = []
            for user_id in user_ids:
                balance = self.balance_in(db, user_id)
                if balance.available < 0 or balance.reserved < 0:
                    negative.append(balance.as_dict())

            session_rows = db.execute(
                select(
                    LedgerEntry.session_id,
                    func.sum(case((LedgerEntry.entry_type.in_(SETTLED_TYPES), LedgerEntry.amount), else_=0)).label(
                        "settled"
                    ),
                    func.count(LedgerEntry.id).label("entry_count"),
                )
                .where(LedgerEntry.session_id.is_not(None))
                .group_by(LedgerEntry.session_id)
                .order_by(LedgerEntry.session_id)
                .limit(limit)
            ).all()
            imbalanced = [
                {
                    "session_id": row.session_id,
                    "settled_sum": int(row.settled or 0),
                    "entry_count": int(row.entry_count or 0),
                }
                for row in session_rows
                if int(row.settled or 0) != 0
            ]

            double_resolved = list(
                db.execute(
                    select(LedgerEntry.related_entry_id)
                    .where(LedgerEntry.entry_type.in_(HOLD_TERMINAL_TYPES))
                    .group_by(LedgerEntry.related_entry_id)
                    .having(func.count(LedgerEntry.id) > 1)
                ).scalars()
            )
            return {
                "accounts_checked": len(user_ids),
                "negative_available": negative,
                "sessions_checked": len(session_rows),
                "imbalanced_sessions": imbalanced,
                "holds_resolved_twice": double_resolved,
                "healthy": not (negative or imbalanced or double_resolved),
            }
