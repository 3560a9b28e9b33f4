"""Reservation manager: credit holds for pending sessions and bounties."""

from skillswap.common.errors import Conflict, InvalidRequest, NotFound
from skillswap.common.idempotency import entry_key, hold_key
from skillswap.common.logging import logger
from skillswap.common.metrics import idempotent_replays_total
from skillswap.services.ledger.models import LOCKED, SPENT, UNLOCKED, LedgerEntry
from skillswap.services.ledger.store import LedgerStore


class ReservationManager:
    """Places and releases holds through the ledger store.

    Both operations run inside the caller's transaction so a hold commits or
    rolls back together with the session or bounty row it belongs to.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def reserve(
        self,
        db,
        user_id: str,
        amount: int,
        session_id: str | None = None,
        bounty_id: str | None = None,
        description: str | None = None,
    ) -> LedgerEntry:
        """Hold `amount` credits of `user_id` for one session or bounty."""

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequest("reservation amount must be a positive integer", details={"amount": amount})
        prefix = hold_key(session_id=session_id, bounty_id=bounty_id)
        self.store.lock_account(db, user_id)

        existing = self.store.entry_by_key(db, entry_key(prefix, LOCKED))
        if existing is not None:
            if self.store.terminal_for(db, existing.id) is not None:
                raise Conflict(f"hold {prefix} was already resolved", details={"hold": prefix})
            idempotent_replays_total.labels(service=self.store.service_name, operation="reserve").inc()
            return existing

        hold = self.store.append(
            db,
            user_id=user_id,
            entry_type=LOCKED,
            amount=-amount,
            idempotency_key=entry_key(prefix, LOCKED),
            description=description or f"Credits reserved for {prefix}",
            session_id=session_id,
            bounty_id=bounty_id,
        )
        logger.info("credits_reserved user_id=%s amount=%s hold=%s", user_id, amount, prefix)
        return hold

    def release(self, db, session_id: str | None = None, bounty_id: str | None = None) -> LedgerEntry:
        """Return a held amount to the owner's available balance."""

        prefix = hold_key(session_id=session_id, bounty_id=bounty_id)
        hold = self.store.entry_by_key(db, entry_key(prefix, LOCKED))
        if hold is None:
            raise NotFound(f"no credit hold for {prefix}", details={"hold": prefix})
        self.store.lock_account(db, hold.user_id)

        terminal = self.store.terminal_for(db, hold.id)
        if terminal is not None:
            if terminal.entry_type == SPENT:
                raise Conflict(f"hold {prefix} was already transferred", details={"hold": prefix})
            idempotent_replays_total.labels(service=self.store.service_name, operation="release").inc()
            return terminal

        entry = self.store.append(
            db,
            user_id=hold.user_id,
            entry_type=UNLOCKED,
            amount=-hold.amount,
            idempotency_key=entry_key(prefix, UNLOCKED),
            description=f"Credits released for {prefix}",
            session_id=session_id,
            bounty_id=bounty_id,
            related_entry_id=hold.id,
        )
        logger.info("credits_released user_id=%s amount=%s hold=%s", hold.user_id, -hold.amount, prefix)
        return entry
