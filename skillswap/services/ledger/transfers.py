"""Transfer engine: settles a session's hold from learner to teacher."""

from dataclasses import dataclass

from skillswap.common.errors import AlreadyCompleted, InvalidStateTransition, NotFound, SessionNotInProgress
from skillswap.common.idempotency import entry_key, hold_key
from skillswap.common.logging import logger
from skillswap.common.metrics import transferred_credits_total
from skillswap.common.state_machine import DISPUTED, IN_PROGRESS
from skillswap.services.ledger.models import EARNED, LOCKED, SPENT, LedgerEntry
from skillswap.services.ledger.store import LedgerStore

TRANSFERABLE_STATUSES = (IN_PROGRESS, DISPUTED)


@dataclass(frozen=True)
class Transfer:
    spent: LedgerEntry
    earned: LedgerEntry

    @property
    def amount(self) -> int:
        return self.earned.amount


class TransferEngine:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def complete(self, db, session) -> Transfer:
        """Write the learner's `spent` and the teacher's `earned` for `session`.

        Both entries land in the caller's transaction. A session whose hold
        was already spent raises `AlreadyCompleted` carrying the original
        transfer, so a retried completion never pays twice.
        """

        prefix = hold_key(session_id=session.id)
        hold = self.store.entry_by_key(db, entry_key(prefix, LOCKED))
        if hold is None:
            raise NotFound(f"no credit hold for session {session.id}", details={"session_id": session.id})
        self.store.lock_accounts(db, session.learner_id, session.teacher_id)

        terminal = self.store.terminal_for(db, hold.id)
        if terminal is not None:
            if terminal.entry_type != SPENT:
                raise InvalidStateTransition(
                    "session credits were already released", details={"session_id": session.id}
                )
            earned = self.store.entry_by_key(db, entry_key(prefix, EARNED))
            raise AlreadyCompleted(
                f"session {session.id} already transferred", result=Transfer(spent=terminal, earned=earned)
            )
        if session.status not in TRANSFERABLE_STATUSES:
            raise SessionNotInProgress(
                f"Cannot transfer credits for a session that is {session.status}",
                details={"session_id": session.id, "status": session.status},
            )

        amount = -hold.amount
        spent = self.store.append(
            db,
            user_id=session.learner_id,
            entry_type=SPENT,
            amount=-amount,
            idempotency_key=entry_key(prefix, SPENT),
            description=f"Paid for session {session.id}",
            session_id=session.id,
            related_entry_id=hold.id,
        )
        earned = self.store.append(
            db,
            user_id=session.teacher_id,
            entry_type=EARNED,
            amount=amount,
            idempotency_key=entry_key(prefix, EARNED),
            description=f"Earned from session {session.id}",
            session_id=session.id,
            related_entry_id=spent.id,
        )
        transferred_credits_total.labels(service=self.store.service_name, origin=session.origin).inc(amount)
        logger.info(
            "credits_transferred session_id=%s learner_id=%s teacher_id=%s amount=%s",
            session.id,
            session.learner_id,
            session.teacher_id,
            amount,
        )
        return Transfer(spent=spent, earned=earned)
