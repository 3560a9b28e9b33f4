"""Expiry sweeper: releases holds on requests nobody accepted in time."""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import aliased

from skillswap.common.db import as_utc, utcnow
from skillswap.common.errors import SkillSwapError
from skillswap.common.logging import logger
from skillswap.common.metrics import sweeper_cancelled_total, sweeper_run_seconds
from skillswap.common.state_machine import REQUESTED
from skillswap.common.tracing import tracer
from skillswap.services.ledger.models import HOLD_TERMINAL_TYPES, LOCKED, LedgerEntry
from skillswap.services.sessions.models import SkillSession

EXPIRED_REASON = "expired"


@dataclass
class SweepReport:
    cancelled_count: int = 0
    cancelled_session_ids: list[str] = field(default_factory=list)
    expired_bounty_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "cancelled_count": self.cancelled_count,
            "cancelled_session_ids": self.cancelled_session_ids,
            "expired_bounty_ids": self.expired_bounty_ids,
        }


class ExpirySweeper:
    """Cancels `requested` sessions whose hold outlived the timeout.

    Each session gets its own short transaction and is locked with
    `SKIP LOCKED`, so two sweepers running at once split the work instead of
    cancelling the same session twice.
    """

    def __init__(
        self,
        session_factory,
        sessions,
        bounties=None,
        timeout_hours: int = 24,
        batch_size: int = 100,
        service_name: str = "sweeper",
    ) -> None:
        self.session_factory = session_factory
        self.sessions = sessions
        self.bounties = bounties
        self.timeout = timedelta(hours=timeout_hours)
        self.batch_size = batch_size
        self.service_name = service_name

    def _candidates(self, cutoff: datetime) -> list[str]:
        terminal = aliased(LedgerEntry)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(SkillSession.id)
                    .join(
                        LedgerEntry,
                        and_(LedgerEntry.session_id == SkillSession.id, LedgerEntry.entry_type == LOCKED),
                    )
                    .outerjoin(
                        terminal,
                        and_(
                            terminal.related_entry_id == LedgerEntry.id,
                            terminal.entry_type.in_(HOLD_TERMINAL_TYPES),
                        ),
                    )
                    .where(
                        SkillSession.status == REQUESTED,
                        LedgerEntry.created_at < cutoff,
                        terminal.id.is_(None),
                    )
                    .order_by(LedgerEntry.created_at)
                    .limit(self.batch_size)
                ).scalars()
            )

    def _expire_one(self, session_id: str) -> bool:
        with self.session_factory() as db:
            session = self.sessions.lock_session(db, session_id, skip_locked=True)
            if session is None or session.status != REQUESTED:
                return False
            self.sessions.apply(db, session_id, "cancel", None, reason=EXPIRED_REASON, system=True)
            db.commit()
            return True

    def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        """Run one pass and report what was released."""

        now = as_utc(now) if now is not None else utcnow()
        cutoff = now - self.timeout
        report = SweepReport()
        started = time.perf_counter()
        with tracer.start_as_current_span("sweeper.sweep_expired") as span:
            for session_id in self._candidates(cutoff):
                try:
                    expired = self._expire_one(session_id)
                except SkillSwapError as exc:
                    # Lost a race with a participant; the next pass re-evaluates it.
                    logger.warning("sweeper_skip session_id=%s code=%s", session_id, exc.code)
                    continue
                if expired:
                    report.cancelled_session_ids.append(session_id)
                    sweeper_cancelled_total.labels(service=self.service_name, kind="session").inc()
            report.cancelled_count = len(report.cancelled_session_ids)
            if self.bounties is not None:
                report.expired_bounty_ids = self.bounties.expire_open(now)
                sweeper_cancelled_total.labels(service=self.service_name, kind="bounty").inc(
                    len(report.expired_bounty_ids)
                )
            span.set_attribute("sweeper.cancelled_count", report.cancelled_count)
            span.set_attribute("sweeper.expired_bounties", len(report.expired_bounty_ids))
        sweeper_run_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        logger.info(
            "sweep_finished cancelled=%s expired_bounties=%s cutoff=%s",
            report.cancelled_count,
            len(report.expired_bounty_ids),
            cutoff.isoformat(),
        )
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep_expired)
            except Exception as exc:
                logger.exception("sweeper pass failed: %s", exc)
            await asyncio.sleep(interval_seconds)
