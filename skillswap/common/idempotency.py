"""Idempotency guard.

Two kinds of keys collapse retried requests:

* structural ledger keys (`session:<id>:locked`, `bounty:<id>:unlocked`, ...)
  stored on `ledger_entries.idempotency_key` with a unique index, so one hold
  can never be written, released or transferred twice;
* client-supplied keys for creation calls, recorded in `idempotency_keys`
  inside the same transaction as the resource they created.

Lookups must run after the caller has locked the owning account row; the
unique constraints only back that up.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, select
from sqlalchemy.orm import Mapped, mapped_column

from skillswap.common.db import Base, utcnow
from skillswap.common.errors import InvalidRequest


class IdempotencyKey(Base):
    """Client key → resource created by the first request carrying it."""

    __tablename__ = "idempotency_keys"

    scope: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    resource_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def hold_key(session_id: str | None = None, bounty_id: str | None = None) -> str:
    """Prefix shared by a hold's `locked` entry and its terminal entry."""

    if (session_id is None) == (bounty_id is None):
        raise InvalidRequest("a hold belongs to exactly one session or bounty")
    if session_id is not None:
        return f"session:{session_id}"
    return f"bounty:{bounty_id}"


def entry_key(prefix: str, entry_type: str) -> str:
    return f"{prefix}:{entry_type}"


def client_key(owner_id: str, key: str) -> str:
    """Client keys are scoped by the caller so two users cannot collide."""

    key = key.strip()
    if not 5 <= len(key) <= 200:
        raise InvalidRequest("idempotency key must be 5-200 characters")
    return f"{owner_id}:{key}"


def lookup(db, scope: str, key: str) -> str | None:
    """Return the resource id recorded for `(scope, key)`, if any."""

    return db.execute(
        select(IdempotencyKey.resource_id).where(IdempotencyKey.scope == scope, IdempotencyKey.key == key)
    ).scalar_one_or_none()


def remember(db, scope: str, key: str, resource_id: str) -> None:
    db.add(IdempotencyKey(scope=scope, key=key, resource_id=resource_id))
