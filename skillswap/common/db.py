"""Database bootstrap helpers shared by the API, sweeper and scripts."""

from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from skillswap.common.config import settings
from skillswap.common.errors import Conflict
from skillswap.common.logging import logger


def make_session_factory(dsn: str) -> sessionmaker:
    """Build an engine + session factory pair for one DSN."""

    engine = create_engine(dsn, pool_pre_ping=True)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


SessionLocal = make_session_factory(settings.postgres_dsn)
engine = SessionLocal.kw["bind"]


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize driver-returned datetimes (naive on SQLite) to aware UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def write_session(session_factory, operation: str):
    """Session for one write path; a unique-constraint race surfaces as `Conflict`."""

    try:
        with session_factory() as db:
            yield db
    except IntegrityError as exc:
        logger.info("write_raced operation=%s", operation)
        raise Conflict(f"{operation} raced with a concurrent write; retry", details={"operation": operation}) from exc
