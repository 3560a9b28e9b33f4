import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("OUTBOX_PUBLISHER_ENABLED", "false")

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402

from skillswap.common.db import Base, make_session_factory, utcnow  # noqa: E402
from skillswap.common.idempotency import IdempotencyKey  # noqa: E402,F401
from skillswap.services.api.deps import build_services  # noqa: E402
from skillswap.services.bounties.models import Bounty  # noqa: E402,F401
from skillswap.services.ledger.models import CreditAccount, LedgerEntry  # noqa: E402,F401
from skillswap.services.live_classes.models import Attendance, LiveClass  # noqa: E402,F401
from skillswap.services.sessions.models import OutboxEvent, SessionTimeline, Skill, SkillSession  # noqa: E402,F401


@pytest.fixture
def session_factory(tmp_path):
    factory = make_session_factory(f"sqlite:///{tmp_path / 'skillswap.db'}")
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def services(session_factory):
    return build_services(session_factory)


@pytest.fixture
def learner(services):
    services.store.open_account("learner", initial_grant=10)
    return "learner"


@pytest.fixture
def teacher(services):
    services.store.open_account("teacher", level=4, initial_grant=0)
    return "teacher"


@pytest.fixture
def skill(services, teacher):
    return services.sessions.upsert_skill("python-101", teacher, "Intro to Python", 7, "active")


@pytest.fixture
def future():
    return utcnow() + timedelta(days=1)


@pytest.fixture
def in_progress_session(services, learner, teacher, skill, future):
    """Session for 7 credits walked to `in_progress`."""

    session = services.sessions.create_request(learner, teacher, skill.id, 7).session
    services.sessions.accept(session.id, teacher)
    services.sessions.schedule(session.id, learner, future)
    return services.sessions.start(session.id, teacher).session


@pytest.fixture
def short_skill(services, teacher):
    return services.sessions.upsert_skill("sql-basics", teacher, "SQL in an hour", 3, "active")
