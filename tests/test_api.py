import pytest
from fastapi.testclient import TestClient

from skillswap.common.ratelimit import RateLimitExceeded, TokenBucket
from skillswap.services.api.deps import get_services, rate_limit
from skillswap.services.api.main import app

API_KEY = {"X-API-Key": "test-key"}


def _as(user_id: str) -> dict:
    return {"X-User-Id": user_id}


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[rate_limit] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_session_lifecycle_over_http(client, learner, teacher, skill, future):
    created = client.post(
        "/sessions",
        json={"teacher_id": teacher, "skill_id": skill.id, "credits_amount": 7},
        headers={**_as(learner), "Idempotency-Key": "book-python-http"},
    )
    assert created.status_code == 201
    body = created.json()
    session_id = body["session"]["id"]
    assert body["session"]["status"] == "requested"
    assert body["entries"][0]["entry_type"] == "locked"

    replay = client.post(
        "/sessions",
        json={"teacher_id": teacher, "skill_id": skill.id, "credits_amount": 7},
        headers={**_as(learner), "Idempotency-Key": "book-python-http"},
    )
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True

    assert client.post(f"/sessions/{session_id}/accept", headers=_as(teacher)).status_code == 200
    scheduled = client.post(
        f"/sessions/{session_id}/schedule",
        json={"scheduled_at": future.isoformat()},
        headers=_as(learner),
    )
    assert scheduled.json()["session"]["status"] == "scheduled"
    assert client.post(f"/sessions/{session_id}/start", headers=_as(teacher)).status_code == 200

    done = client.post(f"/sessions/{session_id}/complete", headers=_as(learner)).json()
    assert done["session"]["status"] == "completed"
    assert [e["entry_type"] for e in done["entries"]] == ["spent", "earned"]

    balance = client.get(f"/users/{teacher}/balance", headers=_as(teacher)).json()
    assert balance == {"user_id": teacher, "total": 7, "reserved": 0, "available": 7}

    timeline = client.get(f"/sessions/{session_id}/timeline", headers=_as(learner)).json()
    assert [row["to_state"] for row in timeline][-1] == "completed"


def test_errors_use_stable_shape(client, services, learner, teacher):
    pricey = services.sessions.upsert_skill("python-201", teacher, "Python internals", 11, "active")

    resp = client.post(
        "/sessions",
        json={"teacher_id": teacher, "skill_id": pricey.id, "credits_amount": 11},
        headers=_as(learner),
    )

    assert resp.status_code == 402
    assert resp.json()["error"] == {
        "code": "INSUFFICIENT_CREDITS",
        "message": "Insufficient credits. Available: 10, Required: 11",
        "details": {"available": 10, "required": 11},
    }


def test_transition_errors(client, learner, teacher, skill):
    session_id = client.post(
        "/sessions",
        json={"teacher_id": teacher, "skill_id": skill.id, "credits_amount": 7},
        headers=_as(learner),
    ).json()["session"]["id"]

    forbidden = client.post(f"/sessions/{session_id}/accept", headers=_as(learner))
    not_started = client.post(f"/sessions/{session_id}/complete", headers=_as(learner))
    missing = client.post("/sessions/nope/accept", headers=_as(teacher))

    assert (forbidden.status_code, forbidden.json()["error"]["code"]) == (403, "FORBIDDEN")
    assert (not_started.status_code, not_started.json()["error"]["code"]) == (409, "SESSION_NOT_IN_PROGRESS")
    assert missing.status_code == 404


def test_actor_header_required(client):
    assert client.post("/sessions/any/accept").status_code == 401


def test_cannot_read_other_users_balance(client, learner, teacher):
    assert client.get(f"/users/{learner}/balance", headers=_as(teacher)).status_code == 403
    assert client.get(f"/users/{learner}/balance", headers=API_KEY).status_code == 200


def test_internal_routes_need_api_key(client):
    payload = {"user_id": "newcomer"}

    assert client.post("/internal/accounts", json=payload).status_code == 401
    opened = client.post("/internal/accounts", json=payload, headers=API_KEY)

    assert opened.status_code == 201
    assert opened.json()["available"] == 5


def test_adjustment_and_ledger_page(client, learner):
    resp = client.post(
        f"/internal/accounts/{learner}/adjustments",
        json={"amount": 3, "description": "community award", "idempotency_key": "award-0001"},
        headers=API_KEY,
    )
    assert resp.status_code == 201
    assert resp.json()["balance"]["available"] == 13

    page = client.get(f"/users/{learner}/ledger?limit=1", headers=_as(learner)).json()
    assert page["total_count"] == 2
    assert len(page["entries"]) == 1
    assert page["balance"]["total"] == 13


def test_dispute_resolved_by_operator(client, services, in_progress_session):
    disputed = client.post(
        f"/sessions/{in_progress_session.id}/dispute",
        json={"reason": "teacher never joined"},
        headers=_as("learner"),
    )
    assert disputed.json()["session"]["status"] == "disputed"

    assert client.post(
        f"/sessions/{in_progress_session.id}/resolve", json={"outcome": "cancel", "reason": "refund"}
    ).status_code == 401
    resolved = client.post(
        f"/sessions/{in_progress_session.id}/resolve",
        json={"outcome": "cancel", "reason": "refund"},
        headers=API_KEY,
    )
    assert resolved.json()["session"]["status"] == "cancelled"
    assert services.store.get_balance("learner").available == 10


def test_bounty_routes(client, learner, teacher):
    posted = client.post("/bounties", json={"title": "Explain decorators", "credits_offered": 2}, headers=_as(learner))
    assert posted.status_code == 201
    bounty_id = posted.json()["bounty"]["id"]

    assert [b["id"] for b in client.get("/bounties").json()] == [bounty_id]
    claimed = client.post(f"/bounties/{bounty_id}/claim", headers=_as(teacher)).json()
    assert claimed["bounty"]["status"] == "claimed"
    assert claimed["session"]["status"] == "accepted"


def test_manual_sweep_and_reconciliation(client, learner, teacher, skill):
    client.post(
        "/sessions",
        json={"teacher_id": teacher, "skill_id": skill.id, "credits_amount": 7},
        headers=_as(learner),
    )

    report = client.post("/internal/sweep", json={"now": "2100-01-01T00:00:00+00:00"}, headers=API_KEY).json()
    health = client.get("/reconciliation", headers=API_KEY).json()

    assert report["cancelled_count"] == 1
    assert health["healthy"] is True


class _FakeRedis:
    def __init__(self):
        self.hashes = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(f) for f in fields]

    def hset(self, key, mapping):
        self.hashes[key] = dict(mapping)

    def expire(self, key, seconds):
        return True


def test_token_bucket_limits_per_actor():
    bucket = TokenBucket(_FakeRedis(), limit_per_minute=2)

    bucket.consume("u1")
    bucket.consume("u1")
    with pytest.raises(RateLimitExceeded):
        bucket.consume("u1")
    bucket.consume("u2")
