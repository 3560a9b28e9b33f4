"""Fire the same lifecycle call concurrently and check it took effect once.

Opens two accounts, books a session, walks it to `in_progress`, then sends
`--parallel` concurrent completes. Exactly one transfer must land: the
learner pays once and the teacher earns once.
"""

import argparse
import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx


async def run(base_url: str, api_key: str, parallel: int, credits: int) -> None:
    learner, teacher, skill = f"learner-{uuid4()}", f"teacher-{uuid4()}", f"skill-{uuid4()}"
    internal = {"x-api-key": api_key}
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        for user in (learner, teacher):
            resp = await client.post(
                "/internal/accounts", json={"user_id": user, "initial_grant": credits * 2}, headers=internal
            )
            resp.raise_for_status()
        resp = await client.put(
            f"/internal/skills/{skill}",
            json={"teacher_id": teacher, "title": "race check", "credits_required": credits},
            headers=internal,
        )
        resp.raise_for_status()

        resp = await client.post(
            "/sessions",
            json={"teacher_id": teacher, "skill_id": skill, "credits_amount": credits},
            headers={"x-user-id": learner},
        )
        resp.raise_for_status()
        session_id = resp.json()["session"]["id"]
        when = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        for action, actor, body in (
            ("accept", teacher, None),
            ("schedule", learner, {"scheduled_at": when}),
            ("start", teacher, None),
        ):
            resp = await client.post(f"/sessions/{session_id}/{action}", json=body, headers={"x-user-id": actor})
            resp.raise_for_status()

        async def complete(i: int) -> tuple[int, bool]:
            actor = learner if i % 2 else teacher
            resp = await client.post(f"/sessions/{session_id}/complete", headers={"x-user-id": actor})
            replayed = resp.status_code == 200 and resp.json().get("replayed", False)
            return resp.status_code, replayed

        results = await asyncio.gather(*(complete(i) for i in range(parallel)))

        learner_balance = (await client.get(f"/users/{learner}/balance", headers={"x-user-id": learner})).json()
        teacher_balance = (await client.get(f"/users/{teacher}/balance", headers={"x-user-id": teacher})).json()

    codes = Counter(code for code, _ in results)
    applied = sum(1 for code, replayed in results if code == 200 and not replayed)
    print(f"status_codes={dict(codes)}")
    print(f"applied={applied} replayed={sum(1 for _, r in results if r)}")
    print(f"learner={learner_balance}")
    print(f"teacher={teacher_balance}")
    ok = applied == 1 and learner_balance["total"] == credits and teacher_balance["total"] == credits * 3
    print("RESULT", "ok" if ok else "DOUBLE-APPLY OR LOST UPDATE")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--parallel", type=int, default=20)
    parser.add_argument("--credits", type=int, default=5)
    args = parser.parse_args()
    asyncio.run(run(args.base_url, args.api_key, args.parallel, args.credits))
