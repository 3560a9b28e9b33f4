"""Error taxonomy shared by the ledger, the session state machine and the API.

Every class carries a stable `code` and the HTTP status the API answers with.
`AlreadyCompleted` / `AlreadyCancelled` are raised internally to short-circuit
a duplicate request; callers convert them into a successful replay.
"""

from typing import Any


class SkillSwapError(Exception):
    """Base application error with a consistent wire shape."""

    code = "ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InsufficientCredits(SkillSwapError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"Insufficient credits. Available: {available}, Required: {required}",
            details={"available": available, "required": required},
        )


class InvalidStateTransition(SkillSwapError, ValueError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class SessionNotInProgress(InvalidStateTransition):
    code = "SESSION_NOT_IN_PROGRESS"


class Forbidden(SkillSwapError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(SkillSwapError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(SkillSwapError):
    """Concurrent writer won the race; re-fetch before deciding to retry."""

    code = "CONFLICT"
    status_code = 409


class InvalidRequest(SkillSwapError, ValueError):
    code = "INVALID_REQUEST"
    status_code = 422


class AlreadyResolved(SkillSwapError):
    """Idempotent no-op: the requested effect already exists."""

    code = "ALREADY_RESOLVED"
    status_code = 200

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class AlreadyCompleted(AlreadyResolved):
    code = "ALREADY_COMPLETED"


class AlreadyCancelled(AlreadyResolved):
    code = "ALREADY_CANCELLED"
