"""Skill-session state machine rules.

`ALLOWED_TRANSITIONS` is the raw status graph. `RULES` describes each
caller-facing event: which statuses it may start from, where it lands, who may
trigger it, and which statuses prove it already happened (a retried call in
one of those returns a replay instead of an error).
"""

from dataclasses import dataclass, field

from skillswap.common.errors import InvalidStateTransition, SessionNotInProgress

REQUESTED = "requested"
ACCEPTED = "accepted"
SCHEDULED = "scheduled"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
DISPUTED = "disputed"

SESSION_STATUSES = (REQUESTED, ACCEPTED, SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED, DISPUTED)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    REQUESTED: {ACCEPTED, CANCELLED},
    ACCEPTED: {SCHEDULED, CANCELLED},
    SCHEDULED: {SCHEDULED, IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED, CANCELLED, DISPUTED},
    DISPUTED: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}

# Who may trigger an event.
TEACHER = "teacher"
PARTICIPANT = "participant"
OPERATOR = "operator"

APPLY = "apply"
REPLAY = "replay"


@dataclass(frozen=True)
class TransitionRule:
    event: str
    sources: frozenset[str]
    target: str
    actor: str
    already: frozenset[str] = field(default_factory=frozenset)


RULES: dict[str, TransitionRule] = {
    "accept": TransitionRule(
        "accept",
        frozenset({REQUESTED}),
        ACCEPTED,
        TEACHER,
        already=frozenset({SCHEDULED, IN_PROGRESS, COMPLETED, DISPUTED}),
    ),
    "schedule": TransitionRule(
        "schedule",
        frozenset({ACCEPTED, SCHEDULED}),
        SCHEDULED,
        PARTICIPANT,
        already=frozenset({IN_PROGRESS, COMPLETED, DISPUTED}),
    ),
    "start": TransitionRule(
        "start",
        frozenset({SCHEDULED}),
        IN_PROGRESS,
        PARTICIPANT,
        already=frozenset({COMPLETED, DISPUTED}),
    ),
    "complete": TransitionRule("complete", frozenset({IN_PROGRESS}), COMPLETED, PARTICIPANT),
    "cancel": TransitionRule(
        "cancel",
        frozenset({REQUESTED, ACCEPTED, SCHEDULED, IN_PROGRESS}),
        CANCELLED,
        PARTICIPANT,
    ),
    "dispute": TransitionRule("dispute", frozenset({IN_PROGRESS}), DISPUTED, PARTICIPANT),
    "resolve_complete": TransitionRule("resolve_complete", frozenset({DISPUTED}), COMPLETED, OPERATOR),
    "resolve_cancel": TransitionRule("resolve_cancel", frozenset({DISPUTED}), CANCELLED, OPERATOR),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(f"Invalid transition: {current} -> {new}")


def plan_transition(rule: TransitionRule, current: str) -> str:
    """Decide whether an event applies, replays, or is rejected.

    A status equal to the target is a replay, except for sources that loop
    onto themselves (rescheduling), which the caller disambiguates.
    """

    if current in rule.sources:
        return APPLY
    if current == rule.target or current in rule.already:
        return REPLAY
    error = SessionNotInProgress if rule.target == COMPLETED else InvalidStateTransition
    raise error(
        f"Cannot {rule.event} a session that is {current}",
        details={"event": rule.event, "status": current},
    )
