"""Thread chat state machine.

  scheduled → running | queued (deferred) | completed (schedule cancelled)
  queued    → running
  running   → completed | failed | queued (handoff reverted)

Only the dispatcher moves chats into running. The runner (through
finish_run) and the stalled reaper move them out.
"""

SCHEDULED = "scheduled"
QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

ALL_STATUSES = (SCHEDULED, QUEUED, RUNNING, COMPLETED, FAILED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

VALID_TRANSITIONS: dict[str, set[str]] = {
    SCHEDULED: {RUNNING, QUEUED, COMPLETED},
    QUEUED: {RUNNING},
    RUNNING: {COMPLETED, FAILED, QUEUED},
    COMPLETED: set(),  # terminal state
    FAILED: set(),     # terminal state
}


class InvalidTransitionError(Exception):
    """Raised when a status transition is not allowed."""
    pass


def check_transition(old_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless old_status → new_status is allowed."""
    allowed = VALID_TRANSITIONS.get(old_status, set())
    if new_status not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from '{old_status}' to '{new_status}'. "
            f"Allowed: {sorted(allowed) or 'none (terminal state)'}"
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
