"""Dispatch error taxonomy.

Unauthorized and InvalidTarget reject the request before any state
change. AlreadyRunning is benign and handlers resolve it to a no-op ack.
StoreUnavailable is transient; the caller retries the trigger, this
service never retries internally. HandoffFailed is raised by runners and
handled inside the dispatcher by reverting the chat.
"""


class DispatchError(Exception):
    """Base class for dispatch failures."""
    pass


class Unauthorized(DispatchError):
    """Caller did not present the internal service credential."""
    pass


class InvalidTarget(DispatchError):
    """A user, thread or thread chat id is malformed or unknown."""
    pass


class AlreadyRunning(DispatchError):
    """Admitting the run would break the one-running-chat-per-user rule."""
    pass


class StoreUnavailable(DispatchError):
    """The work item store could not be reached or the write failed transiently."""
    pass


class HandoffFailed(DispatchError):
    """The execution runner rejected or never received the handoff."""
    pass
