"""Event type constants.

Centralizing event types as constants prevents typos and makes every
event the service records discoverable in one place.
"""

# ─── Work items ──────────────────────────────────────────

USER_CREATED = "user.created"
THREAD_CREATED = "thread.created"
THREAD_CHAT_CREATED = "thread_chat.created"
THREAD_CHAT_SCHEDULE_CANCELLED = "thread_chat.schedule_cancelled"

# ─── Dispatch lifecycle ──────────────────────────────────

THREAD_CHAT_STARTED = "thread_chat.started"
THREAD_CHAT_DEFERRED = "thread_chat.deferred"
THREAD_CHAT_RELEASED = "thread_chat.released"
THREAD_CHAT_FINISHED = "thread_chat.finished"
