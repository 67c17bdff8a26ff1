"""threadqueue — thread-chat dispatch for AI coding agents.

Admits scheduled and queued thread chats, enforces one running chat
per user, and hands each admitted chat to the execution runner.
"""

__version__ = "0.1.0"
