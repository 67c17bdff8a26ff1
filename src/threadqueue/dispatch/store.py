"""Work item store contract.

Learn: The dispatcher never touches SQL directly. It talks to this narrow
interface, which SqlWorkItemStore implements against PostgreSQL.

mark_running is the only operation that admits a run, and it must be a
single atomic conditional write in the backing store: two concurrent
callers for the same user can never both get a ThreadChatRef back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ThreadChatRef:
    """Identity and dispatch-relevant state of one thread chat."""

    user_id: str
    thread_id: str
    thread_chat_id: str
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def with_status(self, status: str) -> "ThreadChatRef":
        return replace(self, status=status)

    def log_context(self) -> dict:
        return {
            "user_id": self.user_id,
            "thread_id": self.thread_id,
            "thread_chat_id": self.thread_chat_id,
        }


class WorkItemStore(ABC):
    @abstractmethod
    async def user_exists(self, user_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_thread_chat(
        self, user_id: str, thread_id: str, thread_chat_id: str
    ) -> Optional[ThreadChatRef]:
        raise NotImplementedError

    @abstractmethod
    async def is_user_running(self, user_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def next_queued(self, user_id: str) -> Optional[ThreadChatRef]:
        """Oldest queued chat for the user (created_at, then id), or None."""
        raise NotImplementedError

    @abstractmethod
    async def mark_running(
        self, chat: ThreadChatRef, *, from_status: str, trigger: str
    ) -> Optional[ThreadChatRef]:
        """Atomically claim the user's running slot for this chat.

        Returns the updated ref on success. Raises AlreadyRunning when the
        user's slot is taken, and returns None when the chat is no longer
        in from_status.
        """
        raise NotImplementedError

    @abstractmethod
    async def defer(self, chat: ThreadChatRef) -> bool:
        """Move a scheduled chat to queued. False if it was not scheduled."""
        raise NotImplementedError

    @abstractmethod
    async def release(self, chat: ThreadChatRef, *, reason: str) -> bool:
        """Revert a running chat to queued and free the user's slot."""
        raise NotImplementedError

    @abstractmethod
    async def finish_run(
        self, chat: ThreadChatRef, *, status: str, error: Optional[str] = None
    ) -> bool:
        """Move a running chat to a terminal status and free the user's slot."""
        raise NotImplementedError

    @abstractmethod
    async def users_with_queued_work(self, limit: int = 500) -> list[str]:
        """Users that have queued chats and no running chat."""
        raise NotImplementedError

    @abstractmethod
    async def stalled_runs(self, started_before: datetime) -> list[ThreadChatRef]:
        """Running chats whose run was admitted before the cutoff."""
        raise NotImplementedError
