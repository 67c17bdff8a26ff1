"""Thread service — creates the work the dispatcher later runs.

Learn: Thread chats are born either queued (run as soon as the user's
slot is free) or scheduled (run when the external scheduler fires). This
service never moves a chat into running; that belongs to the dispatcher.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from threadqueue.db.models import Thread, ThreadChat, User
from threadqueue.dispatch.state import (
    ALL_STATUSES,
    COMPLETED,
    QUEUED,
    SCHEDULED,
    InvalidTransitionError,
)
from threadqueue.events.store import EventStore, thread_chat_stream, user_stream
from threadqueue.events.types import (
    THREAD_CHAT_CREATED,
    THREAD_CHAT_SCHEDULE_CANCELLED,
    THREAD_CREATED,
    USER_CREATED,
)


class NotFoundError(Exception):
    """Raised when a user, thread or thread chat does not exist for the caller."""
    pass


class ThreadService:
    """Business logic for users, threads and thread chats."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    # ─── Users + threads ─────────────────────────────────

    async def create_user(self, email: str, name: str) -> User:
        user = User(email=email, name=name)
        self.db.add(user)
        await self.db.flush()

        await self.events.append(
            stream_id=user_stream(user.id),
            event_type=USER_CREATED,
            data={"email": email, "name": name},
        )
        await self.db.commit()
        return user

    async def create_thread(self, user_id: uuid.UUID, title: str = "") -> Thread:
        if await self.db.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        thread = Thread(user_id=user_id, title=title)
        self.db.add(thread)
        await self.db.flush()

        await self.events.append(
            stream_id=user_stream(user_id),
            event_type=THREAD_CREATED,
            data={"thread_id": str(thread.id), "title": title},
        )
        await self.db.commit()
        return thread

    # ─── Thread chats ────────────────────────────────────

    async def create_thread_chat(
        self,
        user_id: uuid.UUID,
        thread_id: uuid.UUID,
        message: str,
        schedule_at: Optional[datetime] = None,
    ) -> ThreadChat:
        """Create a chat holding the user's message, queued or scheduled."""
        thread = await self.db.get(Thread, thread_id)
        if thread is None or thread.user_id != user_id:
            raise NotFoundError(f"Thread {thread_id} not found")

        status = SCHEDULED if schedule_at else QUEUED
        chat = ThreadChat(
            thread_id=thread_id,
            user_id=user_id,
            status=status,
            schedule_at=schedule_at,
            messages=[{"type": "user", "content": message}],
        )
        self.db.add(chat)
        await self.db.flush()

        await self.events.append(
            stream_id=thread_chat_stream(chat.id),
            event_type=THREAD_CHAT_CREATED,
            data={
                "user_id": str(user_id),
                "thread_id": str(thread_id),
                "status": status,
                "schedule_at": schedule_at.isoformat() if schedule_at else None,
            },
        )
        await self.db.commit()
        await self.db.refresh(chat)
        return chat

    async def get_thread_chat(
        self, user_id: uuid.UUID, thread_chat_id: uuid.UUID
    ) -> Optional[ThreadChat]:
        result = await self.db.execute(
            select(ThreadChat).where(
                ThreadChat.id == thread_chat_id, ThreadChat.user_id == user_id
            )
        )
        return result.scalars().first()

    async def list_thread_chats(
        self,
        user_id: uuid.UUID,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ThreadChat]:
        """List a user's chats in queue order (oldest first)."""
        if status is not None and status not in ALL_STATUSES:
            raise ValueError(f"Unknown status '{status}'")

        query = (
            select(ThreadChat)
            .where(ThreadChat.user_id == user_id)
            .order_by(ThreadChat.created_at.asc(), ThreadChat.id.asc())
            .limit(limit)
            .offset(offset)
        )
        if status:
            query = query.where(ThreadChat.status == status)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def cancel_schedule(
        self, user_id: uuid.UUID, thread_id: uuid.UUID, thread_chat_id: uuid.UUID
    ) -> ThreadChat:
        """Cancel a scheduled chat before it fires.

        Learn: The status change is conditional on the chat still being
        scheduled, so a scheduler firing at the same moment wins or loses
        cleanly.

        Raises:
            NotFoundError: unknown chat for this user/thread
            InvalidTransitionError: chat is no longer scheduled
        """
        chat = await self.get_thread_chat(user_id, thread_chat_id)
        if chat is None or chat.thread_id != thread_id:
            raise NotFoundError(f"Thread chat {thread_chat_id} not found")

        if chat.status != SCHEDULED:
            raise InvalidTransitionError(
                f"Only scheduled thread chats can be cancelled (status is '{chat.status}')"
            )

        updated = await self.db.scalar(
            update(ThreadChat)
            .where(
                ThreadChat.id == thread_chat_id,
                ThreadChat.user_id == user_id,
                ThreadChat.status == SCHEDULED,
            )
            .values(
                status=COMPLETED,
                schedule_at=None,
                completed_at=datetime.now(timezone.utc),
                messages=chat.messages
                + [{"type": "system", "message_type": "cancel-schedule"}],
            )
            .returning(ThreadChat.id)
        )
        if updated is None:
            await self.db.rollback()
            raise InvalidTransitionError(
                "Thread chat left 'scheduled' before it could be cancelled"
            )

        await self.events.record_transition(
            thread_chat_id,
            THREAD_CHAT_SCHEDULE_CANCELLED,
            from_status=SCHEDULED,
            to_status=COMPLETED,
            user_id=str(user_id),
            thread_id=str(thread_id),
        )
        await self.db.commit()
        await self.db.refresh(chat)
        return chat
