"""Event store — append-only audit log of thread chat transitions.

Every status change is written as an event in the same transaction as
the change itself, so the log never disagrees with the thread_chats
table. Events carry the request ID of the trigger that caused them,
which ties a chat's history back to the scheduler or queue call.

Streams:
    thread_chat:<id>   status transitions of one chat
    user:<id>          user and thread lifecycle
"""

from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from threadqueue.db.models import Event


def thread_chat_stream(thread_chat_id) -> str:
    return f"thread_chat:{thread_chat_id}"


def user_stream(user_id) -> str:
    return f"user:{user_id}"


class EventStore:
    """Writes and reads events on the caller's session; never commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        stream_id: str,
        event_type: str,
        data: dict[str, Any],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Event:
        meta = dict(metadata or {})
        request_id = structlog.contextvars.get_contextvars().get("request_id")
        if request_id:
            meta.setdefault("request_id", request_id)

        event = Event(stream_id=stream_id, type=event_type, data=data, meta=meta)
        self.db.add(event)
        await self.db.flush()
        return event

    async def record_transition(
        self,
        chat_id,
        event_type: str,
        *,
        from_status: str,
        to_status: str,
        **data: Any,
    ) -> Event:
        """Append a status change to the chat's stream."""
        return await self.append(
            thread_chat_stream(chat_id),
            event_type,
            {**data, "from": from_status, "to": to_status},
        )

    async def read_stream(
        self,
        stream_id: str,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Event]:
        """Events of one stream in write order, optionally after a position."""
        result = await self.db.execute(
            select(Event)
            .where(Event.stream_id == stream_id, Event.id > after_id)
            .order_by(Event.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def history(self, thread_chat_id, limit: int = 100) -> list[Event]:
        return await self.read_stream(thread_chat_stream(thread_chat_id), limit=limit)
