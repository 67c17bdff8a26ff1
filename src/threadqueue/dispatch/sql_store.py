"""PostgreSQL-backed work item store.

Learn: Every method opens its own session from the session factory, so the
store is safe to share across requests and background handoff tasks.

Admission is one transaction:
1. INSERT INTO active_runs ... ON CONFLICT DO NOTHING RETURNING user_id
   (the primary key on user_id makes this the per-user compare-and-swap)
2. UPDATE thread_chats SET status = 'running' WHERE status = <from_status>
3. append the audit event, COMMIT

If the insert conflicts the caller gets AlreadyRunning; if the update
matches nothing the transaction rolls back and the caller gets None.
Nothing here depends on process memory, so any number of service
instances can admit runs concurrently.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete, exc as sa_exc, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadqueue.db.models import ActiveRun, ThreadChat, User, utcnow
from threadqueue.dispatch.errors import AlreadyRunning, StoreUnavailable
from threadqueue.dispatch.state import (
    QUEUED,
    RUNNING,
    SCHEDULED,
    TERMINAL_STATUSES,
    InvalidTransitionError,
    check_transition,
)
from threadqueue.dispatch.store import ThreadChatRef, WorkItemStore
from threadqueue.events.store import EventStore
from threadqueue.events.types import (
    THREAD_CHAT_DEFERRED,
    THREAD_CHAT_FINISHED,
    THREAD_CHAT_RELEASED,
    THREAD_CHAT_STARTED,
)

logger = structlog.get_logger()

# Connection-level failures. Anything else (constraint bugs, bad SQL)
# propagates unchanged.
_TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    OSError,
)


def as_uuid(value) -> Optional[uuid.UUID]:
    """Parse an id, returning None for anything that is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def to_ref(chat: ThreadChat) -> ThreadChatRef:
    return ThreadChatRef(
        user_id=str(chat.user_id),
        thread_id=str(chat.thread_id),
        thread_chat_id=str(chat.id),
        status=chat.status,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


class SqlWorkItemStore(WorkItemStore):
    """WorkItemStore over the thread_chats and active_runs tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as db:
                yield db
        except _TRANSIENT_ERRORS as e:
            logger.warning("store.unavailable", error=str(e))
            raise StoreUnavailable(str(e)) from e

    # ─── Reads ───────────────────────────────────────────

    async def user_exists(self, user_id: str) -> bool:
        uid = as_uuid(user_id)
        if uid is None:
            return False
        async with self._session() as db:
            return await db.get(User, uid) is not None

    async def get_thread_chat(
        self, user_id: str, thread_id: str, thread_chat_id: str
    ) -> Optional[ThreadChatRef]:
        uid, tid, cid = as_uuid(user_id), as_uuid(thread_id), as_uuid(thread_chat_id)
        if uid is None or tid is None or cid is None:
            return None
        async with self._session() as db:
            result = await db.execute(
                select(ThreadChat).where(
                    ThreadChat.id == cid,
                    ThreadChat.thread_id == tid,
                    ThreadChat.user_id == uid,
                )
            )
            chat = result.scalars().first()
            return to_ref(chat) if chat else None

    async def is_user_running(self, user_id: str) -> bool:
        uid = as_uuid(user_id)
        if uid is None:
            return False
        async with self._session() as db:
            marker = await db.scalar(
                select(ActiveRun.user_id).where(ActiveRun.user_id == uid)
            )
            return marker is not None

    async def next_queued(self, user_id: str) -> Optional[ThreadChatRef]:
        uid = as_uuid(user_id)
        if uid is None:
            return None
        async with self._session() as db:
            result = await db.execute(
                select(ThreadChat)
                .where(ThreadChat.user_id == uid, ThreadChat.status == QUEUED)
                .order_by(ThreadChat.created_at.asc(), ThreadChat.id.asc())
                .limit(1)
            )
            chat = result.scalars().first()
            return to_ref(chat) if chat else None

    async def users_with_queued_work(self, limit: int = 500) -> list[str]:
        busy = select(ActiveRun.user_id).where(ActiveRun.user_id == ThreadChat.user_id)
        async with self._session() as db:
            result = await db.execute(
                select(ThreadChat.user_id)
                .where(ThreadChat.status == QUEUED, ~busy.exists())
                .distinct()
                .limit(limit)
            )
            return [str(user_id) for user_id in result.scalars().all()]

    async def stalled_runs(self, started_before: datetime) -> list[ThreadChatRef]:
        async with self._session() as db:
            result = await db.execute(
                select(ThreadChat)
                .join(ActiveRun, ActiveRun.thread_chat_id == ThreadChat.id)
                .where(ActiveRun.started_at < started_before)
                .order_by(ActiveRun.started_at.asc())
            )
            return [to_ref(chat) for chat in result.scalars().all()]

    # ─── Writes ──────────────────────────────────────────

    async def mark_running(
        self, chat: ThreadChatRef, *, from_status: str, trigger: str
    ) -> Optional[ThreadChatRef]:
        check_transition(from_status, RUNNING)
        uid, cid = as_uuid(chat.user_id), as_uuid(chat.thread_chat_id)
        now = utcnow()

        async with self._session() as db:
            claimed = await db.scalar(
                pg_insert(ActiveRun)
                .values(user_id=uid, thread_chat_id=cid, trigger=trigger, started_at=now)
                .on_conflict_do_nothing()
                .returning(ActiveRun.user_id)
            )
            if claimed is None:
                await db.rollback()
                raise AlreadyRunning(
                    f"User {chat.user_id} already has a running thread chat"
                )

            updated = await db.scalar(
                update(ThreadChat)
                .where(
                    ThreadChat.id == cid,
                    ThreadChat.user_id == uid,
                    ThreadChat.status == from_status,
                )
                .values(status=RUNNING, started_at=now, updated_at=now, error=None)
                .returning(ThreadChat.id)
            )
            if updated is None:
                # Chat moved on since it was read; give the slot back.
                await db.rollback()
                return None

            await EventStore(db).record_transition(
                cid,
                THREAD_CHAT_STARTED,
                from_status=from_status,
                to_status=RUNNING,
                trigger=trigger,
                **chat.log_context(),
            )
            await db.commit()

        return chat.with_status(RUNNING)

    async def defer(self, chat: ThreadChatRef) -> bool:
        uid, cid = as_uuid(chat.user_id), as_uuid(chat.thread_chat_id)
        async with self._session() as db:
            updated = await db.scalar(
                update(ThreadChat)
                .where(
                    ThreadChat.id == cid,
                    ThreadChat.user_id == uid,
                    ThreadChat.status == SCHEDULED,
                )
                .values(status=QUEUED, updated_at=utcnow())
                .returning(ThreadChat.id)
            )
            if updated is None:
                await db.rollback()
                return False

            await EventStore(db).record_transition(
                cid,
                THREAD_CHAT_DEFERRED,
                from_status=SCHEDULED,
                to_status=QUEUED,
                **chat.log_context(),
            )
            await db.commit()
            return True

    async def release(self, chat: ThreadChatRef, *, reason: str) -> bool:
        return await self._end_run(
            chat,
            to_status=QUEUED,
            event_type=THREAD_CHAT_RELEASED,
            extra={"reason": reason},
        )

    async def finish_run(
        self, chat: ThreadChatRef, *, status: str, error: Optional[str] = None
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Runs can only finish as {sorted(TERMINAL_STATUSES)}, got '{status}'"
            )
        return await self._end_run(
            chat,
            to_status=status,
            event_type=THREAD_CHAT_FINISHED,
            extra={"error": error},
            values={"completed_at": utcnow(), "error": error},
        )

    async def _end_run(
        self,
        chat: ThreadChatRef,
        *,
        to_status: str,
        event_type: str,
        extra: dict,
        values: Optional[dict] = None,
    ) -> bool:
        """Move a running chat out of running and delete its marker, atomically."""
        uid, cid = as_uuid(chat.user_id), as_uuid(chat.thread_chat_id)

        async with self._session() as db:
            updated = await db.scalar(
                update(ThreadChat)
                .where(
                    ThreadChat.id == cid,
                    ThreadChat.user_id == uid,
                    ThreadChat.status == RUNNING,
                )
                .values(status=to_status, updated_at=utcnow(), **(values or {}))
                .returning(ThreadChat.id)
            )
            if updated is None:
                await db.rollback()
                return False

            await db.execute(
                delete(ActiveRun).where(
                    ActiveRun.user_id == uid, ActiveRun.thread_chat_id == cid
                )
            )
            await EventStore(db).record_transition(
                cid,
                event_type,
                from_status=RUNNING,
                to_status=to_status,
                **chat.log_context(),
                **extra,
            )
            await db.commit()
            return True
