"""Test fixtures — in-memory dispatch collaborators plus optional Postgres.

Learn: Most tests never touch a database. The dispatcher only talks to
the WorkItemStore and ExecutionRunner interfaces, so:

1. MemoryWorkItemStore keeps chats and running markers in dicts. Its
   mark_running does the check and the set with no await in between,
   which makes it atomic under asyncio exactly like the SQL version is
   under concurrent transactions.
2. RecordingRunner records handoffs and can be told to fail or to block.
3. The `client` fixture overrides get_dispatcher so HTTP tests drive a
   dispatcher built from those fakes.

SQL tests use `pg_session_factory`, which skips when Postgres is not
reachable and rolls everything back afterwards (savepoint pattern).
"""

import asyncio
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from threadqueue.dispatch.dispatcher import ThreadDispatcher, get_dispatcher
from threadqueue.dispatch.errors import AlreadyRunning, HandoffFailed, StoreUnavailable
from threadqueue.dispatch.gate import DispatchGate
from threadqueue.dispatch.runner import ExecutionRunner
from threadqueue.dispatch.state import QUEUED, RUNNING, SCHEDULED, TERMINAL_STATUSES
from threadqueue.dispatch.store import ThreadChatRef, WorkItemStore
from threadqueue.main import app

SECRET = "test-internal-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}

_T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ─── In-memory store ──────────────────────────────────────


class MemoryWorkItemStore(WorkItemStore):
    """Dict-backed WorkItemStore. `calls` records every method invoked."""

    def __init__(self):
        self.users: set[str] = set()
        self.chats: dict[str, ThreadChatRef] = {}
        self.running: dict[str, str] = {}  # user_id -> thread_chat_id
        self.run_started: dict[str, datetime] = {}  # thread_chat_id -> admitted at
        self.errors: dict[str, Optional[str]] = {}
        self.calls: list[str] = []
        self.available = True
        self._clock = itertools.count(1)

    # helpers

    def add_user(self, user_id: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.users.add(user_id)
        return user_id

    def add_chat(
        self,
        user_id: str,
        status: str = QUEUED,
        thread_id: Optional[str] = None,
    ) -> ThreadChatRef:
        """Add a chat; each one is created strictly later than the previous."""
        created = _T0 + timedelta(seconds=next(self._clock))
        chat = ThreadChatRef(
            user_id=user_id,
            thread_id=thread_id or str(uuid.uuid4()),
            thread_chat_id=str(uuid.uuid4()),
            status=status,
            created_at=created,
            updated_at=created,
        )
        self.chats[chat.thread_chat_id] = chat
        if status == RUNNING:
            self.running[user_id] = chat.thread_chat_id
            self.run_started[chat.thread_chat_id] = datetime.now(timezone.utc)
        return chat

    def status_of(self, chat: ThreadChatRef) -> str:
        return self.chats[chat.thread_chat_id].status

    def running_count(self, user_id: str) -> int:
        return sum(
            1 for c in self.chats.values()
            if c.user_id == user_id and c.status == RUNNING
        )

    async def _io(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailable("memory store switched off")

    def _set_status(self, chat_id: str, status: str) -> ThreadChatRef:
        updated = self.chats[chat_id].with_status(status)
        self.chats[chat_id] = updated
        return updated

    # reads

    async def user_exists(self, user_id):
        await self._io("user_exists")
        return user_id in self.users

    async def get_thread_chat(self, user_id, thread_id, thread_chat_id):
        await self._io("get_thread_chat")
        chat = self.chats.get(thread_chat_id)
        if chat is None or chat.user_id != user_id or chat.thread_id != thread_id:
            return None
        return chat

    async def is_user_running(self, user_id):
        await self._io("is_user_running")
        return user_id in self.running

    async def next_queued(self, user_id):
        await self._io("next_queued")
        queued = [
            c for c in self.chats.values()
            if c.user_id == user_id and c.status == QUEUED
        ]
        if not queued:
            return None
        return min(queued, key=lambda c: (c.created_at, c.thread_chat_id))

    async def users_with_queued_work(self, limit=500):
        await self._io("users_with_queued_work")
        users = []
        for c in sorted(self.chats.values(), key=lambda c: c.created_at):
            if c.status == QUEUED and c.user_id not in self.running and c.user_id not in users:
                users.append(c.user_id)
        return users[:limit]

    async def stalled_runs(self, started_before):
        await self._io("stalled_runs")
        return [
            self.chats[cid] for cid in self.running.values()
            if self.run_started[cid] < started_before
        ]

    # writes

    async def mark_running(self, chat, *, from_status, trigger):
        await self._io("mark_running")
        # No awaits below: check-and-set is atomic on the event loop.
        if chat.user_id in self.running:
            raise AlreadyRunning(f"User {chat.user_id} already has a running thread chat")
        stored = self.chats[chat.thread_chat_id]
        if stored.user_id != chat.user_id or stored.status != from_status:
            return None
        self.running[chat.user_id] = chat.thread_chat_id
        self.run_started[chat.thread_chat_id] = datetime.now(timezone.utc)
        return self._set_status(chat.thread_chat_id, RUNNING)

    async def defer(self, chat):
        await self._io("defer")
        stored = self.chats[chat.thread_chat_id]
        if stored.user_id != chat.user_id or stored.status != SCHEDULED:
            return False
        self._set_status(chat.thread_chat_id, QUEUED)
        return True

    async def release(self, chat, *, reason):
        await self._io("release")
        return self._end_run(chat, QUEUED)

    async def finish_run(self, chat, *, status, error=None):
        await self._io("finish_run")
        assert status in TERMINAL_STATUSES
        if not self._end_run(chat, status):
            return False
        self.errors[chat.thread_chat_id] = error
        return True

    def _end_run(self, chat, to_status) -> bool:
        stored = self.chats[chat.thread_chat_id]
        if stored.user_id != chat.user_id or stored.status != RUNNING:
            return False
        self._set_status(chat.thread_chat_id, to_status)
        if self.running.get(chat.user_id) == chat.thread_chat_id:
            del self.running[chat.user_id]
        return True


# ─── Recording runner ─────────────────────────────────────


class RecordingRunner(ExecutionRunner):
    """Records every handoff. Set `fail` to reject, `hold` to block start()."""

    name = "recording"

    def __init__(self):
        self.started: list[ThreadChatRef] = []
        self.fail = False
        self.hold: Optional[asyncio.Event] = None
        self.closed = False

    async def start(self, chat):
        if self.hold is not None:
            await self.hold.wait()
        if self.fail:
            raise HandoffFailed("runner said no")
        self.started.append(chat)

    async def close(self):
        self.closed = True


# ─── Fixtures ─────────────────────────────────────────────


@pytest.fixture()
def store():
    return MemoryWorkItemStore()


@pytest.fixture()
def runner():
    return RecordingRunner()


@pytest.fixture()
def published():
    """Realtime events the dispatcher published, as (user_id, type, data)."""
    return []


@pytest_asyncio.fixture()
async def dispatcher(store, runner, published):
    """Dispatcher over the fakes. Teardown lets any in-flight handoff finish."""
    async def publish(user_id, event_type, data):
        published.append((user_id, event_type, data))

    d = ThreadDispatcher(
        store=store,
        runner=runner,
        gate=DispatchGate(store, SECRET),
        publish=publish,
    )
    yield d
    if runner.hold is not None:
        runner.hold.set()
    await d.wait_for_handoffs()


@pytest_asyncio.fixture()
async def client(dispatcher):
    """HTTP client whose routes all use the in-memory dispatcher."""
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Postgres (optional) ──────────────────────────────────


@pytest_asyncio.fixture()
async def pg_session_factory():
    """Session factory bound to one connection whose transaction is rolled back.

    Learn: join_transaction_mode="create_savepoint" turns every commit()
    and rollback() the store performs into SAVEPOINT operations, so the
    store's own transaction handling still runs for real while the outer
    transaction keeps the database clean.
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from threadqueue.config import settings
    from threadqueue.db.models import Base

    engine = create_async_engine(settings.database_url, echo=False)
    try:
        conn = await engine.connect()
    except Exception as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL unavailable: {e}")

    trans = await conn.begin()
    await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(
        bind=conn,
        class_=AsyncSession,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield factory
    finally:
        await trans.rollback()
        await conn.close()
        await engine.dispose()
