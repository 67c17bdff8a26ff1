"""Thread dispatcher — admits thread chats and hands them to the runner.

Learn: Two inbound triggers:
- dispatch_scheduled: an external scheduler fires for one exact chat
- drain_queue: called after any enqueue (and by the sweeper) to start
  the user's oldest queued chat if nothing of theirs is running

Both go through the gate first, then claim the user's running slot with
the store's atomic mark_running. The handoff to the runner happens in a
background task, so the ack returned here says whether the request was
admitted, never how the run went. Callers observe the run by polling
the thread chat or subscribing to its realtime channel.

If the runner rejects the handoff the chat is reverted to queued and the
slot released, so nothing is left "running" without a runner behind it.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from threadqueue.config import Settings, settings as default_settings
from threadqueue.dispatch.errors import AlreadyRunning, InvalidTarget, StoreUnavailable
from threadqueue.dispatch.gate import DispatchGate
from threadqueue.dispatch.runner import ExecutionRunner, get_runner
from threadqueue.dispatch.state import (
    QUEUED,
    RUNNING,
    SCHEDULED,
    TERMINAL_STATUSES,
    InvalidTransitionError,
    is_terminal,
)
from threadqueue.dispatch.store import ThreadChatRef, WorkItemStore
from threadqueue.events.types import (
    THREAD_CHAT_DEFERRED,
    THREAD_CHAT_FINISHED,
    THREAD_CHAT_RELEASED,
    THREAD_CHAT_STARTED,
)

logger = structlog.get_logger()

# Ack outcomes
STARTED = "started"
DEFERRED = "deferred"
ALREADY_RUNNING = "already_running"
QUEUE_EMPTY = "queue_empty"
NOT_DUE = "not_due"

# Triggers
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_QUEUE = "queue"

Publisher = Callable[[str, str, dict], Awaitable[None]]


@dataclass(frozen=True)
class DispatchAck:
    """Admission result of one dispatch request."""

    outcome: str
    user_id: str
    thread_id: Optional[str] = None
    thread_chat_id: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.outcome == STARTED

    @classmethod
    def for_chat(cls, outcome: str, chat: ThreadChatRef) -> "DispatchAck":
        return cls(
            outcome=outcome,
            user_id=chat.user_id,
            thread_id=chat.thread_id,
            thread_chat_id=chat.thread_chat_id,
        )


@dataclass(frozen=True)
class FinishAck:
    """Result of a runner reporting completion, plus the follow-up drain."""

    finished: bool
    next: DispatchAck


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""
    started: int = 0
    deferred: int = 0
    skipped: int = 0
    handoff_failures: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ThreadDispatcher:
    """Coordinates scheduled and queued thread chat execution."""

    def __init__(
        self,
        store: WorkItemStore,
        runner: ExecutionRunner,
        gate: DispatchGate,
        publish: Optional[Publisher] = None,
    ):
        self.store = store
        self.runner = runner
        self.gate = gate
        self._publish_fn = publish
        self.stats = DispatcherStats()
        self._handoffs: set[asyncio.Task] = set()

    # ─── Scheduled trigger ────────────────────────────────

    async def dispatch_scheduled(
        self,
        credential: Optional[str],
        user_id: str,
        thread_id: str,
        thread_chat_id: str,
    ) -> DispatchAck:
        """Start exactly the named chat, without looking at the queue.

        Learn: If another chat of the user is running, a scheduled chat is
        moved to queued and will start through the drain path in FIFO order.
        """
        self.gate.authorize(credential)
        if not (user_id and thread_id and thread_chat_id):
            raise InvalidTarget("user_id, thread_id and thread_chat_id are required")
        await self.gate.validate_user(user_id)

        chat = await self.store.get_thread_chat(user_id, thread_id, thread_chat_id)
        if chat is None:
            raise InvalidTarget(f"Unknown thread chat: {thread_chat_id!r}")

        log = logger.bind(trigger=TRIGGER_SCHEDULED, **chat.log_context())

        if chat.status == RUNNING:
            self.stats.skipped += 1
            log.info("dispatch.already_running")
            return DispatchAck.for_chat(ALREADY_RUNNING, chat)
        if is_terminal(chat.status):
            self.stats.skipped += 1
            log.info("dispatch.not_due", status=chat.status)
            return DispatchAck.for_chat(NOT_DUE, chat)

        log.info("dispatch.scheduled", status=chat.status)

        try:
            claimed = await self.store.mark_running(
                chat, from_status=chat.status, trigger=TRIGGER_SCHEDULED
            )
        except AlreadyRunning:
            if chat.status == SCHEDULED and await self.store.defer(chat):
                deferred = chat.with_status(QUEUED)
                self.stats.deferred += 1
                log.info("dispatch.deferred", reason="user_busy")
                await self._publish(deferred, THREAD_CHAT_DEFERRED)
                return DispatchAck.for_chat(DEFERRED, deferred)
            return await self._settle(chat, log)

        if claimed is None:
            return await self._settle(chat, log)
        return self._start(claimed, TRIGGER_SCHEDULED, log)

    # ─── Queue drain trigger ──────────────────────────────

    async def drain_queue(self, credential: Optional[str], user_id: str) -> DispatchAck:
        """Start the user's oldest queued chat, unless one is already running.

        Learn: Redundant calls are expected (one per enqueue plus the
        sweeper); they resolve to no-op acks.
        """
        self.gate.authorize(credential)
        await self.gate.validate_user(user_id)

        log = logger.bind(trigger=TRIGGER_QUEUE, user_id=user_id)

        if await self.store.is_user_running(user_id):
            self.stats.skipped += 1
            log.debug("dispatch.user_busy")
            return DispatchAck(outcome=ALREADY_RUNNING, user_id=user_id)

        chat = await self.store.next_queued(user_id)
        if chat is None:
            log.debug("dispatch.queue_empty")
            return DispatchAck(outcome=QUEUE_EMPTY, user_id=user_id)

        log = log.bind(thread_id=chat.thread_id, thread_chat_id=chat.thread_chat_id)
        try:
            claimed = await self.store.mark_running(
                chat, from_status=QUEUED, trigger=TRIGGER_QUEUE
            )
        except AlreadyRunning:
            claimed = None

        if claimed is None:
            self.stats.skipped += 1
            log.info("dispatch.claimed_elsewhere")
            return DispatchAck(outcome=ALREADY_RUNNING, user_id=user_id)
        return self._start(claimed, TRIGGER_QUEUE, log)

    # ─── Completion ───────────────────────────────────────

    async def finish_run(
        self,
        credential: Optional[str],
        user_id: str,
        thread_id: str,
        thread_chat_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> FinishAck:
        """Record the runner's result, then keep the user's queue moving."""
        self.gate.authorize(credential)
        await self.gate.validate_user(user_id)
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Runs can only finish as {sorted(TERMINAL_STATUSES)}, got '{status}'"
            )

        chat = await self.store.get_thread_chat(user_id, thread_id, thread_chat_id)
        if chat is None:
            raise InvalidTarget(f"Unknown thread chat: {thread_chat_id!r}")

        log = logger.bind(**chat.log_context())
        finished = await self.store.finish_run(chat, status=status, error=error)
        if finished:
            log.info("dispatch.finished", status=status, error=error)
            await self._publish(chat.with_status(status), THREAD_CHAT_FINISHED)
        else:
            log.info("dispatch.finish_ignored", current_status=chat.status)

        next_ack = await self.drain_queue(credential, user_id)
        return FinishAck(finished=finished, next=next_ack)

    # ─── Handoff ──────────────────────────────────────────

    def _start(self, chat: ThreadChatRef, trigger: str, log) -> DispatchAck:
        self.stats.started += 1
        log.info("dispatch.started")
        task = asyncio.create_task(self._run_handoff(chat, trigger))
        self._handoffs.add(task)
        task.add_done_callback(self._handoffs.discard)
        return DispatchAck.for_chat(STARTED, chat)

    async def _run_handoff(self, chat: ThreadChatRef, trigger: str) -> None:
        """Hand the chat to the runner; revert it if the runner refuses."""
        log = logger.bind(trigger=trigger, runner=self.runner.name, **chat.log_context())
        try:
            await self.runner.start(chat)
        except Exception as e:
            # HandoffFailed, or a runner bug: either way nobody is running it.
            self.stats.handoff_failures += 1
            log.error("dispatch.handoff_failed", error=str(e))
            await self._revert(chat, str(e), log)
            return

        log.info("dispatch.handed_off")
        await self._publish(chat, THREAD_CHAT_STARTED)

    async def _revert(self, chat: ThreadChatRef, reason: str, log) -> None:
        try:
            released = await self.store.release(chat, reason=reason)
        except StoreUnavailable:
            # The stalled-run reaper frees the slot once the cutoff passes.
            log.exception("dispatch.revert_failed")
            return
        if released:
            log.info("dispatch.reverted")
            await self._publish(chat.with_status(QUEUED), THREAD_CHAT_RELEASED)

    async def _settle(self, chat: ThreadChatRef, log) -> DispatchAck:
        """Resolve a lost claim from the chat's current status."""
        self.stats.skipped += 1
        current = await self.store.get_thread_chat(
            chat.user_id, chat.thread_id, chat.thread_chat_id
        ) or chat
        if current.status == RUNNING:
            outcome = ALREADY_RUNNING
        elif current.status in (SCHEDULED, QUEUED):
            outcome = DEFERRED
        else:
            outcome = NOT_DUE
        log.info("dispatch.claim_lost", current_status=current.status, outcome=outcome)
        return DispatchAck.for_chat(outcome, current)

    async def _publish(self, chat: ThreadChatRef, event_type: str) -> None:
        if self._publish_fn is None:
            return
        await self._publish_fn(
            chat.user_id,
            event_type,
            {**chat.log_context(), "status": chat.status},
        )

    # ─── Lifecycle ────────────────────────────────────────

    @property
    def pending_handoffs(self) -> int:
        return len(self._handoffs)

    async def wait_for_handoffs(self) -> None:
        """Wait until every in-flight handoff has finished (or reverted)."""
        while self._handoffs:
            await asyncio.gather(*list(self._handoffs), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_for_handoffs()
        await self.runner.close()

    def get_stats(self) -> dict:
        return {
            "started": self.stats.started,
            "deferred": self.stats.deferred,
            "skipped": self.stats.skipped,
            "handoff_failures": self.stats.handoff_failures,
            "pending_handoffs": self.pending_handoffs,
            "started_at": self.stats.started_at.isoformat(),
        }


# ─── Process-wide instance ───────────────────────────────

_dispatcher: Optional[ThreadDispatcher] = None


def build_dispatcher(config: Settings = default_settings) -> ThreadDispatcher:
    """Wire the dispatcher to PostgreSQL, the configured runner and Redis."""
    from threadqueue.db.engine import async_session_factory
    from threadqueue.dispatch.sql_store import SqlWorkItemStore
    from threadqueue.realtime.pubsub import publish_event

    store = SqlWorkItemStore(async_session_factory)
    return ThreadDispatcher(
        store=store,
        runner=get_runner(config),
        gate=DispatchGate(store, config.internal_secret),
        publish=publish_event,
    )


def get_dispatcher() -> ThreadDispatcher:
    """FastAPI dependency — the process-wide dispatcher, built on first use."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
    return _dispatcher


async def close_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.aclose()
        _dispatcher = None
