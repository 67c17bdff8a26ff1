"""Dispatcher tests — both triggers, the handoff, and completion.

Learn: These run against the in-memory store, so they pin down the
dispatcher's own decisions:
1. Queue drain starts the oldest queued chat, and only when idle
2. Scheduled dispatch starts exactly the named chat
3. A busy user defers a scheduled chat instead of running two
4. Rejected requests (bad credential, unknown user) touch nothing
5. A failed handoff puts the chat back in the queue
"""

import asyncio
import uuid

import pytest

from threadqueue.dispatch.dispatcher import (
    ALREADY_RUNNING,
    DEFERRED,
    NOT_DUE,
    QUEUE_EMPTY,
    STARTED,
)
from threadqueue.dispatch.errors import InvalidTarget, StoreUnavailable, Unauthorized
from threadqueue.dispatch.state import (
    COMPLETED,
    FAILED,
    QUEUED,
    RUNNING,
    SCHEDULED,
    InvalidTransitionError,
)
from threadqueue.events.types import (
    THREAD_CHAT_DEFERRED,
    THREAD_CHAT_FINISHED,
    THREAD_CHAT_RELEASED,
    THREAD_CHAT_STARTED,
)

from tests.conftest import SECRET


# ═══════════════════════════════════════════════════════════
# Queue drain
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_drain_scenario_fifo_one_at_a_time(dispatcher, store, runner):
    """X(t=1), Y(t=2): X runs, a second drain is a no-op, Y runs after X completes."""
    user = store.add_user()
    x = store.add_chat(user)
    y = store.add_chat(user)

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == STARTED
    assert ack.thread_chat_id == x.thread_chat_id
    await dispatcher.wait_for_handoffs()
    assert [c.thread_chat_id for c in runner.started] == [x.thread_chat_id]

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == ALREADY_RUNNING
    assert store.status_of(y) == QUEUED

    await store.finish_run(store.chats[x.thread_chat_id], status=COMPLETED)

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == STARTED
    assert ack.thread_chat_id == y.thread_chat_id
    await dispatcher.wait_for_handoffs()
    assert [c.thread_chat_id for c in runner.started] == [
        x.thread_chat_id,
        y.thread_chat_id,
    ]


@pytest.mark.asyncio
async def test_drain_empty_queue(dispatcher, store, runner):
    user = store.add_user()
    store.add_chat(user, status=SCHEDULED)
    store.add_chat(user, status=COMPLETED)

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == QUEUE_EMPTY
    assert ack.thread_chat_id is None
    assert "mark_running" not in store.calls
    assert runner.started == []


@pytest.mark.asyncio
async def test_drain_ignores_other_users(dispatcher, store):
    """One user's running chat never blocks another user's queue."""
    alice = store.add_user()
    bob = store.add_user()
    store.add_chat(alice, status=RUNNING)
    bob_chat = store.add_chat(bob)

    ack = await dispatcher.drain_queue(SECRET, bob)
    assert ack.outcome == STARTED
    assert ack.thread_chat_id == bob_chat.thread_chat_id


@pytest.mark.asyncio
async def test_concurrent_drains_start_exactly_one(dispatcher, store, runner):
    """Redundant concurrent drains never put two chats of a user into running."""
    user = store.add_user()
    for _ in range(3):
        store.add_chat(user)

    acks = await asyncio.gather(
        *(dispatcher.drain_queue(SECRET, user) for _ in range(10))
    )
    await dispatcher.wait_for_handoffs()

    outcomes = [a.outcome for a in acks]
    assert outcomes.count(STARTED) == 1
    assert set(outcomes) <= {STARTED, ALREADY_RUNNING}
    assert store.running_count(user) == 1
    assert len(runner.started) == 1


@pytest.mark.asyncio
async def test_drain_unknown_user(dispatcher, store):
    with pytest.raises(InvalidTarget):
        await dispatcher.drain_queue(SECRET, str(uuid.uuid4()))
    with pytest.raises(InvalidTarget):
        await dispatcher.drain_queue(SECRET, "")
    assert "next_queued" not in store.calls


@pytest.mark.asyncio
async def test_drain_store_unavailable_propagates(dispatcher, store):
    user = store.add_user()
    store.add_chat(user)
    store.available = False

    with pytest.raises(StoreUnavailable):
        await dispatcher.drain_queue(SECRET, user)


# ═══════════════════════════════════════════════════════════
# Gate
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
@pytest.mark.parametrize("credential", [None, "", "wrong-secret"])
async def test_unauthorized_changes_nothing(dispatcher, store, runner, credential):
    user = store.add_user()
    chat = store.add_chat(user, status=SCHEDULED)

    with pytest.raises(Unauthorized):
        await dispatcher.drain_queue(credential, user)
    with pytest.raises(Unauthorized):
        await dispatcher.dispatch_scheduled(
            credential, user, chat.thread_id, chat.thread_chat_id
        )

    assert store.calls == []
    assert store.status_of(chat) == SCHEDULED
    assert runner.started == []


# ═══════════════════════════════════════════════════════════
# Scheduled dispatch
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_scheduled_starts_exact_chat(dispatcher, store, runner, published):
    """The named chat runs even though older queued chats exist."""
    user = store.add_user()
    older = store.add_chat(user)
    target = store.add_chat(user, status=SCHEDULED)

    ack = await dispatcher.dispatch_scheduled(
        SECRET, user, target.thread_id, target.thread_chat_id
    )
    assert ack.outcome == STARTED
    assert ack.started
    assert ack.thread_chat_id == target.thread_chat_id
    assert store.status_of(target) == RUNNING
    assert store.status_of(older) == QUEUED
    assert "next_queued" not in store.calls

    await dispatcher.wait_for_handoffs()
    assert [c.thread_chat_id for c in runner.started] == [target.thread_chat_id]
    assert published[-1][1] == THREAD_CHAT_STARTED


@pytest.mark.asyncio
async def test_scheduled_twice_is_noop(dispatcher, store, runner):
    user = store.add_user()
    chat = store.add_chat(user, status=SCHEDULED)
    args = (SECRET, user, chat.thread_id, chat.thread_chat_id)

    first = await dispatcher.dispatch_scheduled(*args)
    second = await dispatcher.dispatch_scheduled(*args)
    await dispatcher.wait_for_handoffs()

    assert first.outcome == STARTED
    assert second.outcome == ALREADY_RUNNING
    assert len(runner.started) == 1


@pytest.mark.asyncio
async def test_scheduled_while_busy_defers(dispatcher, store, runner, published):
    """Another chat is running: the scheduled chat joins the queue, nothing is dropped."""
    user = store.add_user()
    busy = store.add_chat(user, status=RUNNING)
    chat = store.add_chat(user, status=SCHEDULED)

    ack = await dispatcher.dispatch_scheduled(
        SECRET, user, chat.thread_id, chat.thread_chat_id
    )
    assert ack.outcome == DEFERRED
    assert store.status_of(chat) == QUEUED
    assert store.running_count(user) == 1
    assert runner.started == []
    assert published[-1][1] == THREAD_CHAT_DEFERRED

    # Once the running chat ends, the deferred chat starts through the queue.
    await store.finish_run(store.chats[busy.thread_chat_id], status=COMPLETED)
    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == STARTED
    assert ack.thread_chat_id == chat.thread_chat_id


@pytest.mark.asyncio
async def test_scheduled_queued_chat_while_busy_stays_queued(dispatcher, store):
    user = store.add_user()
    store.add_chat(user, status=RUNNING)
    chat = store.add_chat(user, status=QUEUED)

    ack = await dispatcher.dispatch_scheduled(
        SECRET, user, chat.thread_id, chat.thread_chat_id
    )
    assert ack.outcome == DEFERRED
    assert store.status_of(chat) == QUEUED


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [COMPLETED, FAILED])
async def test_scheduled_terminal_chat_not_due(dispatcher, store, runner, status):
    user = store.add_user()
    chat = store.add_chat(user, status=status)

    ack = await dispatcher.dispatch_scheduled(
        SECRET, user, chat.thread_id, chat.thread_chat_id
    )
    assert ack.outcome == NOT_DUE
    assert "mark_running" not in store.calls
    assert runner.started == []


@pytest.mark.asyncio
async def test_scheduled_invalid_targets(dispatcher, store):
    user = store.add_user()
    chat = store.add_chat(user, status=SCHEDULED)

    # Missing ids
    with pytest.raises(InvalidTarget):
        await dispatcher.dispatch_scheduled(SECRET, user, "", chat.thread_chat_id)
    # Unknown user
    with pytest.raises(InvalidTarget):
        await dispatcher.dispatch_scheduled(
            SECRET, str(uuid.uuid4()), chat.thread_id, chat.thread_chat_id
        )
    # Chat belongs to a different thread
    with pytest.raises(InvalidTarget):
        await dispatcher.dispatch_scheduled(
            SECRET, user, str(uuid.uuid4()), chat.thread_chat_id
        )
    # Chat belongs to a different user
    other = store.add_user()
    with pytest.raises(InvalidTarget):
        await dispatcher.dispatch_scheduled(
            SECRET, other, chat.thread_id, chat.thread_chat_id
        )
    assert store.status_of(chat) == SCHEDULED


# ═══════════════════════════════════════════════════════════
# Handoff
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_ack_returns_before_runner_accepts(dispatcher, store, runner):
    """The ack reports admission only; the handoff runs in the background."""
    user = store.add_user()
    store.add_chat(user)
    runner.hold = asyncio.Event()

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == STARTED
    assert dispatcher.pending_handoffs == 1
    assert runner.started == []

    runner.hold.set()
    await dispatcher.wait_for_handoffs()
    assert dispatcher.pending_handoffs == 0
    assert len(runner.started) == 1


@pytest.mark.asyncio
async def test_handoff_failure_reverts_to_queued(dispatcher, store, runner, published):
    user = store.add_user()
    chat = store.add_chat(user)
    runner.fail = True

    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.outcome == STARTED
    await dispatcher.wait_for_handoffs()

    assert store.status_of(chat) == QUEUED
    assert user not in store.running
    assert dispatcher.stats.handoff_failures == 1
    assert published[-1][1] == THREAD_CHAT_RELEASED

    # The next drain retries the same chat.
    runner.fail = False
    ack = await dispatcher.drain_queue(SECRET, user)
    assert ack.thread_chat_id == chat.thread_chat_id
    await dispatcher.wait_for_handoffs()
    assert [c.thread_chat_id for c in runner.started] == [chat.thread_chat_id]


@pytest.mark.asyncio
async def test_handoff_failure_with_store_down_leaves_run_for_reaper(dispatcher, store, runner):
    user = store.add_user()
    chat = store.add_chat(user)
    runner.hold = asyncio.Event()
    runner.fail = True

    await dispatcher.drain_queue(SECRET, user)
    store.available = False
    runner.hold.set()
    await dispatcher.wait_for_handoffs()

    assert store.status_of(chat) == RUNNING
    assert dispatcher.stats.handoff_failures == 1


# ═══════════════════════════════════════════════════════════
# Completion
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_finish_run_starts_next(dispatcher, store, runner, published):
    user = store.add_user()
    first = store.add_chat(user)
    second = store.add_chat(user)

    await dispatcher.drain_queue(SECRET, user)
    await dispatcher.wait_for_handoffs()

    result = await dispatcher.finish_run(
        SECRET, user, first.thread_id, first.thread_chat_id, status=COMPLETED
    )
    assert result.finished is True
    assert result.next.outcome == STARTED
    assert result.next.thread_chat_id == second.thread_chat_id
    assert store.status_of(first) == COMPLETED
    assert any(e[1] == THREAD_CHAT_FINISHED for e in published)


@pytest.mark.asyncio
async def test_finish_run_records_failure(dispatcher, store):
    user = store.add_user()
    chat = store.add_chat(user, status=RUNNING)

    result = await dispatcher.finish_run(
        SECRET, user, chat.thread_id, chat.thread_chat_id,
        status=FAILED, error="agent crashed",
    )
    assert result.finished is True
    assert result.next.outcome == QUEUE_EMPTY
    assert store.status_of(chat) == FAILED
    assert store.errors[chat.thread_chat_id] == "agent crashed"


@pytest.mark.asyncio
async def test_finish_run_not_running_is_noop(dispatcher, store):
    user = store.add_user()
    chat = store.add_chat(user, status=QUEUED)

    result = await dispatcher.finish_run(
        SECRET, user, chat.thread_id, chat.thread_chat_id, status=COMPLETED
    )
    assert result.finished is False
    # The drain still runs and picks the chat up.
    assert result.next.outcome == STARTED


@pytest.mark.asyncio
async def test_finish_run_rejects_non_terminal_status(dispatcher, store):
    user = store.add_user()
    chat = store.add_chat(user, status=RUNNING)

    with pytest.raises(InvalidTransitionError):
        await dispatcher.finish_run(
            SECRET, user, chat.thread_id, chat.thread_chat_id, status=QUEUED
        )
    assert store.status_of(chat) == RUNNING


# ═══════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_aclose_waits_and_closes_runner(dispatcher, store, runner):
    user = store.add_user()
    store.add_chat(user)
    await dispatcher.drain_queue(SECRET, user)

    await dispatcher.aclose()
    assert runner.closed
    assert len(runner.started) == 1


@pytest.mark.asyncio
async def test_stats(dispatcher, store):
    user = store.add_user()
    store.add_chat(user)
    await dispatcher.drain_queue(SECRET, user)
    await dispatcher.drain_queue(SECRET, user)

    stats = dispatcher.get_stats()
    assert stats["started"] == 1
    assert stats["skipped"] == 1
    assert "started_at" in stats
