"""Queue sweeper — the safety net behind enqueue-triggered drains.

Learn: Each pass does two things:
1. Reap stalled runs: chats whose run was admitted longer ago than
   stalled_after are failed, which frees the user's slot.
2. Drain waiting users: every user with queued chats and nothing running
   gets one drain_queue call, in batches, pausing between batches so a
   large backlog does not hammer the database.

Runs as a background task in the FastAPI lifespan, or standalone via
threadqueue.dispatch.main for deployments that split it out.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from threadqueue.dispatch.dispatcher import STARTED, ThreadDispatcher
from threadqueue.dispatch.state import FAILED

logger = structlog.get_logger()

STALLED_ERROR = "stalled"


@dataclass
class SweepResult:
    reaped: int = 0
    users_drained: int = 0
    started: int = 0
    errors: int = 0


class QueueSweeper:
    """Periodic reaper + drainer.

    Usage:
        sweeper = QueueSweeper(dispatcher, credential=settings.internal_secret)
        asyncio.create_task(sweeper.run_loop())
    """

    def __init__(
        self,
        dispatcher: ThreadDispatcher,
        credential: str,
        interval: float = 60.0,
        batch_size: int = 10,
        batch_pause: float = 1.0,
        stalled_after: timedelta = timedelta(minutes=30),
    ):
        self.dispatcher = dispatcher
        self._credential = credential
        self.interval = interval
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.stalled_after = stalled_after
        self._running = False

    async def run_loop(self) -> None:
        """Sweep every interval until stop() is called."""
        self._running = True
        logger.info("sweeper.started", interval=self.interval)

        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("sweeper.error")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Signal the sweeper to stop."""
        self._running = False
        logger.info("sweeper.stopping")

    async def run_once(self) -> SweepResult:
        result = SweepResult()
        result.reaped = await self.reap_stalled()
        await self.drain_waiting_users(result)
        logger.info(
            "sweeper.pass_done",
            reaped=result.reaped,
            users_drained=result.users_drained,
            started=result.started,
            errors=result.errors,
        )
        return result

    async def reap_stalled(self) -> int:
        """Fail runs that have held their user's slot for too long."""
        store = self.dispatcher.store
        cutoff = datetime.now(timezone.utc) - self.stalled_after
        stalled = await store.stalled_runs(cutoff)
        if not stalled:
            return 0

        reaped = 0
        for chat in stalled:
            if await store.finish_run(chat, status=FAILED, error=STALLED_ERROR):
                reaped += 1
                logger.warning("sweeper.reaped_stalled", **chat.log_context())
        return reaped

    async def drain_waiting_users(self, result: SweepResult) -> None:
        user_ids = await self.dispatcher.store.users_with_queued_work()
        if not user_ids:
            return
        logger.info("sweeper.waiting_users", count=len(user_ids))

        for i in range(0, len(user_ids), self.batch_size):
            batch = user_ids[i:i + self.batch_size]
            acks = await asyncio.gather(
                *(self.dispatcher.drain_queue(self._credential, uid) for uid in batch),
                return_exceptions=True,
            )
            for user_id, ack in zip(batch, acks):
                if isinstance(ack, Exception):
                    result.errors += 1
                    logger.warning("sweeper.drain_failed", user_id=user_id, error=str(ack))
                    continue
                result.users_drained += 1
                if ack.outcome == STARTED:
                    result.started += 1

            if i + self.batch_size < len(user_ids):
                await asyncio.sleep(self.batch_pause)
