"""Sweeper entry point — run the queue sweeper as its own process.

Use this when the API instances run with THREADQUEUE_SWEEPER_ENABLED=false
and a single dedicated process should do the periodic sweeps.

Usage:
    python -m threadqueue.dispatch.main

Or via the installed script:
    threadqueue-sweeper
"""

import asyncio
import logging
import signal
from datetime import timedelta

from threadqueue.config import settings
from threadqueue.dispatch.dispatcher import build_dispatcher
from threadqueue.dispatch.sweeper import QueueSweeper
from threadqueue.realtime.pubsub import close_redis, init_redis

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("threadqueue.sweeper")


async def run():
    """Run the sweeper until interrupted."""
    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis unavailable, realtime events disabled: %s", e)

    dispatcher = build_dispatcher()
    sweeper = QueueSweeper(
        dispatcher,
        credential=settings.internal_secret,
        interval=settings.sweep_interval_seconds,
        batch_size=settings.sweep_batch_size,
        batch_pause=settings.sweep_batch_pause_seconds,
        stalled_after=timedelta(minutes=settings.stalled_after_minutes),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sweeper.stop)

    logger.info("Sweeper starting (interval=%.0fs)", settings.sweep_interval_seconds)
    try:
        await sweeper.run_loop()
    except asyncio.CancelledError:
        pass
    finally:
        await dispatcher.aclose()
        await close_redis()
        from threadqueue.db.engine import engine
        await engine.dispose()
        logger.info("Sweeper stopped. Stats: %s", dispatcher.get_stats())


def main():
    """CLI entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
