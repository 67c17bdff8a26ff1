"""FastAPI application factory.

create_app() returns a configured FastAPI instance. The lifespan
connects Redis (optional), starts the queue sweeper, and on shutdown
waits for in-flight runner handoffs before closing connections.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from fastapi import FastAPI

from threadqueue import __version__
from threadqueue.api import api_router
from threadqueue.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "threadqueue.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        runner_backend=settings.runner_backend,
    )

    from threadqueue.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("threadqueue.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("threadqueue.redis_unavailable", error=str(e))
        # Redis is optional; dispatch works without realtime events

    from threadqueue.dispatch.dispatcher import close_dispatcher, get_dispatcher
    from threadqueue.dispatch.sweeper import QueueSweeper

    sweeper = None
    sweep_task = None
    if settings.sweeper_enabled:
        sweeper = QueueSweeper(
            get_dispatcher(),
            credential=settings.internal_secret,
            interval=settings.sweep_interval_seconds,
            batch_size=settings.sweep_batch_size,
            batch_pause=settings.sweep_batch_pause_seconds,
            stalled_after=timedelta(minutes=settings.stalled_after_minutes),
        )
        sweep_task = asyncio.create_task(sweeper.run_loop())
        logger.info("threadqueue.sweeper_started")

    yield

    logger.info("threadqueue.shutdown")

    if sweeper is not None:
        sweeper.stop()
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

    await close_dispatcher()
    await close_redis()

    from threadqueue.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="threadqueue",
        description="Scheduled and queued thread chat dispatch for AI coding agents",
        version=__version__,
        lifespan=lifespan,
    )

    from threadqueue.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: threadqueue.main:app)
app = create_app()


def run():
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "threadqueue.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
