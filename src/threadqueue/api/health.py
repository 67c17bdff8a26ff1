"""Health check endpoint.

Reports whether the server is up and whether Postgres and Redis are
reachable, plus how many runner handoffs this instance has in flight.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from threadqueue import __version__
from threadqueue.db.engine import engine
from threadqueue.dispatch.dispatcher import ThreadDispatcher, get_dispatcher

router = APIRouter()


@router.get("/health")
async def health_check(dispatcher: ThreadDispatcher = Depends(get_dispatcher)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Postgres
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    # Redis (optional; only used for realtime events)
    try:
        from threadqueue.realtime.pubsub import get_redis

        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {
        "status": status,
        **checks,
        "pending_handoffs": dispatcher.pending_handoffs,
    }
