"""Redis pub/sub — broadcast thread chat status changes.

Pub/sub is fire-and-forget: if nobody is subscribed the message is lost.
That is fine here, since clients that miss an event poll the thread chat
endpoint, and the events table keeps the durable record.

Channel naming: threadqueue:events:{user_id}
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from threadqueue.config import settings

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def channel_for(user_id: str) -> str:
    return f"threadqueue:events:{user_id}"


async def publish_event(
    user_id: str,
    event_type: str,
    data: dict[str, Any],
) -> None:
    """Publish an event to a user's channel.

    A no-op when Redis was never initialized (realtime is optional).
    Publish errors are logged and never propagate into dispatch.
    """
    if _redis is None:
        return
    payload = json.dumps({"type": event_type, **data}, default=str)
    try:
        await _redis.publish(channel_for(user_id), payload)
    except aioredis.RedisError as e:
        logger.warning("realtime.publish_failed", event_type=event_type, error=str(e))
