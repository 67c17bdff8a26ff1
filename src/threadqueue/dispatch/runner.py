"""Execution runner handoff — tells the runner which chat to execute.

Learn: The runner owns everything after the handoff: the agent turn itself,
its timeout, and reporting completion back through the finish endpoint.
start() only has to get the request accepted; it must raise
HandoffFailed when it cannot, so the dispatcher can revert the chat.

Two backends, selected by THREADQUEUE_RUNNER_BACKEND:
- http:  POST to the runner service with the internal bearer credential
- redis: XADD onto a stream that runner workers consume
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog

from threadqueue.config import Settings, settings as default_settings
from threadqueue.dispatch.errors import HandoffFailed
from threadqueue.dispatch.store import ThreadChatRef

logger = structlog.get_logger()


class ExecutionRunner(ABC):
    """Outbound contract to the subsystem that performs agent work."""

    name: str = "base"

    @abstractmethod
    async def start(self, chat: ThreadChatRef) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpExecutionRunner(ExecutionRunner):
    """Hands off by POSTing the chat identity to the runner service."""

    name = "http"

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def start(self, chat: ThreadChatRef) -> None:
        try:
            resp = await self._client.post(
                self.url,
                json=chat.log_context(),
                headers={"Authorization": f"Bearer {self._secret}"},
            )
        except httpx.HTTPError as e:
            raise HandoffFailed(f"runner unreachable: {e}") from e

        if resp.status_code >= 300:
            raise HandoffFailed(
                f"runner rejected handoff: {resp.status_code} {resp.text[:200]}"
            )

    async def close(self) -> None:
        await self._client.aclose()


class RedisStreamRunner(ExecutionRunner):
    """Hands off by appending the chat identity to a Redis stream."""

    name = "redis"

    def __init__(self, redis: aioredis.Redis, stream: str):
        self._redis = redis
        self.stream = stream

    async def start(self, chat: ThreadChatRef) -> None:
        try:
            await self._redis.xadd(self.stream, chat.log_context())
        except aioredis.RedisError as e:
            raise HandoffFailed(f"runner stream unavailable: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()


def get_runner(config: Settings = default_settings) -> ExecutionRunner:
    """Build the runner selected by config.runner_backend."""
    backend = config.runner_backend
    if backend == "http":
        return HttpExecutionRunner(
            url=config.runner_url,
            secret=config.internal_secret,
            timeout=config.runner_timeout_seconds,
        )
    if backend == "redis":
        return RedisStreamRunner(
            aioredis.from_url(config.redis_url, decode_responses=True),
            stream=config.runner_stream,
        )
    raise ValueError(
        f"Unknown runner backend: '{backend}'. Available: ['http', 'redis']"
    )
