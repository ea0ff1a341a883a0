# src/sealed_chat/services/undelivered.py
"""Per-recipient buffer for messages addressed to offline users."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from threading import Lock
from typing import Any, Final

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sealed_chat.core.settings import settings

logger = logging.getLogger(__name__)

POLICY_DROP_OLDEST: Final[str] = "drop_oldest"
POLICY_REJECT_NEW: Final[str] = "reject_new"


class UndeliveredBuffer(ABC):
    """Bounded per-recipient queue with exclusive drain.

    `append` may be called concurrently from many sessions; `drain` returns and
    clears everything in one atomic step. Messages are already durable in the
    database, so an overflow only means the recipient picks them up from
    history instead of a push on reconnect.
    """

    def __init__(self, max_size: int | None = None, policy: str | None = None) -> None:
        self.max_size = max_size or settings.undelivered_buffer_max
        self.policy = policy or settings.undelivered_overflow_policy
        if self.policy not in (POLICY_DROP_OLDEST, POLICY_REJECT_NEW):
            raise ValueError(f"Unknown overflow policy: {self.policy}")

    @abstractmethod
    async def append(self, recipient_id: str, payload: dict[str, Any]) -> bool:
        """Buffer `payload` for `recipient_id`; return False if it was rejected."""

    @abstractmethod
    async def drain(self, recipient_id: str) -> list[dict[str, Any]]:
        """Return all buffered payloads in arrival order and clear the buffer."""

    @abstractmethod
    async def size(self, recipient_id: str) -> int:
        """Number of payloads currently buffered for `recipient_id`."""

    async def close(self) -> None:
        return None


class MemoryUndeliveredBuffer(UndeliveredBuffer):
    """In-process buffer for single-node deployments and tests."""

    def __init__(self, max_size: int | None = None, policy: str | None = None) -> None:
        super().__init__(max_size, policy)
        self._queues: dict[str, deque[str]] = defaultdict(deque)
        self._lock = Lock()

    async def append(self, recipient_id: str, payload: dict[str, Any]) -> bool:
        encoded = json.dumps(payload)
        with self._lock:
            queue = self._queues[recipient_id]
            if len(queue) >= self.max_size:
                if self.policy == POLICY_REJECT_NEW:
                    logger.warning("Undelivered buffer full for %s; rejecting message", recipient_id)
                    return False
                queue.popleft()
                logger.warning("Undelivered buffer full for %s; dropped oldest message", recipient_id)
            queue.append(encoded)
        return True

    async def drain(self, recipient_id: str) -> list[dict[str, Any]]:
        with self._lock:
            queue = self._queues.pop(recipient_id, None)
        if not queue:
            return []
        return [json.loads(item) for item in queue]

    async def size(self, recipient_id: str) -> int:
        with self._lock:
            return len(self._queues.get(recipient_id, ()))


class RedisUndeliveredBuffer(UndeliveredBuffer):
    """Redis-list backed buffer shared by every node."""

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        max_size: int | None = None,
        policy: str | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        super().__init__(max_size, policy)
        self._redis = client or aioredis.from_url(settings.redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds or settings.undelivered_ttl_seconds

    @staticmethod
    def _key(recipient_id: str) -> str:
        return f"undelivered:{recipient_id}"

    async def append(self, recipient_id: str, payload: dict[str, Any]) -> bool:
        key = self._key(recipient_id)
        encoded = json.dumps(payload)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, encoded)
            if self.policy == POLICY_DROP_OLDEST:
                pipe.ltrim(key, -self.max_size, -1)
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute()

        length = int(results[0])
        if length > self.max_size:
            if self.policy == POLICY_REJECT_NEW:
                # Only the tail we just pushed is removed; earlier entries stay.
                await self._redis.rpop(key)
                logger.warning("Undelivered buffer full for %s; rejecting message", recipient_id)
                return False
            logger.warning("Undelivered buffer full for %s; dropped oldest message", recipient_id)
        return True

    async def drain(self, recipient_id: str) -> list[dict[str, Any]]:
        key = self._key(recipient_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrange(key, 0, -1)
            pipe.delete(key)
            items, _ = await pipe.execute()

        drained: list[dict[str, Any]] = []
        for item in items:
            try:
                drained.append(json.loads(item))
            except (TypeError, ValueError):
                logger.error("Discarding corrupt undelivered entry for %s", recipient_id)
        return drained

    async def size(self, recipient_id: str) -> int:
        return int(await self._redis.llen(self._key(recipient_id)))

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as err:  # pragma: no cover - shutdown path
            logger.warning("Error closing Redis connection: %s", err)


def get_undelivered_buffer() -> UndeliveredBuffer:
    """Return the buffer backend selected by configuration."""
    if settings.undelivered_backend == "memory":
        return MemoryUndeliveredBuffer()
    return RedisUndeliveredBuffer()
