import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sealed_chat.services.undelivered import (
    POLICY_REJECT_NEW,
    MemoryUndeliveredBuffer,
    RedisUndeliveredBuffer,
    UndeliveredBuffer,
)


@pytest.mark.asyncio
async def test_memory_buffer_drains_in_order() -> None:
    buffer = MemoryUndeliveredBuffer(max_size=10)
    for message_id in range(1, 4):
        assert await buffer.append("bob", {"id": message_id})

    assert await buffer.size("bob") == 3
    assert [item["id"] for item in await buffer.drain("bob")] == [1, 2, 3]
    assert await buffer.drain("bob") == []
    assert await buffer.size("bob") == 0


@pytest.mark.asyncio
async def test_memory_buffer_drops_oldest_when_full() -> None:
    buffer = MemoryUndeliveredBuffer(max_size=2)
    for message_id in range(1, 4):
        assert await buffer.append("bob", {"id": message_id})

    assert [item["id"] for item in await buffer.drain("bob")] == [2, 3]


@pytest.mark.asyncio
async def test_memory_buffer_can_reject_new() -> None:
    buffer = MemoryUndeliveredBuffer(max_size=2, policy=POLICY_REJECT_NEW)
    assert await buffer.append("bob", {"id": 1})
    assert await buffer.append("bob", {"id": 2})
    assert not await buffer.append("bob", {"id": 3})

    assert [item["id"] for item in await buffer.drain("bob")] == [1, 2]


@pytest.mark.asyncio
async def test_concurrent_appends_are_not_lost() -> None:
    buffer = MemoryUndeliveredBuffer(max_size=1000)
    await asyncio.gather(*(buffer.append("bob", {"id": i}) for i in range(200)))
    drained = await buffer.drain("bob")
    assert sorted(item["id"] for item in drained) == list(range(200))


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        MemoryUndeliveredBuffer(policy="shuffle")


def test_buffer_backends_must_implement_drain() -> None:
    class AppendOnly(UndeliveredBuffer):
        async def append(self, recipient_id, payload):
            return True

        async def size(self, recipient_id):
            return 0

    with pytest.raises(TypeError):
        AppendOnly(max_size=1)


def _redis_with_pipeline(results):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=results)
    pipeline_cm = MagicMock()
    pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipeline_cm.__aexit__ = AsyncMock(return_value=False)
    client = MagicMock()
    client.pipeline.return_value = pipeline_cm
    client.rpop = AsyncMock()
    client.llen = AsyncMock(return_value=0)
    client.aclose = AsyncMock()
    return client, pipe


@pytest.mark.asyncio
async def test_redis_buffer_trims_when_dropping_oldest() -> None:
    client, pipe = _redis_with_pipeline([3, True, True])
    buffer = RedisUndeliveredBuffer(client=client, max_size=2, ttl_seconds=60)

    assert await buffer.append("bob", {"id": 9})

    pipe.rpush.assert_called_once_with("undelivered:bob", json.dumps({"id": 9}))
    pipe.ltrim.assert_called_once_with("undelivered:bob", -2, -1)
    pipe.expire.assert_called_once_with("undelivered:bob", 60)
    client.rpop.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_buffer_reject_new_pops_the_tail() -> None:
    client, pipe = _redis_with_pipeline([3, True])
    buffer = RedisUndeliveredBuffer(client=client, max_size=2, policy=POLICY_REJECT_NEW, ttl_seconds=60)

    assert not await buffer.append("bob", {"id": 9})

    pipe.ltrim.assert_not_called()
    client.rpop.assert_awaited_once_with("undelivered:bob")


@pytest.mark.asyncio
async def test_redis_drain_skips_corrupt_entries() -> None:
    client, pipe = _redis_with_pipeline([[json.dumps({"id": 1}), "{broken", json.dumps({"id": 2})], 1])
    buffer = RedisUndeliveredBuffer(client=client, max_size=10, ttl_seconds=60)

    drained = await buffer.drain("bob")

    assert [item["id"] for item in drained] == [1, 2]
    pipe.lrange.assert_called_once_with("undelivered:bob", 0, -1)
    pipe.delete.assert_called_once_with("undelivered:bob")

    await buffer.close()
    client.aclose.assert_awaited_once()
