import asyncio

import pytest

from sealed_chat.client.receipts import MAX_IDS_PER_EVENT, ReadReceiptBatcher
from sealed_chat.client.store import MessageStore
from sealed_chat.models import MessageStatus
from tests.client.fakes import FakeTransport


@pytest.mark.asyncio
async def test_visible_messages_are_reported_in_one_event() -> None:
    transport = FakeTransport()
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=0.01)

    batcher.mark_visible([11, 12])
    batcher.mark_visible([12, 13])
    await asyncio.sleep(0.05)

    assert transport.emitted == [
        ("batchMessageStatus", {"messageIds": [11, 12, 13], "status": "read", "recipientId": "bob"})
    ]
    assert batcher.pending == []


@pytest.mark.asyncio
async def test_already_reported_ids_are_skipped() -> None:
    transport = FakeTransport()
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=10)

    batcher.mark_visible([1, 2])
    assert await batcher.flush() == 2
    batcher.mark_visible([2, 3])
    assert await batcher.flush() == 1

    assert transport.emitted[-1][1]["messageIds"] == [3]
    await batcher.close()


@pytest.mark.asyncio
async def test_receipts_wait_for_focus() -> None:
    transport = FakeTransport()
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=0.01)
    batcher.set_focus(False)

    batcher.mark_visible([5])
    await asyncio.sleep(0.05)
    assert transport.emitted == []
    assert await batcher.flush() == 0

    batcher.set_focus(True)
    await asyncio.sleep(0.05)
    assert [data["messageIds"] for _, data in transport.emitted] == [[5]]


@pytest.mark.asyncio
async def test_large_batches_are_chunked() -> None:
    transport = FakeTransport()
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=10)

    batcher.mark_visible(range(1, MAX_IDS_PER_EVENT + 6))
    assert await batcher.flush() == MAX_IDS_PER_EVENT + 5

    sizes = [len(data["messageIds"]) for _, data in transport.emitted]
    assert sizes == [MAX_IDS_PER_EVENT, 5]
    await batcher.close()


@pytest.mark.asyncio
async def test_receipts_are_kept_while_offline() -> None:
    transport = FakeTransport(connected=False)
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=10)

    batcher.mark_visible([7, 8])
    assert await batcher.flush() == 0
    assert batcher.pending == [7, 8]

    transport.is_connected = True
    assert await batcher.flush() == 2
    await batcher.close()


@pytest.mark.asyncio
async def test_reported_messages_are_marked_read_locally() -> None:
    store = MessageStore()
    store.upsert_remote(
        {"id": 30, "clientMessageId": "r-0000030", "senderId": "alice", "recipientId": "bob", "status": "delivered"},
        peer_id="alice",
        plaintext_content="hi",
    )
    batcher = ReadReceiptBatcher("bob", FakeTransport(), store=store, debounce_seconds=10)

    batcher.mark_visible(store.unread_server_ids("alice"))
    await batcher.flush()

    assert store.get_by_server_id(30).status == MessageStatus.READ.value
    assert store.unread_server_ids("alice") == []
    await batcher.close()
    store.close()


@pytest.mark.asyncio
async def test_reported_ids_are_bounded() -> None:
    transport = FakeTransport()
    batcher = ReadReceiptBatcher("bob", transport, debounce_seconds=10, max_reported=3)

    batcher.mark_visible([1, 2])
    await batcher.flush()
    batcher.mark_visible([3, 4])
    await batcher.flush()

    batcher.mark_visible([1, 4])
    assert batcher.pending == [1]
    await batcher.close()
