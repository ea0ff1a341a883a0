from unittest.mock import AsyncMock

import pytest

from sealed_chat.client.api import ChatApiClient
from sealed_chat.client.session import ChatClient
from sealed_chat.client.store import MessageStore
from sealed_chat.core.errors import ValidationError
from sealed_chat.models import MessageStatus
from sealed_chat.services.crypto import UNDISPLAYABLE, CryptoService
from tests.client.fakes import FakeServer, FakeTransport


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport(FakeServer())


@pytest.fixture()
def api(key_pairs):
    public_keys = {name: pair[1] for name, pair in key_pairs.items()}
    fake = AsyncMock(spec=ChatApiClient)
    fake.fetch_public_key.side_effect = lambda user_id: public_keys[user_id]
    return fake


@pytest.fixture()
def chat(transport, api, key_pairs):
    private_pem, public_pem = key_pairs["alice"]
    client = ChatClient("alice", private_pem, transport, MessageStore(), api, public_key_pem=public_pem)
    yield client
    client.store.close()


def _incoming(server_id: int, blob: str, **extra):
    record = {
        "id": server_id,
        "clientMessageId": f"bob-msg-{server_id:04d}",
        "senderId": "bob",
        "recipientId": "alice",
        "contentType": "text",
        "content": blob,
        "status": "sent",
        "createdAt": "2026-02-02T10:00:00+00:00",
    }
    record.update(extra)
    return record


@pytest.mark.asyncio
async def test_incoming_message_is_decrypted_and_stored(chat, transport, key_pairs) -> None:
    chat.typing_peers.add("bob")
    blob = CryptoService.encrypt("hi alice", key_pairs["alice"][1])

    await transport.deliver("message", _incoming(7, blob))

    [message] = chat.conversation("bob")
    assert message.server_id == 7
    assert message.plaintext_content == "hi alice"
    assert message.status == MessageStatus.DELIVERED.value
    assert "bob" not in chat.typing_peers


@pytest.mark.asyncio
async def test_undecryptable_message_is_kept_with_placeholder(chat, transport, key_pairs) -> None:
    blob = CryptoService.encrypt("not for alice", key_pairs["carol"][1])

    await transport.deliver("message", _incoming(8, blob))

    assert chat.conversation("bob")[0].plaintext_content == UNDISPLAYABLE


@pytest.mark.asyncio
async def test_message_for_someone_else_is_ignored(chat, transport) -> None:
    await transport.deliver("message", _incoming(9, "YQ==|Yg==|Yw==", recipientId="carol"))
    assert chat.conversation("bob") == []


@pytest.mark.asyncio
async def test_status_events_advance_own_messages(chat, transport) -> None:
    first = await chat.send_message("bob", "one")
    second = await chat.send_message("bob", "two")
    await chat.outbox.settle()
    ids = [chat.store.get_by_client_id(client_id).server_id for client_id in (first, second)]

    await transport.deliver("messageStatus", {"messageId": ids[0], "status": "delivered", "recipientId": "bob"})
    await transport.deliver("batchMessageStatus", {"messageIds": ids, "status": "read", "recipientId": "bob"})
    await transport.deliver("messageStatus", {"messageId": ids[0], "status": "delivered", "recipientId": "bob"})

    statuses = [chat.store.get_by_client_id(client_id).status for client_id in (first, second)]
    assert statuses == ["read", "read"]


@pytest.mark.asyncio
async def test_reconnect_joins_then_flushes(chat, transport) -> None:
    transport.is_connected = False
    client_id = await chat.send_message("bob", "while offline")
    assert chat.store.get_by_client_id(client_id).status == MessageStatus.PENDING.value

    await transport.reconnect()

    assert transport.requests[0] == ("join", {"userId": "alice"})
    assert chat.store.get_by_client_id(client_id).status == MessageStatus.SENT.value
    assert chat.store.outbox_size() == 0


@pytest.mark.asyncio
async def test_edit_reencrypts_for_recipient(chat, transport, key_pairs) -> None:
    client_id = await chat.send_message("bob", "typo")
    await chat.outbox.settle()
    server_id = chat.store.get_by_client_id(client_id).server_id

    await chat.edit_message(server_id, "fixed")

    [edit] = transport.sent("editMessage")
    assert edit["messageId"] == server_id
    assert CryptoService.decrypt(edit["content"], key_pairs["bob"][0]) == "fixed"
    assert chat.store.get_by_server_id(server_id).plaintext_content == "fixed"


@pytest.mark.asyncio
async def test_cannot_edit_received_message(chat, transport, key_pairs) -> None:
    await transport.deliver("message", _incoming(12, CryptoService.encrypt("x", key_pairs["alice"][1])))
    with pytest.raises(ValidationError):
        await chat.edit_message(12, "mine now")


@pytest.mark.asyncio
async def test_remote_edit_and_delete(chat, transport, key_pairs) -> None:
    await transport.deliver("message", _incoming(20, CryptoService.encrypt("before", key_pairs["alice"][1])))

    edited = _incoming(20, CryptoService.encrypt("after", key_pairs["alice"][1]))
    await transport.deliver("messageEdited", edited)
    assert chat.store.get_by_server_id(20).plaintext_content == "after"

    await transport.deliver("messageDeleted", {"messageId": 20, "senderId": "bob", "recipientId": "alice"})
    assert chat.store.get_by_server_id(20) is None


@pytest.mark.asyncio
async def test_delete_own_message(chat, transport) -> None:
    client_id = await chat.send_message("bob", "oops")
    await chat.outbox.settle()
    server_id = chat.store.get_by_client_id(client_id).server_id

    assert await chat.delete_message(server_id)
    assert transport.sent("deleteMessage") == [{"messageId": server_id, "senderId": "alice"}]
    assert chat.conversation("bob") == []


@pytest.mark.asyncio
async def test_typing_and_presence(chat, transport) -> None:
    await transport.deliver("typing", {"userId": "bob", "recipientId": "alice"})
    assert chat.typing_peers == {"bob"}
    await transport.deliver("stopTyping", {"userId": "bob", "recipientId": "alice"})
    assert chat.typing_peers == set()

    await transport.deliver("onlineStatus", {"userId": "bob", "status": "offline", "lastSeen": "2026-02-02T10:00:00+00:00"})
    assert chat.presence["bob"] == {"status": "offline", "lastSeen": "2026-02-02T10:00:00+00:00"}

    await chat.start_typing("bob")
    transport.is_connected = False
    await chat.stop_typing("bob")
    assert transport.emitted == [("typing", {"userId": "alice", "recipientId": "bob"})]


@pytest.mark.asyncio
async def test_sync_conversation_merges_history(chat, api, key_pairs) -> None:
    api.fetch_messages.return_value = (
        [_incoming(30, CryptoService.encrypt("old news", key_pairs["alice"][1]), status="read")],
        True,
    )

    assert await chat.sync_conversation("bob", limit=1) is True
    api.fetch_messages.assert_awaited_once_with("bob", limit=1, skip=0)
    [message] = chat.conversation("bob")
    assert message.plaintext_content == "old news"
    assert message.status == MessageStatus.READ.value


@pytest.mark.asyncio
async def test_chat_list_previews(chat, api, key_pairs) -> None:
    client_id = await chat.send_message("carol", "see you")
    await chat.outbox.settle()
    own = chat.store.get_by_client_id(client_id)

    api.fetch_chat_list.return_value = [
        {"peerId": "bob", "latestMessage": _incoming(40, CryptoService.encrypt("ping", key_pairs["alice"][1]))},
        {
            "peerId": "carol",
            "latestMessage": {
                "id": own.server_id,
                "senderId": "alice",
                "recipientId": "carol",
                "contentType": "text",
                "content": own.content,
            },
        },
        {"peerId": "dave", "latestMessage": {"id": 41, "senderId": "dave", "contentType": "image", "caption": "sunset"}},
        {"peerId": "erin", "latestMessage": None},
    ]

    entries = await chat.chat_list()

    assert [entry["latestMessageText"] for entry in entries] == ["ping", "see you", "sunset", None]


@pytest.mark.asyncio
async def test_mark_visible_sends_read_receipts(chat, transport, key_pairs) -> None:
    await transport.deliver("message", _incoming(50, CryptoService.encrypt("a", key_pairs["alice"][1])))
    await transport.deliver("message", _incoming(51, CryptoService.encrypt("b", key_pairs["alice"][1])))

    chat.mark_visible("bob")
    await chat.receipts.flush()

    assert transport.emitted == [
        ("batchMessageStatus", {"messageIds": [50, 51], "status": "read", "recipientId": "alice"})
    ]
    assert chat.store.unread_server_ids("bob") == []
    await chat.receipts.close()


@pytest.mark.asyncio
async def test_start_and_close(chat, api) -> None:
    await chat.start()
    await chat.close()
    api.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_deferred_read_receipts_are_sent_after_reconnect(chat, transport, key_pairs) -> None:
    await transport.deliver("message", _incoming(60, CryptoService.encrypt("late", key_pairs["alice"][1])))
    transport.is_connected = False

    chat.mark_visible("bob")
    assert await chat.receipts.flush() == 0
    assert chat.receipts.pending == [60]

    await transport.reconnect()

    assert transport.emitted == [
        ("batchMessageStatus", {"messageIds": [60], "status": "read", "recipientId": "alice"})
    ]
    assert chat.receipts.pending == []
    await chat.receipts.close()
