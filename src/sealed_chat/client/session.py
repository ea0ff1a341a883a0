"""High-level chat client wiring transport, store, keys and outbox together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sealed_chat.client.api import ChatApiClient
from sealed_chat.client.config import ClientSettings
from sealed_chat.client.key_directory import KeyDirectory
from sealed_chat.client.outbox import Attachment, MediaUploader, OutboxManager
from sealed_chat.client.receipts import ReadReceiptBatcher
from sealed_chat.client.store import LocalMessage, MessageStore
from sealed_chat.client.transport import TransportSession, WebSocketTransport
from sealed_chat.core.errors import TransientNetworkError, ValidationError
from sealed_chat.models.message import ContentType, MessageStatus
from sealed_chat.services.crypto import UNDISPLAYABLE, CryptoService

logger = logging.getLogger(__name__)


class ChatClient:
    """One signed-in user's view of the messaging system."""

    def __init__(
        self,
        user_id: str,
        private_key_pem: str,
        transport: TransportSession,
        store: MessageStore,
        api: ChatApiClient,
        settings: ClientSettings | None = None,
        *,
        uploader: MediaUploader | None = None,
        public_key_pem: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.settings = settings or ClientSettings()
        self.transport = transport
        self.store = store
        self.api = api
        self._private_key_pem = private_key_pem

        self.keys = KeyDirectory(api, max_entries=self.settings.key_cache_size)
        if public_key_pem:
            self.keys.prime(user_id, public_key_pem)
        self.outbox = OutboxManager(
            user_id, transport, store, self.keys, self.settings, uploader=uploader
        )
        self.receipts = ReadReceiptBatcher(
            user_id,
            transport,
            store=store,
            debounce_seconds=self.settings.read_receipt_debounce_seconds,
        )

        self.typing_peers: set[str] = set()
        self.presence: dict[str, dict[str, Any]] = {}

        transport.on_connect(self._on_connect)
        transport.on("message", self._on_message)
        transport.on("messageStatus", self._on_message_status)
        transport.on("batchMessageStatus", self._on_batch_status)
        transport.on("messageEdited", self._on_message_edited)
        transport.on("messageDeleted", self._on_message_deleted)
        transport.on("typing", self._on_typing)
        transport.on("stopTyping", self._on_stop_typing)
        transport.on("onlineStatus", self._on_online_status)

    @classmethod
    def create(
        cls,
        token: str,
        user_id: str,
        private_key_pem: str,
        settings: ClientSettings | None = None,
        *,
        uploader: MediaUploader | None = None,
        public_key_pem: str | None = None,
    ) -> ChatClient:
        """Build a client with the default WebSocket transport and SQLite store."""
        settings = settings or ClientSettings()
        return cls(
            user_id,
            private_key_pem,
            WebSocketTransport(token, settings),
            MessageStore(settings.store_path),
            ChatApiClient(token, settings),
            settings,
            uploader=uploader,
            public_key_pem=public_key_pem,
        )

    async def start(self) -> None:
        self.store.clear_old_messages(self.settings.retention_days)
        start = getattr(self.transport, "start", None)
        if start is not None:
            await start()
        await self.outbox.start()

    async def close(self) -> None:
        await self.outbox.stop()
        await self.receipts.close()
        stop = getattr(self.transport, "stop", None)
        if stop is not None:
            await stop()
        await self.api.close()
        self.store.close()

    async def _on_connect(self) -> None:
        await self.transport.request("join", {"userId": self.user_id})
        await self.outbox.flush_pending(force=True)
        await self.receipts.flush()

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def send_message(self, recipient_id: str, text: str, *, reply_to: int | None = None) -> str:
        return await self.outbox.send(recipient_id, text, reply_to=reply_to)

    async def send_media(
        self,
        recipient_id: str,
        data: bytes,
        content_type: str,
        *,
        filename: str | None = None,
        caption: str | None = None,
        reply_to: int | None = None,
    ) -> str:
        if content_type == ContentType.TEXT.value:
            raise ValidationError("Use send_message for text")
        return await self.outbox.send(
            recipient_id,
            None,
            content_type,
            Attachment(data=data, filename=filename),
            caption=caption,
            reply_to=reply_to,
        )

    async def resend(self, client_message_id: str) -> str:
        return await self.outbox.resend(client_message_id)

    async def edit_message(self, server_id: int, text: str) -> LocalMessage | None:
        """Re-encrypt and replace the content of one of our text messages."""
        message = self.store.get_by_server_id(server_id)
        if message is None or message.sender_id != self.user_id:
            raise ValidationError("Only your own stored messages can be edited")
        public_key_pem = await self.keys.resolve_public_key(message.recipient_id)
        content = await asyncio.to_thread(CryptoService.encrypt, text, public_key_pem)
        result = await self.transport.request(
            "editMessage",
            {"messageId": server_id, "senderId": self.user_id, "content": content},
        )
        if not result.ok:
            raise ValidationError(result.error or "Edit rejected")
        return self.store.update_content(server_id, content, text)

    async def delete_message(self, server_id: int) -> bool:
        result = await self.transport.request(
            "deleteMessage", {"messageId": server_id, "senderId": self.user_id}
        )
        if not result.ok:
            raise ValidationError(result.error or "Delete rejected")
        return self.store.delete_by_server_id(server_id)

    async def start_typing(self, recipient_id: str) -> None:
        await self._emit_quietly("typing", {"userId": self.user_id, "recipientId": recipient_id})

    async def stop_typing(self, recipient_id: str) -> None:
        await self._emit_quietly("stopTyping", {"userId": self.user_id, "recipientId": recipient_id})

    async def _emit_quietly(self, event: str, data: dict[str, Any]) -> None:
        try:
            await self.transport.emit(event, data)
        except TransientNetworkError as err:
            logger.debug("Dropped %s indicator: %s", event, err)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def conversation(self, peer_id: str, *, limit: int | None = None) -> list[LocalMessage]:
        return self.store.conversation(peer_id, limit=limit)

    def mark_visible(self, peer_id: str, server_ids: list[int] | None = None) -> None:
        """Queue read receipts for visible messages from `peer_id`."""
        ids = server_ids if server_ids is not None else self.store.unread_server_ids(peer_id)
        self.receipts.mark_visible(ids)

    def set_focus(self, focused: bool) -> None:
        self.receipts.set_focus(focused)

    async def sync_conversation(self, peer_id: str, *, limit: int = 50, skip: int = 0) -> bool:
        """Merge one page of server history into the local store; returns `hasMore`."""
        records, has_more = await self.api.fetch_messages(peer_id, limit=limit, skip=skip)
        for record in records:
            await self._store_remote(record, status=None)
        return has_more

    async def chat_list(self) -> list[dict[str, Any]]:
        """Chat list from the server with the latest text decrypted."""
        entries = await self.api.fetch_chat_list()
        for entry in entries:
            latest = entry.get("latestMessage")
            entry["latestMessageText"] = await self._preview(latest) if latest else None
        return entries

    async def _preview(self, record: dict[str, Any]) -> str | None:
        if record.get("contentType") != ContentType.TEXT.value:
            return record.get("caption") or record.get("originalFilename")
        if record.get("senderId") == self.user_id:
            local = self.store.get_by_server_id(int(record["id"]))
            return local.plaintext_content if local and local.plaintext_content else UNDISPLAYABLE
        return await self._decrypt(record.get("content", ""))

    async def _decrypt(self, blob: str) -> str:
        return await asyncio.to_thread(CryptoService.decrypt, blob, self._private_key_pem)

    async def decrypt_attachment(self, blob: bytes) -> bytes | None:
        """Decrypt downloaded media bytes; None if they cannot be decrypted."""
        return await asyncio.to_thread(
            CryptoService.decrypt_bytes, blob.decode("ascii", errors="replace"), self._private_key_pem
        )

    async def _store_remote(
        self, record: dict[str, Any], *, status: str | MessageStatus | None
    ) -> LocalMessage | None:
        sender_id = record.get("senderId")
        recipient_id = record.get("recipientId")
        if self.user_id not in (sender_id, recipient_id) or "id" not in record:
            logger.warning("Ignoring message %s not addressed to this user", record.get("id"))
            return None
        peer_id = recipient_id if sender_id == self.user_id else sender_id

        plaintext: str | None = None
        if sender_id != self.user_id and record.get("contentType") == ContentType.TEXT.value:
            plaintext = await self._decrypt(record.get("content", ""))
        message, _ = self.store.upsert_remote(
            record, peer_id=str(peer_id), plaintext_content=plaintext, status=status
        )
        return message

    # ------------------------------------------------------------------
    # Incoming events
    # ------------------------------------------------------------------

    async def _on_message(self, data: dict[str, Any]) -> None:
        await self._store_remote(data, status=MessageStatus.DELIVERED)
        self.typing_peers.discard(str(data.get("senderId")))

    async def _on_message_status(self, data: dict[str, Any]) -> None:
        message_id = data.get("messageId")
        if isinstance(message_id, int):
            self.store.apply_status_by_server_ids([message_id], str(data.get("status")))

    async def _on_batch_status(self, data: dict[str, Any]) -> None:
        ids = [value for value in data.get("messageIds", []) if isinstance(value, int)]
        self.store.apply_status_by_server_ids(ids, str(data.get("status")))

    async def _on_message_edited(self, data: dict[str, Any]) -> None:
        if "id" not in data:
            return
        plaintext = await self._decrypt(data.get("content", ""))
        self.store.update_content(int(data["id"]), data.get("content", ""), plaintext)

    async def _on_message_deleted(self, data: dict[str, Any]) -> None:
        message_id = data.get("messageId")
        if isinstance(message_id, int):
            self.store.delete_by_server_id(message_id)

    async def _on_typing(self, data: dict[str, Any]) -> None:
        self.typing_peers.add(str(data.get("userId")))

    async def _on_stop_typing(self, data: dict[str, Any]) -> None:
        self.typing_peers.discard(str(data.get("userId")))

    async def _on_online_status(self, data: dict[str, Any]) -> None:
        user_id = data.get("userId")
        if isinstance(user_id, str):
            self.presence[user_id] = {"status": data.get("status"), "lastSeen": data.get("lastSeen")}
