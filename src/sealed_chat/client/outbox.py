"""Outgoing message queue with durable retry."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sealed_chat.client.config import ClientSettings
from sealed_chat.client.key_directory import KeyDirectory
from sealed_chat.client.store import MessageStore
from sealed_chat.client.transport import TransportSession
from sealed_chat.core.errors import TransientNetworkError, ValidationError
from sealed_chat.db.time import as_utc, utcnow
from sealed_chat.models.message import ContentType, MessageStatus
from sealed_chat.services.crypto import CryptoService

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, str], None]


class MediaUploader(Protocol):
    """Object storage collaborator: upload bytes, get back a URL."""

    async def upload(self, data: bytes, *, content_type: str, filename: str | None = None) -> str: ...


@dataclass
class Attachment:
    """Raw media bytes to encrypt and upload."""

    data: bytes
    filename: str | None = None


def new_client_message_id() -> str:
    return str(uuid.uuid4())


class OutboxManager:
    """Owns the pending queue and the compose-once, deliver-eventually contract.

    Every outgoing message is written to the durable outbox before it is put
    on the wire and removed only when the server acknowledges it, so a crash
    or disconnect at any point leaves it to be replayed by `flush_pending`.
    Replays reuse the client message id; the server deduplicates on it.
    """

    def __init__(
        self,
        user_id: str,
        transport: TransportSession,
        store: MessageStore,
        keys: KeyDirectory,
        settings: ClientSettings | None = None,
        *,
        uploader: MediaUploader | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.user_id = user_id
        self.settings = settings or ClientSettings()
        self._transport = transport
        self._store = store
        self._keys = keys
        self._uploader = uploader
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[bool]] = {}
        self._flush_lock = asyncio.Lock()
        self._listeners: list[StatusListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def add_listener(self, listener: StatusListener) -> None:
        """Register `listener(client_message_id, status)` for local status changes."""
        self._listeners.append(listener)

    def _notify(self, client_message_id: str, status: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(client_message_id, status)
            except Exception:
                logger.exception("Outbox listener failed")

    @property
    def inflight(self) -> frozenset[str]:
        return frozenset(self._inflight)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        recipient_id: str,
        plaintext: str | None,
        content_type: str = ContentType.TEXT.value,
        attachment: Attachment | None = None,
        *,
        caption: str | None = None,
        reply_to: int | None = None,
    ) -> str:
        """Queue a message for `recipient_id` and return its client message id.

        The key lookup, encryption and (for media) upload happen before the
        message is stored, so `KeyNotFoundError` and `ValidationError` reach
        the caller with nothing persisted. Delivery itself continues in the
        background.
        """
        try:
            kind = ContentType(content_type)
        except ValueError as err:
            raise ValidationError(f"Unsupported content type: {content_type}") from err
        if recipient_id == self.user_id:
            raise ValidationError("Cannot send a message to yourself")

        public_key_pem = await self._keys.resolve_public_key(recipient_id)

        original_filename: str | None = None
        if kind == ContentType.TEXT:
            if not plaintext:
                raise ValidationError("Text messages need content")
            content = await asyncio.to_thread(CryptoService.encrypt, plaintext, public_key_pem)
        else:
            if attachment is None:
                raise ValidationError("Media messages need an attachment")
            if self._uploader is None:
                raise ValidationError("No media uploader configured")
            blob = await asyncio.to_thread(CryptoService.encrypt, attachment.data, public_key_pem)
            content = await self._uploader.upload(
                blob.encode("ascii"), content_type=kind.value, filename=attachment.filename
            )
            original_filename = attachment.filename
            plaintext = None

        return self._queue(
            recipient_id,
            kind.value,
            content,
            plaintext_content=plaintext,
            caption=caption,
            reply_to=reply_to,
            original_filename=original_filename,
        )

    def _queue(
        self,
        recipient_id: str,
        content_type: str,
        content: str,
        *,
        plaintext_content: str | None,
        caption: str | None,
        reply_to: int | None,
        original_filename: str | None,
    ) -> str:
        client_message_id = new_client_message_id()
        payload: dict[str, Any] = {
            "senderId": self.user_id,
            "recipientId": recipient_id,
            "contentType": content_type,
            "content": content,
            "clientMessageId": client_message_id,
        }
        if reply_to is not None:
            payload["replyTo"] = reply_to
        if caption is not None:
            payload["caption"] = caption
        if original_filename is not None:
            payload["originalFilename"] = original_filename

        self._store.add_pending(
            client_message_id=client_message_id,
            sender_id=self.user_id,
            recipient_id=recipient_id,
            content_type=content_type,
            content=content,
            plaintext_content=plaintext_content,
            caption=caption,
            original_filename=original_filename,
            reply_to=reply_to,
        )
        self._store.enqueue(client_message_id, recipient_id, payload)
        self._notify(client_message_id, MessageStatus.PENDING.value)

        if self._transport.connected:
            self._track(client_message_id, self._deliver(client_message_id, payload))
        return client_message_id

    async def resend(self, client_message_id: str) -> str:
        """Send a failed message again under a new client message id."""
        message = self._store.get_by_client_id(client_message_id)
        if message is None:
            raise ValidationError(f"Unknown message {client_message_id}")
        if message.status != MessageStatus.FAILED.value:
            raise ValidationError("Only failed messages can be resent")

        self._store.remove_from_outbox(client_message_id)
        self._store.delete_by_client_id(client_message_id)
        return self._queue(
            message.recipient_id,
            message.content_type,
            message.content,
            plaintext_content=message.plaintext_content,
            caption=message.caption,
            reply_to=message.reply_to,
            original_filename=message.original_filename,
        )

    def _track(self, client_message_id: str, coro: Coroutine[Any, Any, bool]) -> asyncio.Task[bool]:
        task = asyncio.create_task(coro)
        self._inflight[client_message_id] = task

        def _done(_: asyncio.Task[bool]) -> None:
            if self._inflight.get(client_message_id) is task:
                del self._inflight[client_message_id]

        task.add_done_callback(_done)
        return task

    async def _deliver(self, client_message_id: str, payload: dict[str, Any]) -> bool:
        """Send one payload and settle it from the ack.

        Returns:
            False on a transient failure (the entry stays queued), else True
        """
        try:
            result = await self._transport.request(
                "message", payload, timeout=self.settings.ack_timeout_seconds
            )
        except TransientNetworkError as err:
            logger.info("Message %s not acknowledged: %s", client_message_id, err)
            self._record_failure(client_message_id, str(err))
            return False

        record = result.message
        if not result.ok or record is None:
            error = result.error or "Acknowledgement carried no message"
            logger.warning("Server rejected message %s: %s", client_message_id, error)
            self._store.remove_from_outbox(client_message_id)
            if self._store.set_status(client_message_id, MessageStatus.FAILED):
                self._notify(client_message_id, MessageStatus.FAILED.value)
            return True

        message = self._store.apply_ack(client_message_id, record)
        self._store.remove_from_outbox(client_message_id)
        if message is not None:
            self._notify(client_message_id, message.status)
        return True

    def _record_failure(self, client_message_id: str, error: str) -> None:
        now = self._clock()
        entry = self._store.get_outbox_entry(client_message_id)
        if entry is None:
            return
        attempts = entry.attempts + 1
        if attempts >= self.settings.max_retries:
            logger.warning(
                "Giving up on message %s after %d attempts: %s", client_message_id, attempts, error
            )
            self._store.remove_from_outbox(client_message_id)
            if self._store.set_status(client_message_id, MessageStatus.FAILED):
                self._notify(client_message_id, MessageStatus.FAILED.value)
            return
        self._store.record_attempt(client_message_id, error, now + self.backoff(attempts))

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next attempt after `attempts` failures."""
        seconds = self.settings.backoff_base_seconds * 2 ** max(0, attempts - 1)
        return timedelta(seconds=min(seconds, self.settings.backoff_max_seconds))

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def flush_pending(self, force: bool = False) -> int:
        """Replay queued entries in enqueue order.

        Entries already in flight are skipped. Unless `force` is set, the
        flush stops at the first entry whose backoff has not elapsed, and it
        always stops at the first transient failure so later messages never
        overtake earlier ones.

        Returns:
            Number of entries settled by an ack
        """
        async with self._flush_lock:
            if not self._transport.connected:
                return 0

            settled = 0
            for entry in self._store.outbox_entries():
                if entry.temp_id in self._inflight:
                    continue
                if self._store.get_outbox_entry(entry.temp_id) is None:
                    continue
                if (
                    not force
                    and entry.next_attempt_at is not None
                    and as_utc(entry.next_attempt_at) > self._clock()
                ):
                    break
                task = self._track(entry.temp_id, self._deliver(entry.temp_id, entry.payload))
                if not await task:
                    break
                settled += 1

            if settled:
                logger.info("Flushed %d pending messages", settled)
            return settled

    async def settle(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    async def start(self) -> None:
        """Start the periodic flush loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, float(self.settings.flush_interval_seconds))
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await self.flush_pending()
            except Exception:
                logger.exception("Periodic outbox flush failed")

