# src/sealed_chat/services/gateway.py
"""Event handling for real-time chat sessions.

The gateway owns the server side of the socket protocol: it authorizes every
inbound event against the identity bound at handshake time, persists
messages, relays them to joined recipients, and buffers them for offline
recipients until their next `join`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractContextManager
from typing import Any, TypeVar

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from sealed_chat.core.errors import AuthorizationError, ChatError
from sealed_chat.db.time import as_utc
from sealed_chat.models import Message, MessageStatus
from sealed_chat.schemas.message import (
    BatchStatusEvent,
    DeleteEvent,
    EditEvent,
    JoinEvent,
    MediaEnvelope,
    MessageOut,
    StatusEvent,
    TextEnvelope,
    TypingEvent,
    envelope_adapter,
)
from sealed_chat.services import users as user_service
from sealed_chat.services.connections import Connection, ConnectionManager
from sealed_chat.services.messages import MessageService
from sealed_chat.services.undelivered import UndeliveredBuffer

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AbstractContextManager[Session]]
Ack = Callable[[dict[str, Any]], Awaitable[None]]
Handler = Callable[["ClientSession", dict[str, Any], Ack], Awaitable[dict[str, Any] | None]]

INTERNAL_ERROR = "Internal server error"


def serialize_message(message: Message) -> dict[str, Any]:
    return MessageOut.model_validate(message).to_wire()


def _format_schema_error(err: SchemaValidationError) -> str:
    parts = []
    for item in err.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts) or "Invalid payload"


def _persist(db: Session, envelope: TextEnvelope | MediaEnvelope) -> tuple[dict[str, Any], bool]:
    message, created = MessageService.create_message(db, envelope)
    return serialize_message(message), created


def _mark_delivered(db: Session, message_ids: list[int]) -> list[tuple[int, str]]:
    return [(m.id, m.sender_id) for m in MessageService.mark_delivered(db, message_ids)]


def _apply_status(
    db: Session, user_id: str, message_ids: list[int], status: str
) -> list[tuple[int, str]]:
    changed = MessageService.apply_status(db, user_id, message_ids, status)
    return [(m.id, m.sender_id) for m in changed]


def _edit(db: Session, message_id: int, sender_id: str, content: str) -> dict[str, Any]:
    return serialize_message(MessageService.edit_message(db, message_id, sender_id, content))


def _delete(db: Session, message_id: int, sender_id: str) -> dict[str, Any]:
    message = MessageService.delete_message(db, message_id, sender_id)
    return {
        "messageId": message_id,
        "senderId": message.sender_id,
        "recipientId": message.recipient_id,
    }


def _presence(db: Session, user_id: str, online: bool) -> tuple[str | None, set[str]]:
    last_seen = user_service.set_presence(db, user_id, online)
    stamp = as_utc(last_seen).isoformat() if last_seen else None
    return stamp, user_service.presence_watchers(db, user_id)


def _user_exists(db: Session, user_id: str) -> bool:
    return user_service.get_user(db, user_id) is not None


class ClientSession:
    """Per-connection state; the identity is fixed for the socket's lifetime."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.joined = False

    @property
    def user_id(self) -> str:
        return self.connection.user_id


class _AckOnce:
    """Sends at most one ack for a request frame."""

    def __init__(self, connection: Connection, ack_id: Any) -> None:
        self.connection = connection
        self.ack_id = ack_id if isinstance(ack_id, int) and not isinstance(ack_id, bool) else None
        self.sent = False

    async def __call__(self, data: dict[str, Any]) -> None:
        if self.ack_id is None or self.sent:
            return
        self.sent = True
        await self.connection.send_ack(self.ack_id, data)


class ChatGateway:
    """Dispatches socket events for every connected session on this node."""

    def __init__(
        self,
        session_factory: SessionFactory,
        buffer: UndeliveredBuffer,
        connections: ConnectionManager | None = None,
        *,
        serialize_db: bool = False,
    ) -> None:
        """Initialize the gateway.

        Args:
            session_factory: Returns a context manager yielding a database session
            buffer: Undelivered-message buffer for offline recipients
            connections: Room registry; a fresh one is created if omitted
            serialize_db: Run database work one call at a time (SQLite)
        """
        self._session_factory = session_factory
        self.buffer = buffer
        self.connections = connections or ConnectionManager()
        self._db_lock = asyncio.Lock() if serialize_db else None
        self._handlers: dict[str, Handler] = {
            "join": self._on_join,
            "leave": self._on_leave,
            "message": self._on_message,
            "messageStatus": self._on_message_status,
            "batchMessageStatus": self._on_batch_status,
            "typing": self._on_typing,
            "stopTyping": self._on_stop_typing,
            "editMessage": self._on_edit,
            "deleteMessage": self._on_delete,
            "ping": self._on_ping,
        }

    async def _run_db(self, func: Callable[..., T], *args: Any) -> T:
        def work() -> T:
            with self._session_factory() as db:
                return func(db, *args)

        if self._db_lock is None:
            return await asyncio.to_thread(work)
        async with self._db_lock:
            return await asyncio.to_thread(work)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def user_exists(self, user_id: str) -> bool:
        return await self._run_db(_user_exists, user_id)

    async def dispatch(self, session: ClientSession, frame: Any) -> None:
        """Handle one inbound frame.

        Failures are reported to the client as an ack error or an error
        frame and never propagate, except `AuthorizationError`, which is
        re-raised so the caller can close the socket.
        """
        if not isinstance(frame, dict):
            await session.connection.send("error", {"error": "Frame must be a JSON object"})
            return

        event = frame.get("event")
        data = frame.get("data")
        if data is None:
            data = {}
        ack = _AckOnce(session.connection, frame.get("ackId"))

        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            await self._reply_error(session, ack, f"Unknown event: {event}")
            return
        if not isinstance(data, dict):
            await self._reply_error(session, ack, "Event data must be a JSON object")
            return

        try:
            result = await handler(session, data, ack)
        except AuthorizationError as err:
            logger.warning("Rejected %s from %s: %s", event, session.user_id, err)
            await self._reply_error(session, ack, str(err))
            raise
        except SchemaValidationError as err:
            await self._reply_error(session, ack, _format_schema_error(err))
            return
        except ChatError as err:
            await self._reply_error(session, ack, str(err))
            return
        except Exception:
            logger.exception("Unhandled error processing %s from %s", event, session.user_id)
            await self._reply_error(session, ack, INTERNAL_ERROR)
            return

        if result is not None:
            await ack(result)

    async def disconnect(self, session: ClientSession) -> None:
        """Clean up after a socket closed, for whatever reason."""
        session.connection.closed = True
        if not session.joined:
            return
        session.joined = False
        async with self.connections.lock(session.user_id):
            last = self.connections.leave(session.connection)
        if last:
            await self._broadcast_presence(session.user_id, online=False)

    async def _reply_error(self, session: ClientSession, ack: _AckOnce, message: str) -> None:
        try:
            if ack.ack_id is not None and not ack.sent:
                await ack({"error": message})
            else:
                await session.connection.send("error", {"error": message})
        except Exception as err:  # noqa: BLE001
            logger.debug("Could not report error to %r: %s", session.connection, err)

    @staticmethod
    def _require_identity(session: ClientSession, claimed: Any) -> None:
        if claimed != session.user_id:
            raise AuthorizationError(
                f"Event identity {claimed!r} does not match authenticated user"
            )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_join(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = JoinEvent.model_validate(data)
        self._require_identity(session, request.user_id)

        user_id = session.user_id
        async with self.connections.lock(user_id):
            came_online = self.connections.join(session.connection)
            session.joined = True
            buffered = await self.buffer.drain(user_id)
            pushed: list[int] = []
            for payload in buffered:
                try:
                    await session.connection.send("message", payload)
                except Exception as err:  # noqa: BLE001
                    # Still durable; the client recovers it from history.
                    logger.warning("Failed to replay buffered message to %s: %s", user_id, err)
                    break
                message_id = payload.get("id")
                if isinstance(message_id, int):
                    pushed.append(message_id)

        if buffered:
            logger.info("Replayed %d/%d buffered messages to %s", len(pushed), len(buffered), user_id)
        if pushed:
            changed = await self._run_db(_mark_delivered, pushed)
            await self._notify_senders(changed, "delivered", user_id)
        if came_online:
            await self._broadcast_presence(user_id, online=True)
        return {"status": "ok", "replayed": len(pushed)}

    async def _on_leave(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = JoinEvent.model_validate(data)
        self._require_identity(session, request.user_id)
        if not session.joined:
            return None
        session.joined = False
        async with self.connections.lock(session.user_id):
            last = self.connections.leave(session.connection)
        if last:
            await self._broadcast_presence(session.user_id, online=False)
        return {"status": "ok"}

    async def _on_message(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        claimed = data.get("senderId", data.get("sender_id"))
        if claimed is not None:
            self._require_identity(session, claimed)
        envelope = envelope_adapter.validate_python(data)
        self._require_identity(session, envelope.sender_id)

        payload, created = await self._run_db(_persist, envelope)
        try:
            await ack({"status": "ok", "message": payload})
        finally:
            # Route even when the ack could not be sent.
            if created:
                await self._route(payload)
            elif payload["status"] == MessageStatus.SENT.value:
                await self._route(payload, buffer_if_offline=False)
        return None

    async def _route(self, payload: dict[str, Any], *, buffer_if_offline: bool = True) -> None:
        """Relay a stored message to its recipient, or buffer it if offline.

        A replayed message that was never delivered is only relayed live;
        when the recipient is offline it is already buffered or reachable
        through history.
        """
        recipient_id = payload["recipientId"]
        delivered = False
        async with self.connections.lock(recipient_id):
            if self.connections.is_online(recipient_id):
                delivered = await self.connections.send_to_user(recipient_id, "message", payload) > 0
            if not delivered and buffer_if_offline:
                if await self.buffer.append(recipient_id, payload):
                    logger.debug("Buffered message %s for offline user %s", payload["id"], recipient_id)

        if delivered:
            changed = await self._run_db(_mark_delivered, [payload["id"]])
            await self._notify_senders(changed, "delivered", recipient_id)

    async def _on_message_status(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = StatusEvent.model_validate(data)
        self._require_identity(session, request.recipient_id)
        changed = await self._run_db(
            _apply_status, session.user_id, [request.message_id], request.status
        )
        await self._notify_senders(changed, request.status, session.user_id)
        return {"status": "ok", "updated": [message_id for message_id, _ in changed]}

    async def _on_batch_status(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = BatchStatusEvent.model_validate(data)
        self._require_identity(session, request.recipient_id)
        changed = await self._run_db(
            _apply_status, session.user_id, list(request.message_ids), request.status
        )
        await self._notify_senders(changed, request.status, session.user_id)
        return {"status": "ok", "updated": [message_id for message_id, _ in changed]}

    async def _on_typing(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        await self._relay_typing(session, data, "typing")
        return None

    async def _on_stop_typing(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        await self._relay_typing(session, data, "stopTyping")
        return None

    async def _relay_typing(self, session: ClientSession, data: dict[str, Any], event: str) -> None:
        try:
            request = TypingEvent.model_validate(data)
        except SchemaValidationError as err:
            logger.debug("Dropping malformed %s event from %s: %s", event, session.user_id, err)
            return
        self._require_identity(session, request.user_id)
        await self.connections.send_to_user(
            request.recipient_id,
            event,
            {"userId": request.user_id, "recipientId": request.recipient_id},
        )

    async def _on_edit(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = EditEvent.model_validate(data)
        self._require_identity(session, request.sender_id)
        payload = await self._run_db(_edit, request.message_id, session.user_id, request.content)
        await ack({"status": "ok", "message": payload})
        await self.connections.send_to_user(payload["recipientId"], "messageEdited", payload)
        return None

    async def _on_delete(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        request = DeleteEvent.model_validate(data)
        self._require_identity(session, request.sender_id)
        payload = await self._run_db(_delete, request.message_id, session.user_id)
        await ack({"status": "ok", "messageId": request.message_id})
        await self.connections.send_to_user(payload["recipientId"], "messageDeleted", payload)
        return None

    async def _on_ping(
        self, session: ClientSession, data: dict[str, Any], ack: Ack
    ) -> dict[str, Any] | None:
        await session.connection.send("pong", {"ts": data.get("ts")})
        return None

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify_senders(
        self, changed: Iterable[tuple[int, str]], status: str, recipient_id: str
    ) -> None:
        """Tell each sender which of their messages changed status."""
        by_sender: dict[str, list[int]] = defaultdict(list)
        for message_id, sender_id in changed:
            by_sender[sender_id].append(message_id)

        for sender_id, message_ids in by_sender.items():
            if len(message_ids) == 1:
                await self.connections.send_to_user(
                    sender_id,
                    "messageStatus",
                    {"messageId": message_ids[0], "status": status, "recipientId": recipient_id},
                )
            else:
                await self.connections.send_to_user(
                    sender_id,
                    "batchMessageStatus",
                    {"messageIds": message_ids, "status": status, "recipientId": recipient_id},
                )

    async def _broadcast_presence(self, user_id: str, *, online: bool) -> None:
        try:
            last_seen, watchers = await self._run_db(_presence, user_id, online)
        except Exception:
            logger.exception("Failed to record presence for %s", user_id)
            return
        status = "online" if online else "offline"
        for watcher in watchers:
            if self.connections.is_online(watcher):
                await self.connections.send_to_user(
                    watcher,
                    "onlineStatus",
                    {"userId": user_id, "status": status, "lastSeen": last_seen},
                )
