"""Durable client-side message cache and pending outbox (SQLite)."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from sealed_chat.db.time import as_utc, utcnow
from sealed_chat.models.message import MessageStatus
from sealed_chat.services.delivery import DeliveryStateMachine

logger = logging.getLogger(__name__)


class ClientBase(DeclarativeBase):
    """Declarative base for the client's local tables."""


class LocalMessage(ClientBase):
    """A sent or received message as the client sees it.

    Optimistic sends are inserted as `pending` keyed by `client_message_id`
    and updated in place when the server acknowledges them, so the local
    primary key (and list position) never changes.
    """

    __tablename__ = "local_message"
    __table_args__ = (Index("ix_local_message_peer_created", "peer_id", "created_at", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_message_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    server_id: Mapped[int | None] = mapped_column(Integer, unique=True, nullable=True)
    peer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    plaintext_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    reply_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MessageStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PendingOutboxEntry(ClientBase):
    """Wire payload of a message that has not been acknowledged yet."""

    __tablename__ = "pending_outbox"

    # Autoincrement id doubles as the enqueue order.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    temp_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


def parse_timestamp(value: Any) -> datetime:
    """Parse a wire timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, str) and value:
        return _to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    return utcnow()


def _to_utc(value: datetime) -> datetime:
    return as_utc(value).astimezone(UTC)


class MessageStore:
    """SQLite-backed store that survives process restarts.

    Pass ":memory:" for a throwaway store.
    """

    def __init__(self, path: str = ":memory:") -> None:
        if path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False},
            )
        ClientBase.metadata.create_all(bind=self.engine)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Local messages
    # ------------------------------------------------------------------

    def add_pending(
        self,
        *,
        client_message_id: str,
        sender_id: str,
        recipient_id: str,
        content_type: str,
        content: str,
        plaintext_content: str | None = None,
        caption: str | None = None,
        original_filename: str | None = None,
        reply_to: int | None = None,
    ) -> LocalMessage:
        """Insert the optimistic copy of an outgoing message."""
        message = LocalMessage(
            client_message_id=client_message_id,
            server_id=None,
            peer_id=recipient_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content_type=content_type,
            content=content,
            plaintext_content=plaintext_content,
            caption=caption,
            original_filename=original_filename,
            reply_to=reply_to,
            status=MessageStatus.PENDING.value,
            created_at=utcnow(),
        )
        with self._session() as db:
            db.add(message)
        return message

    def get_by_client_id(self, client_message_id: str) -> LocalMessage | None:
        with self._session() as db:
            return db.scalars(
                select(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
            ).first()

    def get_by_server_id(self, server_id: int) -> LocalMessage | None:
        with self._session() as db:
            return db.scalars(select(LocalMessage).where(LocalMessage.server_id == server_id)).first()

    def apply_ack(self, client_message_id: str, record: dict[str, Any]) -> LocalMessage | None:
        """Reconcile the optimistic copy with the acknowledged server record.

        The row is updated in place: it gains the durable id and the server
        timestamp, and its status advances to at least `sent`. A message
        already marked `failed` keeps that status; only `resend` leaves it.
        """
        with self._session() as db:
            message = db.scalars(
                select(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
            ).first()
            if message is None:
                logger.warning("Ack for unknown local message %s", client_message_id)
                return None

            message.server_id = int(record["id"])
            message.created_at = parse_timestamp(record.get("createdAt"))
            message.content = record.get("content", message.content)
            DeliveryStateMachine.apply(message, MessageStatus.SENT)
            server_status = record.get("status")
            if server_status in (MessageStatus.DELIVERED.value, MessageStatus.READ.value):
                DeliveryStateMachine.apply(message, server_status)
            return message

    def set_status(self, client_message_id: str, status: str | MessageStatus) -> bool:
        """Apply a status to a local message through the state machine."""
        with self._session() as db:
            message = db.scalars(
                select(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
            ).first()
            if message is None:
                return False
            return DeliveryStateMachine.apply(message, status)

    def retry(self, client_message_id: str) -> bool:
        """Move a failed message back to pending."""
        with self._session() as db:
            message = db.scalars(
                select(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
            ).first()
            if message is None:
                return False
            return DeliveryStateMachine.retry(message)

    def apply_status_by_server_ids(
        self, server_ids: Iterable[int], status: str | MessageStatus
    ) -> list[LocalMessage]:
        """Apply a status event to every known message in `server_ids`."""
        ids = list(server_ids)
        if not ids:
            return []
        with self._session() as db:
            messages = db.scalars(select(LocalMessage).where(LocalMessage.server_id.in_(ids))).all()
            return [message for message in messages if DeliveryStateMachine.apply(message, status)]

    def upsert_remote(
        self,
        record: dict[str, Any],
        *,
        peer_id: str,
        plaintext_content: str | None,
        status: str | MessageStatus | None = None,
    ) -> tuple[LocalMessage, bool]:
        """Store a message that came from the server.

        Known messages (matched by durable id, then client id) only have
        their status advanced. Returns (message, created).
        """
        server_id = int(record["id"])
        client_message_id = str(record.get("clientMessageId") or f"server-{server_id}")
        target_status = status or record.get("status") or MessageStatus.SENT.value

        with self._session() as db:
            message = db.scalars(select(LocalMessage).where(LocalMessage.server_id == server_id)).first()
            if message is None:
                message = db.scalars(
                    select(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
                ).first()
            if message is not None:
                if message.server_id is None:
                    message.server_id = server_id
                    message.created_at = parse_timestamp(record.get("createdAt"))
                DeliveryStateMachine.apply(message, target_status)
                if message.plaintext_content is None and plaintext_content is not None:
                    message.plaintext_content = plaintext_content
                return message, False

            message = LocalMessage(
                client_message_id=client_message_id,
                server_id=server_id,
                peer_id=peer_id,
                sender_id=record["senderId"],
                recipient_id=record["recipientId"],
                content_type=record.get("contentType", "text"),
                content=record.get("content", ""),
                plaintext_content=plaintext_content,
                caption=record.get("caption"),
                original_filename=record.get("originalFilename"),
                reply_to=record.get("replyTo"),
                status=MessageStatus(target_status).value,
                created_at=parse_timestamp(record.get("createdAt")),
                updated_at=parse_timestamp(record["updatedAt"]) if record.get("updatedAt") else None,
            )
            db.add(message)
            return message, True

    def update_content(
        self, server_id: int, content: str, plaintext_content: str | None
    ) -> LocalMessage | None:
        """Replace content and plaintext together after an edit."""
        with self._session() as db:
            message = db.scalars(select(LocalMessage).where(LocalMessage.server_id == server_id)).first()
            if message is None:
                return None
            message.content = content
            message.plaintext_content = plaintext_content
            message.updated_at = utcnow()
            return message

    def delete_by_client_id(self, client_message_id: str) -> bool:
        with self._session() as db:
            result = db.execute(
                delete(LocalMessage).where(LocalMessage.client_message_id == client_message_id)
            )
            return bool(result.rowcount)

    def delete_by_server_id(self, server_id: int) -> bool:
        with self._session() as db:
            result = db.execute(delete(LocalMessage).where(LocalMessage.server_id == server_id))
            return bool(result.rowcount)

    def conversation(self, peer_id: str, *, limit: int | None = None) -> list[LocalMessage]:
        """Messages with `peer_id` in render order: `created_at`, then local id."""
        query = (
            select(LocalMessage)
            .where(LocalMessage.peer_id == peer_id)
            .order_by(LocalMessage.created_at, LocalMessage.id)
        )
        with self._session() as db:
            rows = list(db.scalars(query).all())
        if limit is not None:
            rows = rows[-limit:]
        return rows

    def unread_server_ids(self, peer_id: str) -> list[int]:
        """Durable ids of messages received from `peer_id` that are not read yet."""
        with self._session() as db:
            return list(
                db.scalars(
                    select(LocalMessage.server_id).where(
                        LocalMessage.peer_id == peer_id,
                        LocalMessage.sender_id == peer_id,
                        LocalMessage.server_id.is_not(None),
                        LocalMessage.status != MessageStatus.READ.value,
                    )
                    .order_by(LocalMessage.created_at, LocalMessage.id)
                ).all()
            )

    def clear_old_messages(self, days: int) -> int:
        """Delete settled messages older than `days`; pending ones are kept."""
        cutoff = utcnow() - timedelta(days=days)
        with self._session() as db:
            result = db.execute(
                delete(LocalMessage).where(
                    LocalMessage.created_at < cutoff,
                    LocalMessage.status.not_in(
                        (MessageStatus.PENDING.value, MessageStatus.FAILED.value)
                    ),
                )
            )
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Removed %d local messages older than %d days", removed, days)
        return removed

    # ------------------------------------------------------------------
    # Pending outbox
    # ------------------------------------------------------------------

    def enqueue(self, temp_id: str, recipient_id: str, payload: dict[str, Any]) -> PendingOutboxEntry:
        entry = PendingOutboxEntry(
            temp_id=temp_id,
            recipient_id=recipient_id,
            payload=payload,
            attempts=0,
            next_attempt_at=None,
            created_at=utcnow(),
        )
        with self._session() as db:
            db.add(entry)
        return entry

    def outbox_entries(self) -> list[PendingOutboxEntry]:
        """All pending entries in enqueue order."""
        with self._session() as db:
            return list(db.scalars(select(PendingOutboxEntry).order_by(PendingOutboxEntry.id)).all())

    def get_outbox_entry(self, temp_id: str) -> PendingOutboxEntry | None:
        with self._session() as db:
            return db.scalars(
                select(PendingOutboxEntry).where(PendingOutboxEntry.temp_id == temp_id)
            ).first()

    def record_attempt(
        self, temp_id: str, error: str, next_attempt_at: datetime | None
    ) -> PendingOutboxEntry | None:
        """Count a failed delivery attempt and schedule the next one."""
        with self._session() as db:
            entry = db.scalars(
                select(PendingOutboxEntry).where(PendingOutboxEntry.temp_id == temp_id)
            ).first()
            if entry is None:
                return None
            entry.attempts += 1
            entry.last_error = error
            entry.next_attempt_at = next_attempt_at
            return entry

    def remove_from_outbox(self, temp_id: str) -> bool:
        with self._session() as db:
            result = db.execute(delete(PendingOutboxEntry).where(PendingOutboxEntry.temp_id == temp_id))
            return bool(result.rowcount)

    def outbox_size(self) -> int:
        return len(self.outbox_entries())
