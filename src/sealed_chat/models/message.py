# src/sealed_chat/models/message.py
"""Models describing direct messages between two users."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from sealed_chat.db.session import Base
from sealed_chat.db.time import utcnow


class ContentType(str, Enum):
    """Kinds of message payload."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


MEDIA_CONTENT_TYPES = frozenset(
    {ContentType.IMAGE, ContentType.VIDEO, ContentType.AUDIO, ContentType.DOCUMENT}
)


class MessageStatus(str, Enum):
    """Lifecycle status of a message instance."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Message(Base):
    """Encrypted message exchanged between two users.

    Text content is stored as the `ciphertext|iv|wrappedKey` blob produced on
    the sender's device; the server never sees plaintext.
    """

    __tablename__ = "message"
    __table_args__ = (
        UniqueConstraint("sender_id", "client_message_id", name="uq_message_sender_client_id"),
        Index("ix_message_pair_created", "sender_id", "recipient_id", "created_at"),
        Index("ix_message_recipient_status", "recipient_id", "status"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    client_message_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # No ondelete cascade: orphans are removed by the maintenance worker.
    sender_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_account.id"), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_account.id"), nullable=False)

    content_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Weak reference; the replied-to message may be deleted later.
    reply_to_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MessageStatus.SENT.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=utcnow
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
