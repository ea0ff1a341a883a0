"""User, contact and chat-list schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_serializer

from sealed_chat.db.time import as_utc

from .message import USER_ID_PATTERN, MessageOut, WireModel


class PublicKeyResponse(WireModel):
    """Public key lookup result."""

    user_id: str
    public_key_pem: str


class ContactCreate(WireModel):
    """Request to add an explicit contact."""

    contact_id: str = Field(..., pattern=USER_ID_PATTERN)


class ChatListEntry(WireModel):
    """Per-peer summary used to render the chat list."""

    peer_id: str
    username: str | None = None
    photo: str | None = None
    status: str | None = None
    last_seen: datetime | None = None
    latest_message: MessageOut | None = None
    unread_count: int = 0
    is_contact: bool = False

    @field_serializer("last_seen")
    def serialize_last_seen(self, value: datetime | None) -> str | None:
        """Emit last-seen times as UTC ISO-8601."""
        if value is None:
            return None
        return as_utc(value).isoformat()
