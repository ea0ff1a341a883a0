# src/sealed_chat/schemas/message.py
"""Message-related Pydantic schemas used on the wire."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from sealed_chat.core.blob import ENCRYPTED_BLOB_PATTERN
from sealed_chat.db.time import as_utc

USER_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
CLIENT_MESSAGE_ID_PATTERN = r"^[A-Za-z0-9_.:-]{8,128}$"
MEDIA_URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$")

UserId = Annotated[str, Field(pattern=USER_ID_PATTERN)]


class WireModel(BaseModel):
    """Base for camelCase wire payloads that also accept snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class _EnvelopeBase(WireModel):
    sender_id: UserId
    recipient_id: UserId
    client_message_id: str = Field(..., pattern=CLIENT_MESSAGE_ID_PATTERN)
    reply_to: int | None = Field(None, ge=1, description="Durable id of the replied-to message")
    caption: str | None = Field(None, max_length=2000)
    # Sender-local text cache; accepted for compatibility, never stored server-side.
    plaintext_content: str | None = Field(None, exclude=True)

    @field_validator("recipient_id")
    @classmethod
    def _not_self(cls, value: str, info: Any) -> str:
        if info.data.get("sender_id") == value:
            raise ValueError("Sender and recipient must differ")
        return value


class TextEnvelope(_EnvelopeBase):
    """Text message whose content is an encrypted blob."""

    content_type: Literal["text"]
    content: str = Field(..., max_length=200_000)

    @field_validator("content")
    @classmethod
    def _check_blob(cls, value: str) -> str:
        if not ENCRYPTED_BLOB_PATTERN.match(value):
            raise ValueError("Text content must be in encrypted format (data|iv|key)")
        return value


class MediaEnvelope(_EnvelopeBase):
    """Media message whose content is an object-storage URL."""

    content_type: Literal["image", "video", "audio", "document"]
    content: str = Field(..., max_length=4096)
    original_filename: str | None = Field(None, max_length=255)

    @field_validator("content")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not MEDIA_URL_PATTERN.match(value):
            raise ValueError("Media content must be a valid URL")
        return value


MessageEnvelope = Annotated[
    Union[TextEnvelope, MediaEnvelope],
    Field(discriminator="content_type"),
]
envelope_adapter: TypeAdapter[TextEnvelope | MediaEnvelope] = TypeAdapter(MessageEnvelope)


class MessageOut(WireModel):
    """Durable message record as sent to clients."""

    id: int
    client_message_id: str
    sender_id: str
    recipient_id: str
    content_type: str
    content: str
    caption: str | None = None
    original_filename: str | None = None
    reply_to: int | None = Field(None, validation_alias=AliasChoices("reply_to_id", "replyTo"))
    status: str
    created_at: datetime
    updated_at: datetime | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    @field_serializer("created_at", "updated_at")
    def serialize_timestamp(self, value: datetime | None) -> str | None:
        """Emit timestamps as UTC ISO-8601."""
        if value is None:
            return None
        return as_utc(value).isoformat()


class MessagePage(WireModel):
    """One page of conversation history, oldest first."""

    messages: list[MessageOut]
    has_more: bool


class JoinEvent(WireModel):
    user_id: UserId


class TypingEvent(WireModel):
    user_id: UserId
    recipient_id: UserId


class StatusEvent(WireModel):
    """Single status update reported by the recipient of `message_id`."""

    message_id: int = Field(..., ge=1)
    status: Literal["delivered", "read"]
    recipient_id: UserId


class BatchStatusEvent(WireModel):
    """Batched status update, typically read receipts for a visible range."""

    message_ids: list[int] = Field(..., min_length=1, max_length=500)
    status: Literal["delivered", "read"]
    recipient_id: UserId


class EditEvent(WireModel):
    message_id: int = Field(..., ge=1)
    sender_id: UserId
    content: str = Field(..., max_length=200_000)

    @field_validator("content")
    @classmethod
    def _check_blob(cls, value: str) -> str:
        if not ENCRYPTED_BLOB_PATTERN.match(value):
            raise ValueError("Edited content must be in encrypted format (data|iv|key)")
        return value


class DeleteEvent(WireModel):
    message_id: int = Field(..., ge=1)
    sender_id: UserId
