# src/sealed_chat/schemas/__init__.py
"""
Pydantic schemas for wire payloads.

These schemas define the structure of socket events and REST responses.
"""

from .message import (
    BatchStatusEvent,
    DeleteEvent,
    EditEvent,
    JoinEvent,
    MediaEnvelope,
    MessageEnvelope,
    MessageOut,
    MessagePage,
    StatusEvent,
    TextEnvelope,
    TypingEvent,
    envelope_adapter,
)
from .users import ChatListEntry, ContactCreate, PublicKeyResponse

__all__ = [
    "BatchStatusEvent", "DeleteEvent", "EditEvent", "JoinEvent",
    "MediaEnvelope", "MessageEnvelope", "MessageOut", "MessagePage",
    "StatusEvent", "TextEnvelope", "TypingEvent", "envelope_adapter",
    "ChatListEntry", "ContactCreate", "PublicKeyResponse",
]
