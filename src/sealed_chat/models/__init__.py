# src/sealed_chat/models/__init__.py
"""SQLAlchemy models for the SealedChat server."""

from .message import MEDIA_CONTENT_TYPES, ContentType, Message, MessageStatus
from .user import USER_STATUS_OFFLINE, USER_STATUS_ONLINE, Contact, User

__all__ = [
    "ContentType", "MEDIA_CONTENT_TYPES", "Message", "MessageStatus",
    "Contact", "User",
    "USER_STATUS_OFFLINE", "USER_STATUS_ONLINE",
]
