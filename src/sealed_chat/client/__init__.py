"""Asyncio client library for SealedChat."""

from .api import ChatApiClient
from .config import ClientSettings
from .key_directory import KeyDirectory
from .outbox import Attachment, MediaUploader, OutboxManager
from .receipts import ReadReceiptBatcher
from .session import ChatClient
from .store import LocalMessage, MessageStore, PendingOutboxEntry
from .transport import AckResult, TransportSession, WebSocketTransport

__all__ = [
    "AckResult", "Attachment", "ChatApiClient", "ChatClient", "ClientSettings",
    "KeyDirectory", "LocalMessage", "MediaUploader", "MessageStore",
    "OutboxManager", "PendingOutboxEntry", "ReadReceiptBatcher",
    "TransportSession", "WebSocketTransport",
]
