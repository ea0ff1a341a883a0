"""Error taxonomy shared by the server and the client library."""

from __future__ import annotations


class ChatError(RuntimeError):
    """Base exception for messaging failures."""


class ValidationError(ChatError):
    """Raised for malformed envelopes or references.

    Rejected immediately and never retried.
    """


class AuthorizationError(ChatError):
    """Raised when an event's claimed identity does not match the session.

    Session-fatal: the transport is closed and the client must re-authenticate.
    """


class CryptoError(ChatError):
    """Raised when a key or ciphertext cannot be used."""


class TransientNetworkError(ChatError):
    """Raised on ack timeouts and disconnects; retried by the outbox."""


class KeyNotFoundError(ChatError):
    """Raised when a peer has no registered public key."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No public key registered for user {user_id}")
        self.user_id = user_id
