# src/sealed_chat/services/__init__.py
"""Business logic services for the SealedChat application."""

from .crypto import CryptoService
from .delivery import DeliveryStateMachine
from .messages import MessageService

__all__ = [
    "CryptoService",
    "DeliveryStateMachine",
    "MessageService",
]
