# src/sealed_chat/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .messages import router as messages_router
from .socket import router as socket_router
from .users import router as users_router

__all__ = [
    "messages_router",
    "socket_router",
    "users_router",
]
