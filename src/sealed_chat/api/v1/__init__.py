# src/sealed_chat/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import messages_router, socket_router, users_router

__all__ = [
    "messages_router",
    "socket_router",
    "users_router",
]
