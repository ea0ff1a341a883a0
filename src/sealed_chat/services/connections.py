# src/sealed_chat/services/connections.py
"""Registry of joined socket connections, one room per user."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class FrameSink(Protocol):
    """Anything that can push a JSON frame to one connected client."""

    async def send_json(self, data: Any) -> None: ...


class Connection:
    """One authenticated socket bound to `user_id` at handshake time."""

    def __init__(self, user_id: str, sink: FrameSink) -> None:
        self.user_id = user_id
        self._sink = sink
        self._send_lock = asyncio.Lock()
        self.closed = False

    async def send(self, event: str, data: Any) -> None:
        async with self._send_lock:
            await self._sink.send_json({"event": event, "data": data})

    async def send_ack(self, ack_id: int, data: Any) -> None:
        async with self._send_lock:
            await self._sink.send_json({"event": "ack", "ackId": ack_id, "data": data})

    def __repr__(self) -> str:
        return f"Connection(user_id={self.user_id!r}, id={id(self):#x})"


class _UserLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class ConnectionManager:
    """Tracks which connections have joined each user's room.

    `lock(user_id)` serializes the decision "relay live or buffer" against
    "join and drain the buffer" for one recipient, so a message is never
    both buffered and relayed. A user's lock only exists while someone
    holds or waits for it.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[Connection]] = defaultdict(set)
        self._locks: dict[str, _UserLock] = {}

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = _UserLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(user_id) is entry:
                del self._locks[user_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def join(self, connection: Connection) -> bool:
        """Add `connection` to its user's room; return True if the user just came online."""
        room = self._rooms[connection.user_id]
        first = not room
        room.add(connection)
        logger.debug("%r joined (%d connections)", connection, len(room))
        return first

    def leave(self, connection: Connection) -> bool:
        """Remove `connection`; return True if it was the user's last one."""
        room = self._rooms.get(connection.user_id)
        if not room or connection not in room:
            return False
        room.discard(connection)
        if room:
            return False
        del self._rooms[connection.user_id]
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._rooms.get(user_id))

    def online_users(self) -> list[str]:
        return [user_id for user_id, room in self._rooms.items() if room]

    async def send_to_user(self, user_id: str, event: str, data: Any) -> int:
        """Push a frame to every joined connection of `user_id`.

        Send failures are logged and do not affect the other connections.

        Returns:
            Number of connections that accepted the frame
        """
        delivered = 0
        for connection in list(self._rooms.get(user_id, ())):
            if connection.closed:
                continue
            try:
                await connection.send(event, data)
            except Exception as err:  # noqa: BLE001
                logger.warning("Failed to send %s to %r: %s", event, connection, err)
                continue
            delivered += 1
        return delivered
