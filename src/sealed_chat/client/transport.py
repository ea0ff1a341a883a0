"""Client side of the real-time socket protocol."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from sealed_chat.client.config import ClientSettings
from sealed_chat.core.errors import AuthorizationError, TransientNetworkError

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]
ConnectCallback = Callable[[], Awaitable[None]]

POLICY_VIOLATION = 1008


@dataclass
class AckResult:
    """Outcome of an acknowledged request: either a result or an error."""

    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return "error" not in self.data

    @property
    def error(self) -> str | None:
        error = self.data.get("error")
        return str(error) if error is not None else None

    @property
    def message(self) -> dict[str, Any] | None:
        message = self.data.get("message")
        return message if isinstance(message, dict) else None


class TransportSession(ABC):
    """Connection handle passed explicitly to every component that talks to the server."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._connect_callbacks: list[ConnectCallback] = []

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def request(
        self, event: str, data: dict[str, Any], timeout: float | None = None
    ) -> AckResult:
        """Send an event and wait for its ack.

        Raises:
            TransientNetworkError: On timeout or when the connection is down
        """

    @abstractmethod
    async def emit(self, event: str, data: dict[str, Any]) -> None:
        """Send a fire-and-forget event."""

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def on_connect(self, callback: ConnectCallback) -> None:
        self._connect_callbacks.append(callback)

    async def _dispatch(self, event: str, data: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                await handler(data)
            except Exception:
                logger.exception("Handler for %s failed", event)

    async def _fire_connect(self) -> None:
        for callback in list(self._connect_callbacks):
            try:
                await callback()
            except Exception:
                logger.exception("Connect callback failed")


class WebSocketTransport(TransportSession):
    """TransportSession over a WebSocket, with automatic reconnect."""

    def __init__(self, token: str, settings: ClientSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or ClientSettings()
        self._token = token
        self._ws: Any | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._next_ack_id = 0
        self._events: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self.auth_error: AuthorizationError | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def url(self) -> str:
        return f"{self.settings.socket_url}?{urlencode({'token': self._token})}"

    async def start(self) -> None:
        """Start the connect/reconnect loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        if self._ws is not None:
            await self._ws.close()
        await self._task
        self._task = None

    async def request(
        self, event: str, data: dict[str, Any], timeout: float | None = None
    ) -> AckResult:
        ws = self._ws
        if ws is None:
            raise TransientNetworkError("Not connected")

        self._next_ack_id += 1
        ack_id = self._next_ack_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await ws.send(json.dumps({"event": event, "data": data, "ackId": ack_id}))
            result = await asyncio.wait_for(
                future, timeout=timeout or self.settings.ack_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(f"No ack for {event} within timeout") from exc
        except ConnectionClosed as exc:
            raise TransientNetworkError(f"Connection closed while sending {event}") from exc
        finally:
            self._pending.pop(ack_id, None)
        return AckResult(result)

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransientNetworkError("Not connected")
        try:
            await ws.send(json.dumps({"event": event, "data": data}))
        except ConnectionClosed as exc:
            raise TransientNetworkError(f"Connection closed while sending {event}") from exc

    async def _run(self) -> None:
        attempt = 0
        while not self._stopping.is_set():
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    attempt = 0
                    logger.info("Connected to %s", self.settings.socket_url)
                    consumer = asyncio.create_task(self._consume())
                    connect_task = asyncio.create_task(self._fire_connect())
                    try:
                        await self._read(ws)
                    finally:
                        self._ws = None
                        self._fail_pending("Connection lost")
                        for task in (connect_task, consumer):
                            if not task.done():
                                task.cancel()
                    if ws.close_code == POLICY_VIOLATION:
                        self.auth_error = AuthorizationError(ws.close_reason or "Session rejected")
                        logger.error("Server closed the session: policy violation")
                        return
            except InvalidHandshake as exc:
                logger.warning("Socket handshake failed: %s", exc)
            except (OSError, ConnectionClosed, asyncio.TimeoutError) as exc:
                logger.warning("Socket connection error: %s", exc)

            if self._stopping.is_set():
                break
            attempt += 1
            delay = min(
                self.settings.reconnect_base_seconds * 2 ** (attempt - 1),
                self.settings.reconnect_max_seconds,
            )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def _read(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame")
                    continue
                if not isinstance(frame, dict):
                    continue
                await self._handle_frame(frame)
        except ConnectionClosed as exc:
            logger.info("Socket closed: %s", exc)

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("event")
        data = frame.get("data")
        if not isinstance(data, dict):
            data = {}
        if event == "ack":
            future = self._pending.get(frame.get("ackId"))  # type: ignore[arg-type]
            if future is not None and not future.done():
                future.set_result(data)
            return
        if isinstance(event, str):
            self._events.put_nowait((event, data))

    async def _consume(self) -> None:
        """Run event handlers in arrival order, off the reader so they may await acks."""
        while True:
            event, data = await self._events.get()
            await self._dispatch(event, data)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransientNetworkError(reason))
        self._pending.clear()
