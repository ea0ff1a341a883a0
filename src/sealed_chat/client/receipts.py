"""Batched read receipts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from sealed_chat.client.store import MessageStore
from sealed_chat.client.transport import TransportSession
from sealed_chat.core.errors import TransientNetworkError
from sealed_chat.models.message import MessageStatus

logger = logging.getLogger(__name__)

MAX_IDS_PER_EVENT = 500
# Remembered reported ids; older ones are forgotten first.
MAX_REPORTED_IDS = 5000


class ReadReceiptBatcher:
    """Collects visible unread message ids and reports them in one event.

    Receipts are only sent while the conversation view has focus; ids
    marked visible while unfocused wait until focus returns.
    """

    def __init__(
        self,
        user_id: str,
        transport: TransportSession,
        *,
        store: MessageStore | None = None,
        debounce_seconds: float = 0.5,
        max_reported: int = MAX_REPORTED_IDS,
    ) -> None:
        self.user_id = user_id
        self._transport = transport
        self._store = store
        self.debounce_seconds = debounce_seconds
        self._pending: dict[int, None] = {}
        self._reported: dict[int, None] = {}
        self.max_reported = max_reported
        self._focused = True
        self._timer: asyncio.Task[None] | None = None

    @property
    def focused(self) -> bool:
        return self._focused

    @property
    def pending(self) -> list[int]:
        return list(self._pending)

    def set_focus(self, focused: bool) -> None:
        self._focused = focused
        if focused and self._pending:
            self._schedule()
        elif not focused and self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def mark_visible(self, message_ids: Iterable[int]) -> None:
        """Record messages that became visible on screen."""
        for message_id in message_ids:
            if message_id not in self._reported:
                self._pending[message_id] = None
        if self._focused and self._pending:
            self._schedule()

    def _schedule(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timer = None
        await self.flush()

    async def flush(self) -> int:
        """Send one `batchMessageStatus` for everything pending.

        Returns:
            Number of ids reported
        """
        if not self._focused or not self._pending:
            return 0

        ids = list(self._pending)
        self._pending.clear()
        reported = 0
        for start in range(0, len(ids), MAX_IDS_PER_EVENT):
            chunk = ids[start:start + MAX_IDS_PER_EVENT]
            try:
                await self._transport.emit(
                    "batchMessageStatus",
                    {
                        "messageIds": chunk,
                        "status": MessageStatus.READ.value,
                        "recipientId": self.user_id,
                    },
                )
            except TransientNetworkError as err:
                logger.info("Deferring %d read receipts: %s", len(ids) - start, err)
                for message_id in ids[start:]:
                    self._pending[message_id] = None
                break
            self._remember(chunk)
            reported += len(chunk)
            if self._store is not None:
                self._store.apply_status_by_server_ids(chunk, MessageStatus.READ)
        return reported

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _remember(self, message_ids: list[int]) -> None:
        for message_id in message_ids:
            self._reported[message_id] = None
        overflow = len(self._reported) - self.max_reported
        if overflow > 0:
            for message_id in list(self._reported)[:overflow]:
                del self._reported[message_id]
