"""Background maintenance for the message store.

The MaintenanceWorker periodically removes messages whose sender or
recipient no longer exists in the identity snapshot.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sealed_chat.core.settings import settings
from sealed_chat.db.session import SessionLocal
from sealed_chat.services.messages import MessageService

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """Runs orphaned-message cleanup on a fixed interval."""

    def __init__(self, db_session: Session | None = None, interval: float | None = None) -> None:
        """Initialize the worker.

        Args:
            db_session: Optional database session. If None, creates new sessions as needed.
            interval: Seconds between runs; defaults to CLEANUP_INTERVAL_SECONDS.
        """
        self._db_session = db_session
        self.interval = max(0.1, float(interval or settings.cleanup_interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self.runs = 0

    async def start(self) -> None:
        """Start the background cleanup loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background cleanup loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def run_once(self) -> int:
        """Run one cleanup pass and return the number of removed messages."""
        removed = await asyncio.to_thread(self._cleanup)
        self.runs += 1
        return removed

    def _cleanup(self) -> int:
        if self._db_session is not None:
            return MessageService.cleanup_orphaned_messages(self._db_session)
        with SessionLocal() as db:
            return MessageService.cleanup_orphaned_messages(db)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            delay = self.interval
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.warning("MaintenanceWorker encountered database error: %s", e)
                delay = min(self.interval, 60.0)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
