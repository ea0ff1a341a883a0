"""Cached public key lookup."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Protocol

logger = logging.getLogger(__name__)


class PublicKeySource(Protocol):
    async def fetch_public_key(self, user_id: str) -> str: ...


class KeyDirectory:
    """Resolves user ids to PEM public keys through a bounded LRU cache.

    Public keys are treated as immutable, so entries never expire; they
    leave the cache only through LRU eviction or `invalidate`.
    """

    def __init__(self, source: PublicKeySource, max_entries: int = 512) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._source = source
        self._max_entries = max_entries
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[str]] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._cache

    async def resolve_public_key(self, user_id: str) -> str:
        """Return the public key of `user_id`, fetching it on a cache miss.

        Concurrent misses for the same user share one fetch.

        Raises:
            KeyNotFoundError: If the user has no registered key
            TransientNetworkError: If the lookup could not reach the server
        """
        cached = self._cache.get(user_id)
        if cached is not None:
            self._cache.move_to_end(user_id)
            return cached

        pending = self._inflight.get(user_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight[user_id] = future
        try:
            public_key_pem = await self._source.fetch_public_key(user_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unawaited failure is not reported at GC.
            future.exception()
            raise
        else:
            future.set_result(public_key_pem)
            self._store(user_id, public_key_pem)
            return public_key_pem
        finally:
            self._inflight.pop(user_id, None)

    def prime(self, user_id: str, public_key_pem: str) -> None:
        """Seed the cache, e.g. with the user's own key."""
        self._store(user_id, public_key_pem)

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    def _store(self, user_id: str, public_key_pem: str) -> None:
        self._cache[user_id] = public_key_pem
        self._cache.move_to_end(user_id)
        while len(self._cache) > self._max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Evicted public key of %s from cache", evicted)
