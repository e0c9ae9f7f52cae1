"""
Context cache.

Keeps one ConversationContext per (user, book, chapter) for a fixed TTL.
Expiry is checked on every read, so a stale context is never returned even
if the periodic sweep has not run. Concurrent misses for the same key may
both rebuild; the last one to finish wins.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from lifestory.config import get_settings
from lifestory.schemas.conversation import ConversationContext
from lifestory.services.context_builder import ContextBuilder

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class _CacheEntry:
    context: ConversationContext
    expires_at: float


def cache_key(user_id: UUID, book_id: UUID, chapter_id: UUID | None = None) -> str:
    key = f"context:{user_id}:{book_id}"
    if chapter_id is not None:
        key += f":{chapter_id}"
    return key


class ContextCache:
    """TTL cache in front of a ContextBuilder."""

    def __init__(
        self,
        builder: ContextBuilder,
        *,
        ttl_seconds: float = settings.context_cache_ttl_seconds,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._builder = builder
        self._entries: dict[str, _CacheEntry] = {}
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    async def get_context(
        self,
        user_id: UUID,
        book_id: UUID,
        chapter_id: UUID | None = None,
        *,
        refresh: bool = False,
    ) -> ConversationContext:
        """Return the cached context, rebuilding it on a miss, expiry or refresh."""
        key = cache_key(user_id, book_id, chapter_id)
        if not refresh:
            entry = self._live_entry(key)
            if entry is not None:
                logger.debug("Context cache hit: %s", key)
                return entry.context

        logger.debug("Context cache miss: %s", key)
        context = await self._builder.build(user_id, book_id, chapter_id)
        self._entries[key] = _CacheEntry(context=context, expires_at=self._clock() + self.ttl_seconds)
        return context

    def invalidate(self, user_id: UUID, book_id: UUID, chapter_id: UUID | None = None) -> bool:
        """Drop one entry. Returns whether anything was cached under the key."""
        return self._entries.pop(cache_key(user_id, book_id, chapter_id), None) is not None

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept %d expired contexts", len(expired))
        return len(expired)

    def stats(self) -> dict:
        now = self._clock()
        expired = sum(1 for entry in self._entries.values() if now >= entry.expires_at)
        return {
            "size": len(self._entries),
            "live": len(self._entries) - expired,
            "expired": expired,
            "keys": sorted(self._entries),
        }

    async def run_sweeper(self, interval_seconds: float = settings.context_cache_sweep_seconds) -> None:
        """Sweep forever. Started from the app lifespan and cancelled on shutdown."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Context cache sweep failed")
