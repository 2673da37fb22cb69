"""TTL cache of generated answers keyed by the trimmed query string."""

import time
from typing import Callable, Dict, List, Optional

from loguru import logger

from .models import CacheEntry, Source
from .storage import SQLiteChunkStore

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class QueryCache:
    """
    In-process answer cache with lazy expiry.

    Keys are the exact query text after trimming; no other normalization.
    An entry older than the TTL reads as a miss and is dropped by that read.
    Entries are independent of index freshness, so a cached answer may cite
    chunks deleted within the TTL window.

    Subclasses keep the same contract and only swap where entries live
    (see ``PersistentQueryCache``).
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(query: str) -> str:
        return query.strip()

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds

    # Entry storage; overridden by persistent caches.

    async def _load(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def _save(self, entry: CacheEntry) -> None:
        self._entries[entry.query] = entry

    async def _evict(self, key: str) -> None:
        self._entries.pop(key, None)

    async def _purge(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

    async def size(self) -> int:
        return len(self._entries)

    # Public API

    async def get(self, query: str) -> Optional[CacheEntry]:
        """Return the entry for ``query`` if present and not older than the TTL."""
        key = self.key(query)
        entry = await self._load(key)
        if entry is not None and self._expired(entry):
            await self._evict(key)
            entry = None
        if entry is None:
            self._misses += 1
            logger.debug(f"Query cache miss for {key!r}")
            return None
        self._hits += 1
        logger.debug(f"Query cache hit for {key!r}")
        return entry

    async def put(self, query: str, answer: str, sources: List[Source]) -> CacheEntry:
        """Store or overwrite the entry for ``query`` (last write wins)."""
        entry = CacheEntry(
            query=self.key(query),
            answer=answer,
            sources=list(sources),
            created_at=self._clock(),
        )
        await self._save(entry)
        return entry

    async def stats(self) -> Dict[str, float]:
        """Return cache statistics."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0,
            "size": await self.size(),
            "ttl_seconds": self.ttl_seconds,
        }

    async def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        removed = await self._purge()
        self._hits = 0
        self._misses = 0
        return removed


class PersistentQueryCache(QueryCache):
    """Answer cache kept in the store's ``query_cache`` table, so it outlives the process."""

    def __init__(
        self,
        store: SQLiteChunkStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl_seconds, clock)
        self.store = store

    async def _load(self, key: str) -> Optional[CacheEntry]:
        return await self.store.get_cached_answer(key)

    async def _save(self, entry: CacheEntry) -> None:
        await self.store.put_cached_answer(entry)

    async def _evict(self, key: str) -> None:
        await self.store.delete_cached_answer(key)

    async def _purge(self) -> int:
        return await self.store.clear_cached_answers()

    async def size(self) -> int:
        return await self.store.count_cached_answers()
