"""Vector index lifecycle: build, staleness detection, invalidation, search."""

import asyncio
import time
from dataclasses import replace
from typing import List, Optional, Sequence

from loguru import logger

from .errors import IndexStaleError
from .models import SearchResult
from .scoring import ScoringWeights
from .storage import ChunkStore
from .worker import BuildRequest, ScoringWorker, SearchRequest


class VectorIndex:
    """
    Owns the process-wide index snapshot held by the scoring worker.

    The generation marker equals the persisted chunk count the snapshot was
    built from. Before every search the live count is compared with it and a
    mismatch forces a rebuild. Only one build runs at a time; concurrent
    callers await the build already in flight, unless the index was
    invalidated after that build started, in which case a fresh build is
    queued behind it.
    """

    def __init__(self, store: ChunkStore, worker: ScoringWorker, dimension: int):
        self.store = store
        self.worker = worker
        self.dimension = dimension
        self._generation: Optional[int] = None
        self._size = 0
        self._invalidated = True
        self._epoch = 0
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_epoch = -1
        self.builds = 0

    @property
    def generation(self) -> Optional[int]:
        return self._generation

    @property
    def size(self) -> int:
        return self._size

    def is_stale(self, live_count: int) -> bool:
        """True when the snapshot must be rebuilt before it can serve a search."""
        return self._invalidated or self._generation != live_count

    def invalidate(self) -> None:
        """Force the next access to rebuild, including over a build now in flight."""
        self._epoch += 1
        self._invalidated = True
        logger.debug(f"Vector index invalidated (epoch {self._epoch})")

    async def build(self) -> int:
        """Build a snapshot from the persisted chunks. Returns its generation."""
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            if self._inflight_epoch == self._epoch:
                logger.debug("Index build already in flight; joining it")
                return await asyncio.shield(inflight)
            logger.debug("Index build in flight predates an invalidation; queueing a fresh one")
            self._inflight = asyncio.ensure_future(self._build(after=inflight))
        else:
            self._inflight = asyncio.ensure_future(self._build())
        self._inflight_epoch = self._epoch
        # shield: a caller that stops waiting does not cancel the shared build
        return await asyncio.shield(self._inflight)

    async def _build(self, after: Optional[asyncio.Future] = None) -> int:
        if after is not None:
            # Snapshots are installed in the order their reads happened
            await asyncio.wait([after])
        epoch = self._epoch
        started = time.perf_counter()

        chunks = await self.store.all_chunks()
        request = BuildRequest(
            ids=tuple(c.id for c in chunks),
            contents=tuple(c.content for c in chunks),
            vectors=tuple(c.embedding for c in chunks),
            dimension=self.dimension,
            generation=len(chunks),
        )
        del chunks
        response = await self.worker.submit(request)

        self._generation = response.generation
        self._size = response.size
        self._invalidated = epoch != self._epoch
        self.builds += 1

        logger.info(
            f"Built vector index: {response.size} vectors x {self.dimension} dims, "
            f"generation {response.generation} in {time.perf_counter() - started:.3f}s"
        )
        return response.generation

    async def ensure_fresh(self) -> int:
        """Rebuild until the snapshot matches the persisted chunk count."""
        live_count = await self.store.count_chunks()
        while self.is_stale(live_count):
            await self.build()
            live_count = await self.store.count_chunks()
        return self._generation if self._generation is not None else 0

    async def search(
        self,
        query_vector: Sequence[float],
        query_text: str,
        k: int,
        weights: ScoringWeights,
    ) -> List[SearchResult]:
        """Score the query against a fresh snapshot on the worker thread."""
        generation = await self.ensure_fresh()
        request = SearchRequest(
            query_vector=tuple(query_vector),
            query_text=query_text,
            k=k,
            weights=weights,
            expected_generation=generation,
        )
        try:
            response = await self.worker.submit(request)
        except IndexStaleError as e:
            # Another build was installed between our check and the search
            logger.debug(f"Index changed under search ({e.context}); rebuilding")
            generation = await self.ensure_fresh()
            response = await self.worker.submit(replace(request, expected_generation=generation))
        return list(response.results)

    async def close(self) -> None:
        """Wait for any build in flight so the worker can shut down cleanly."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])
