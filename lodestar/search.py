"""Search engine implementation (hybrid semantic + keyword)."""

from typing import List, Optional

from loguru import logger

from .embeddings import EmbeddingClient
from .errors import LodestarError
from .index import VectorIndex
from .models import SearchResult, Source
from .scoring import ScoringWeights
from .storage import ChunkStore


class SearchEngine:
    """Embeds queries, ranks chunks on the scoring worker and hydrates sources."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        index: VectorIndex,
        store: ChunkStore,
        weights: Optional[ScoringWeights] = None,
        default_k: int = 4,
    ):
        self.embedder = embedder
        self.index = index
        self.store = store
        self.weights = weights or ScoringWeights()
        self.default_k = default_k

    async def hybrid_search(
        self,
        query: str,
        k: Optional[int] = None,
        weights: Optional[ScoringWeights] = None,
    ) -> List[SearchResult]:
        """
        Rank chunks by 0.7 * cosine + 0.3 * keyword overlap (default weights).

        Args:
            query: Search query text
            k: Maximum number of results
            weights: Override the engine's weights and threshold

        Returns:
            Up to k (chunk_id, score) pairs, best first, all at or above the
            minimum score
        """
        query_vector = await self.embedder.embed_query(query)
        return await self.vector_search(query_vector, query, k=k, weights=weights)

    async def vector_search(
        self,
        query_vector: List[float],
        query: str,
        k: Optional[int] = None,
        weights: Optional[ScoringWeights] = None,
    ) -> List[SearchResult]:
        """Rank with a precomputed query vector."""
        return await self.index.search(
            query_vector,
            query,
            k or self.default_k,
            weights or self.weights,
        )

    async def hydrate(self, results: List[SearchResult]) -> List[Source]:
        """Attach chunk records to results, dropping chunks deleted since ranking."""
        chunks = {c.id: c for c in await self.store.get_chunks([r.chunk_id for r in results])}
        sources = []
        for result in results:
            chunk = chunks.get(result.chunk_id)
            if chunk is None:
                continue
            sources.append(Source(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                document_title=chunk.source_title,
                content=chunk.content,
                score=result.score,
            ))
        return sources

    async def retrieve(self, query: str, k: Optional[int] = None) -> List[Source]:
        """
        Hybrid search plus hydration. Failures degrade to an empty list.
        """
        try:
            results = await self.hybrid_search(query, k=k)
            return await self.hydrate(results)
        except (LodestarError, ValueError) as e:
            logger.warning(f"Search for {query!r} failed, returning no results: {e}")
            return []
