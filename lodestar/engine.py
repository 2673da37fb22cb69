"""Main Lodestar retrieval engine orchestrator."""

import hashlib
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from loguru import logger

from .cache import PersistentQueryCache, QueryCache
from .config import LodestarConfig
from .embeddings import BaseEmbeddingProvider, EmbeddingClient, create_embedding_provider
from .errors import ValidationError
from .generation import NO_ANSWER, AnswerGenerator, OpenAIGenerator
from .index import VectorIndex
from .ingestion import IngestionOrchestrator, ProgressCallback
from .models import (
    Document,
    DocumentCategory,
    IngestResult,
    QueryAnswer,
    QueryEvent,
    Source,
)
from .retry import RetryPolicy
from .scoring import ScoringWeights
from .search import SearchEngine
from .storage import ChunkStore, SQLiteChunkStore
from .worker import ScoringWorker


def make_document_id(text: str) -> str:
    """Stable document id from a content hash."""
    return hashlib.sha256(text.encode()).hexdigest()[:16]


class Lodestar:
    """
    Knowledge-retrieval engine: ingestion, hybrid search and cited answers.

    Use as an async context manager, or call ``start()`` / ``close()``:

        >>> async with create_lodestar("kb.db") as kb:
        ...     await kb.ingest("travel-policy", "Travel Policy", text)
        ...     answer = await kb.query("What is the hotel limit?")
    """

    def __init__(
        self,
        config: LodestarConfig,
        *,
        store: Optional[ChunkStore] = None,
        embedding_provider: Optional[BaseEmbeddingProvider] = None,
        generator: Optional[AnswerGenerator] = None,
        cache: Optional[QueryCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        retry_policy = RetryPolicy.from_config(config)

        self.embedding_provider = embedding_provider or create_embedding_provider(
            config.embedding_provider, config.embedding_model
        )
        if self.embedding_provider.dimension != config.embedding_dim:
            raise ValueError(
                f"embedding_dim {config.embedding_dim} does not match "
                f"{self.embedding_provider.model} ({self.embedding_provider.dimension} dims)"
            )
        self.store = store or SQLiteChunkStore(config.db_path)
        self.generator = generator or OpenAIGenerator(
            model=config.chat_model,
            fallback_model=config.chat_fallback_model,
            base_url=config.chat_base_url,
            temperature=config.chat_temperature,
            summary_input_chars=config.summary_input_chars,
            retry_policy=retry_policy,
        )

        self.embedder = EmbeddingClient(
            self.embedding_provider,
            config.embedding_dim,
            batch_size=config.embedding_batch_size,
            retry_policy=retry_policy,
        )
        self.worker = ScoringWorker()
        self.index = VectorIndex(self.store, self.worker, config.embedding_dim)
        self.search_engine = SearchEngine(
            self.embedder,
            self.index,
            self.store,
            ScoringWeights(
                semantic=config.semantic_weight,
                lexical=config.lexical_weight,
                min_score=config.min_score,
            ),
            default_k=config.default_k,
        )
        if cache is None and isinstance(self.store, SQLiteChunkStore):
            cache = PersistentQueryCache(self.store, config.cache_ttl_seconds, clock=clock)
        self.cache = cache or QueryCache(config.cache_ttl_seconds, clock=clock)
        self.ingestion = IngestionOrchestrator(
            config, self.store, self.embedder, self.index, self.generator
        )

    # ============ Lifecycle ============

    async def start(self) -> "Lodestar":
        self.worker.start()
        return self

    async def close(self) -> None:
        """Stop the scoring worker and close providers and the store."""
        await self.index.close()
        await self.worker.close()
        await self.embedding_provider.close()
        await self.generator.close()
        await self.store.close()

    async def __aenter__(self) -> "Lodestar":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ============ Ingestion ============

    async def ingest(
        self,
        document_id: Optional[str],
        title: str,
        text: str,
        *,
        category: DocumentCategory = DocumentCategory.ACCOUNTING_MANUAL,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """
        Ingest a document into the knowledge base.

        Args:
            document_id: Stable id (derived from the text hash if None)
            title: Document title
            text: Full plain text
            category: Knowledge-base category
            on_progress: Optional stage/batch progress callback

        Returns:
            IngestResult with summary, entity tags, extracted rules and
            suggested questions
        """
        return await self.ingestion.ingest(
            document_id or make_document_id(text),
            title,
            text,
            category=category,
            on_progress=on_progress,
        )

    async def delete_document(self, document_id: str) -> int:
        """
        Delete a document and all its chunks.

        Returns:
            Number of chunks deleted
        """
        removed = await self.store.delete_document(document_id)
        self.index.invalidate()
        logger.info(f"Deleted document {document_id} ({removed} chunks)")
        return removed

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self.store.get_document(document_id)

    async def list_documents(self) -> List[Document]:
        return await self.store.list_documents()

    # ============ Retrieval ============

    @staticmethod
    def _clean_query(query: str) -> str:
        cleaned = query.strip()
        if not cleaned:
            raise ValidationError("Query must not be empty")
        return cleaned

    async def search(self, query: str, top_k: Optional[int] = None) -> List[Source]:
        """Hybrid search without answer generation."""
        return await self.search_engine.retrieve(self._clean_query(query), top_k)

    async def query_stream(self, query: str, top_k: Optional[int] = None) -> AsyncIterator[QueryEvent]:
        """
        Answer a question, streaming the text.

        Yields a ``sources`` event first, then ``delta`` events with answer
        text, then ``done``. Citation markers in the text index into the
        sources of the first event. Cache hits replay the stored answer as
        a single delta.
        """
        query = self._clean_query(query)

        entry = await self.cache.get(query)
        if entry is not None:
            yield QueryEvent(type="sources", sources=list(entry.sources), cached=True)
            yield QueryEvent(type="delta", text=entry.answer, cached=True)
            yield QueryEvent(type="done", cached=True)
            return

        sources = await self.search_engine.retrieve(query, top_k)
        yield QueryEvent(type="sources", sources=list(sources))

        if not sources:
            yield QueryEvent(type="delta", text=NO_ANSWER)
            yield QueryEvent(type="done")
            return

        parts = []
        async for delta in self.generator.stream_answer(query, sources):
            parts.append(delta)
            yield QueryEvent(type="delta", text=delta)

        await self.cache.put(query, "".join(parts), sources)
        yield QueryEvent(type="done")

    async def query(self, query: str, top_k: Optional[int] = None) -> QueryAnswer:
        """Answer a question with citations, using the query cache."""
        answer = QueryAnswer(answer="")
        parts = []
        async for event in self.query_stream(query, top_k):
            if event.type == "sources":
                answer.sources = event.sources
                answer.cached = event.cached
            elif event.type == "delta":
                parts.append(event.text)
        answer.answer = "".join(parts)
        return answer

    async def clear_cache(self) -> int:
        return await self.cache.clear()

    # ============ Introspection ============

    async def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        chunk_count = await self.store.count_chunks()
        return {
            "documents": await self.store.count_documents(),
            "chunks": chunk_count,
            "index_generation": self.index.generation,
            "index_size": self.index.size,
            "index_stale": self.index.is_stale(chunk_count),
            "embedding_model": self.embedding_provider.model,
            "embedding_dim": self.config.embedding_dim,
            "cache": await self.cache.stats(),
        }


def create_lodestar(
    db_path: str = "lodestar.db",
    *,
    embedding_provider: str = "openai",
    embedding_model: Optional[str] = None,
    embedding_dim: Optional[int] = None,
    chat_model: str = "gpt-4o-mini",
    **config_overrides: Any,
) -> Lodestar:
    """
    Create a Lodestar instance with sensible defaults.

    Example:
        >>> kb = create_lodestar("kb.db", embedding_provider="huggingface",
        ...                      embedding_model="all-MiniLM-L6-v2")
    """
    provider = create_embedding_provider(embedding_provider, embedding_model)
    config = LodestarConfig.from_env(
        db_path=db_path,
        embedding_provider=embedding_provider,
        embedding_model=provider.model,
        embedding_dim=embedding_dim or provider.dimension,
        chat_model=chat_model,
        **config_overrides,
    )
    return Lodestar(config, embedding_provider=provider)
