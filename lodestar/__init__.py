"""
Lodestar — knowledge retrieval for accounting teams

Turns free-form accounting documents into cited answers:
- Recursive, separator-aware chunking with overlap
- Batched embedding with retry, jitter and per-item fallback
- Flat in-memory vector index built off the event loop, single-flight
  rebuilds and generation-checked scoring
- Hybrid ranking (cosine similarity + keyword coverage)
- Streamed answers whose [n] markers index into the returned sources
- 24-hour answer cache keyed by the trimmed question
- SQLite persistence, REST API (FastAPI) and CLI
"""

from .config import LodestarConfig
from .errors import (
    CapacityError,
    IndexStaleError,
    LodestarError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from .models import (
    Chunk,
    Document,
    DocumentCategory,
    DocumentStatus,
    IngestProgress,
    IngestResult,
    IngestStage,
    QueryAnswer,
    QueryEvent,
    SearchResult,
    Source,
)
from .chunking import chunk_text
from .embeddings import (
    BaseEmbeddingProvider,
    EmbeddingClient,
    HuggingFaceEmbedding,
    JinaEmbedding,
    OpenAIEmbedding,
    create_embedding_provider,
)
from .retry import RetryPolicy, call_with_retry
from .scoring import ScoringWeights
from .storage import ChunkStore, InMemoryChunkStore, SQLiteChunkStore
from .index import VectorIndex
from .search import SearchEngine
from .cache import PersistentQueryCache, QueryCache
from .generation import AnswerGenerator, OpenAIGenerator
from .engine import Lodestar, create_lodestar
from .log import configure_logging

__version__ = "1.0.0"
__all__ = [
    # Core
    "LodestarConfig",
    "Lodestar",
    "create_lodestar",
    "configure_logging",
    # Models
    "Document",
    "DocumentCategory",
    "DocumentStatus",
    "Chunk",
    "SearchResult",
    "Source",
    "QueryAnswer",
    "QueryEvent",
    "IngestProgress",
    "IngestResult",
    "IngestStage",
    # Errors
    "LodestarError",
    "ValidationError",
    "ProviderError",
    "CapacityError",
    "PersistenceError",
    "IndexStaleError",
    # Chunking & Embeddings
    "chunk_text",
    "BaseEmbeddingProvider",
    "OpenAIEmbedding",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "EmbeddingClient",
    "create_embedding_provider",
    "RetryPolicy",
    "call_with_retry",
    # Components
    "ChunkStore",
    "InMemoryChunkStore",
    "SQLiteChunkStore",
    "VectorIndex",
    "ScoringWeights",
    "SearchEngine",
    "QueryCache",
    "PersistentQueryCache",
    "AnswerGenerator",
    "OpenAIGenerator",
]
