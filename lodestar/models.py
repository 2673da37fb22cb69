"""Data models for the Lodestar retrieval core."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class DocumentCategory(str, Enum):
    POLICY = "policy"
    ACCOUNTING_MANUAL = "accounting_manual"
    BUSINESS_RULE = "business_rule"


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class IngestStage(str, Enum):
    """Stages of the ingestion pipeline, in execution order."""
    VALIDATING = "validating"
    CHUNKING = "chunking"
    METADATA_EXTRACTING = "metadata_extracting"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    INDEX_INVALIDATED = "index_invalidated"
    DONE = "done"
    FAILED = "failed"


def chunk_id_for(document_id: str, ordinal: int) -> str:
    """Deterministic chunk id derived from the owning document and ordinal."""
    return f"{document_id}-c{ordinal}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """A free-form document registered in the knowledge base."""
    id: str
    title: str
    content: str
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    category: DocumentCategory = DocumentCategory.ACCOUNTING_MANUAL
    upload_date: datetime = field(default_factory=_utcnow)
    status: DocumentStatus = DocumentStatus.PROCESSING


@dataclass
class Chunk:
    """A bounded text segment of a document with its embedding."""
    id: str
    document_id: str
    content: str
    embedding: List[float]
    source_title: str
    tags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SearchResult:
    """A single scored match produced by the hybrid scorer."""
    chunk_id: str
    score: float  # in [0, 1]


@dataclass(frozen=True)
class Source:
    """A hydrated search result as shown to callers and cited by answers."""
    chunk_id: str
    document_id: str
    document_title: str
    content: str
    score: float

    def excerpt(self, max_chars: int = 300) -> str:
        if len(self.content) <= max_chars:
            return self.content
        return self.content[:max_chars].rstrip() + "..."


@dataclass
class QueryAnswer:
    """Answer text plus the ordered sources its citation markers point into."""
    answer: str
    sources: List[Source] = field(default_factory=list)
    cached: bool = False


@dataclass
class QueryEvent:
    """One event of a streamed answer: 'sources', then 'delta'*, then 'done'."""
    type: str
    text: str = ""
    sources: List[Source] = field(default_factory=list)
    cached: bool = False


@dataclass
class CacheEntry:
    query: str
    answer: str
    sources: List[Source]
    created_at: float


@dataclass
class DocumentInsights:
    """Output of the metadata-extraction collaborator."""
    summary: str
    entities: List[str] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)
    suggested_questions: List[str] = field(default_factory=list)


@dataclass
class IngestProgress:
    stage: IngestStage
    message: str
    processed: Optional[int] = None
    total: Optional[int] = None


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""
    document_id: str
    summary: str
    entity_tags: List[str]
    extracted_rules: List[str]
    suggested_questions: List[str]
    chunk_count: int
    degraded_chunks: List[int] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_chunks)
