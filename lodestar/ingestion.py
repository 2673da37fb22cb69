"""Document ingestion pipeline.

Validating -> Chunking -> MetadataExtracting -> Embedding -> Persisting ->
IndexInvalidated -> Done, with Failed reachable from Validating and
Persisting.
"""

import asyncio
from typing import Callable, List, Optional

from loguru import logger

from .chunking import chunk_text
from .config import LodestarConfig
from .embeddings import EmbeddingClient
from .errors import LodestarError, PersistenceError, ValidationError
from .generation import AnswerGenerator
from .index import VectorIndex
from .models import (
    Chunk,
    Document,
    DocumentCategory,
    DocumentInsights,
    DocumentStatus,
    IngestProgress,
    IngestResult,
    IngestStage,
    chunk_id_for,
)
from .storage import ChunkStore

ProgressCallback = Callable[[IngestProgress], None]

PLACEHOLDER_SUMMARY_CHARS = 200
MAX_SUMMARY_RULES = 3


def placeholder_insights(text: str) -> DocumentInsights:
    """Summary used when metadata extraction fails."""
    return DocumentInsights(summary=text.strip()[:PLACEHOLDER_SUMMARY_CHARS] + "...")


def enrich_summary(insights: DocumentInsights) -> str:
    if not insights.rules:
        return insights.summary
    return insights.summary + "\n\n[Key rules]: " + "; ".join(insights.rules[:MAX_SUMMARY_RULES])


class IngestionOrchestrator:
    """Sequences chunking, metadata extraction, embedding, persistence and index invalidation."""

    def __init__(
        self,
        config: LodestarConfig,
        store: ChunkStore,
        embedder: EmbeddingClient,
        index: VectorIndex,
        generator: AnswerGenerator,
    ):
        self.config = config
        self.store = store
        self.embedder = embedder
        self.index = index
        self.generator = generator

    @staticmethod
    def _emit(
        on_progress: Optional[ProgressCallback],
        stage: IngestStage,
        message: str,
        processed: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        if processed is None:
            logger.info(f"[{stage.value}] {message}")
        if on_progress:
            on_progress(IngestProgress(stage=stage, message=message, processed=processed, total=total))

    async def ingest(
        self,
        document_id: str,
        title: str,
        text: str,
        *,
        category: DocumentCategory = DocumentCategory.ACCOUNTING_MANUAL,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """
        Ingest one document.

        Args:
            document_id: Stable id; chunk ids derive from it
            title: Human-readable title, denormalized onto every chunk
            text: Full extracted text
            category: Knowledge-base category
            on_progress: Optional callback fired at each stage transition and
                after every embedding/persistence batch

        Returns:
            IngestResult with the extracted metadata

        Raises:
            ValidationError: If the text is shorter than the minimum length
            PersistenceError: If a store write fails; batches written before
                the failure stay persisted
        """
        emit = self._emit

        # Validating
        emit(on_progress, IngestStage.VALIDATING, f"Validating {title!r}")
        if not text or len(text.strip()) < self.config.min_document_length:
            emit(on_progress, IngestStage.FAILED, "Text is too short to ingest")
            raise ValidationError(
                f"Extracted text is too short (minimum {self.config.min_document_length} characters)",
                context={"document_id": document_id, "length": len(text.strip()) if text else 0},
            )

        # Chunking
        emit(on_progress, IngestStage.CHUNKING, "Splitting text into chunks")
        segments = chunk_text(
            text,
            max_chars=self.config.chunk_size,
            overlap_chars=self.config.chunk_overlap,
        )

        # MetadataExtracting
        emit(on_progress, IngestStage.METADATA_EXTRACTING, "Extracting summary and entities")
        insights = await self._extract_insights(title, text)

        # Embedding
        emit(on_progress, IngestStage.EMBEDDING, f"Embedding {len(segments)} chunks")
        embedded = await self.embedder.embed(
            segments,
            on_progress=lambda done, total: emit(
                on_progress, IngestStage.EMBEDDING, f"Embedded {done}/{total}", done, total
            ),
        )
        if embedded.degraded:
            logger.warning(
                f"Document {document_id}: {len(embedded.degraded)} chunk(s) stored with zero vectors"
            )

        # Persisting
        emit(on_progress, IngestStage.PERSISTING, f"Saving {len(segments)} chunks")
        document = Document(
            id=document_id,
            title=title,
            content=text,
            summary=enrich_summary(insights),
            tags=list(insights.entities),
            category=category,
            status=DocumentStatus.PROCESSING,
        )
        try:
            replaced = await self.store.delete_document(document_id)
            if replaced:
                logger.info(f"Replacing {replaced} existing chunks of document {document_id}")
            await self.store.put_document(document)
            await self._persist_chunks(document, segments, embedded.vectors, on_progress)
            document.status = DocumentStatus.READY
            await self.store.put_document(document)
        except PersistenceError as e:
            logger.error(f"Persisting document {document_id} failed: {e}")
            emit(on_progress, IngestStage.FAILED, f"Store write failed: {e}")
            # Batches already written are visible to searches
            self.index.invalidate()
            await self._mark_failed(document)
            raise

        # IndexInvalidated
        self.index.invalidate()
        emit(on_progress, IngestStage.INDEX_INVALIDATED, "Vector index marked for rebuild")

        emit(on_progress, IngestStage.DONE, f"Ingested {len(segments)} chunks from {title!r}")
        return IngestResult(
            document_id=document_id,
            summary=document.summary,
            entity_tags=list(insights.entities),
            extracted_rules=list(insights.rules),
            suggested_questions=list(insights.suggested_questions),
            chunk_count=len(segments),
            degraded_chunks=list(embedded.degraded),
        )

    async def _extract_insights(self, title: str, text: str) -> DocumentInsights:
        try:
            return await self.generator.extract_insights(title, text)
        except (LodestarError, ValueError) as e:
            logger.warning(f"Metadata extraction for {title!r} failed, using placeholder summary: {e}")
            return placeholder_insights(text)

    async def _persist_chunks(
        self,
        document: Document,
        segments: List[str],
        vectors: List[List[float]],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        total = len(segments)
        batch_size = self.config.persist_batch_size
        for start in range(0, total, batch_size):
            end = min(start + batch_size, total)
            batch = [
                Chunk(
                    id=chunk_id_for(document.id, j),
                    document_id=document.id,
                    content=segments[j],
                    embedding=vectors[j],
                    source_title=document.title,
                    tags=list(document.tags),
                )
                for j in range(start, end)
            ]
            await self.store.put_chunks(batch)
            self._emit(on_progress, IngestStage.PERSISTING, f"Saved {end}/{total}", end, total)
            # Yield between batches so other requests get a turn
            await asyncio.sleep(self.config.persist_yield_seconds)

    async def _mark_failed(self, document: Document) -> None:
        document.status = DocumentStatus.FAILED
        try:
            await self.store.put_document(document)
        except PersistenceError as e:
            logger.error(f"Could not mark document {document.id} as failed: {e}")
