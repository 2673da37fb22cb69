"""FastAPI REST API wrapper for the Lodestar retrieval engine."""

import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .engine import Lodestar, create_lodestar
from .errors import CapacityError, LodestarError, PersistenceError, ProviderError, ValidationError
from .models import Document, DocumentCategory, QueryEvent, Source


# ============ Request/Response Models ============

class IngestRequest(BaseModel):
    """Request body for document ingestion."""
    document_id: Optional[str] = Field(default=None, description="Stable id (content hash if omitted)")
    title: str = Field(..., min_length=1, description="Document title")
    text: str = Field(..., description="Extracted plain text")
    category: DocumentCategory = Field(default=DocumentCategory.ACCOUNTING_MANUAL)


class IngestResponse(BaseModel):
    """Response from ingestion."""
    document_id: str
    summary: str
    entity_tags: List[str]
    extracted_rules: List[str]
    suggested_questions: List[str]
    chunks: int
    degraded_chunks: List[int]


class QueryRequest(BaseModel):
    """Request body for search and question answering."""
    query: str = Field(..., min_length=1, description="Natural-language question")
    top_k: int = Field(default=4, ge=1, le=50, description="Number of sources")


class SourceItem(BaseModel):
    """A cited source; answer markers [n] refer to the n-th item."""
    chunk_id: str
    document_id: str
    document_title: str
    content_excerpt: str
    score: float


class QueryResponse(BaseModel):
    answer: str
    sources: List[SourceItem]
    cached: bool


class SearchResponse(BaseModel):
    results: List[SourceItem]
    query: str
    count: int


class DocumentItem(BaseModel):
    id: str
    title: str
    summary: str
    tags: List[str]
    category: DocumentCategory
    upload_date: str
    status: str


class StatsResponse(BaseModel):
    """Engine statistics."""
    documents: int
    chunks: int
    index_generation: Optional[int]
    index_size: int
    index_stale: bool
    embedding_model: str
    embedding_dim: int
    cache: Dict[str, Any]


def _source_item(source: Source) -> SourceItem:
    return SourceItem(
        chunk_id=source.chunk_id,
        document_id=source.document_id,
        document_title=source.document_title,
        content_excerpt=source.excerpt(),
        score=source.score,
    )


def _document_item(document: Document) -> DocumentItem:
    return DocumentItem(
        id=document.id,
        title=document.title,
        summary=document.summary,
        tags=document.tags,
        category=document.category,
        upload_date=document.upload_date.isoformat(),
        status=document.status.value,
    )


def _event_line(event: QueryEvent) -> str:
    payload: Dict[str, Any] = {"type": event.type, "cached": event.cached}
    if event.type == "sources":
        payload["sources"] = [_source_item(s).model_dump() for s in event.sources]
    elif event.type == "delta":
        payload["text"] = event.text
    return json.dumps(payload, ensure_ascii=False) + "\n"


_STATUS_CODES = [
    (ValidationError, 422),
    (CapacityError, 413),
    (ProviderError, 502),
    (PersistenceError, 500),
]


# ============ App Factory ============

def create_app(
    db_path: str = "lodestar.db",
    *,
    factory: Optional[Callable[[], Lodestar]] = None,
    **kwargs,
) -> FastAPI:
    """
    Create a FastAPI app wrapping a Lodestar instance.

    Args:
        db_path: Path to the SQLite database
        factory: Builds the engine (defaults to ``create_lodestar``)
        **kwargs: Additional arguments for create_lodestar

    Returns:
        FastAPI app instance
    """

    lodestar_instance: Optional[Lodestar] = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal lodestar_instance
        engine = factory() if factory else create_lodestar(db_path, **kwargs)
        lodestar_instance = await engine.start()
        yield
        await lodestar_instance.close()
        lodestar_instance = None

    app = FastAPI(
        title="Lodestar Knowledge API",
        description="Document ingestion and cited question answering over hybrid search",
        version="1.0.0",
        lifespan=lifespan,
    )

    def get_lodestar() -> Lodestar:
        if lodestar_instance is None:
            raise HTTPException(status_code=503, detail="Lodestar not initialized")
        return lodestar_instance

    @app.exception_handler(LodestarError)
    async def lodestar_error_handler(request: Request, exc: LodestarError):
        status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
        return JSONResponse(status_code=status, content={"detail": exc.message, "error": type(exc).__name__})

    # ============ Endpoints ============

    @app.post("/ingest", response_model=IngestResponse, tags=["Ingestion"])
    async def ingest_document(request: IngestRequest):
        """
        Ingest a document.

        Text is chunked, summarized, embedded and persisted; the vector index
        is rebuilt on the next search.
        """
        result = await get_lodestar().ingest(
            request.document_id,
            request.title,
            request.text,
            category=request.category,
        )
        return IngestResponse(
            document_id=result.document_id,
            summary=result.summary,
            entity_tags=result.entity_tags,
            extracted_rules=result.extracted_rules,
            suggested_questions=result.suggested_questions,
            chunks=result.chunk_count,
            degraded_chunks=result.degraded_chunks,
        )

    @app.post("/query", response_model=QueryResponse, tags=["Query"])
    async def query(request: QueryRequest):
        """Answer a question with bracketed citations into ``sources``."""
        answer = await get_lodestar().query(request.query, request.top_k)
        return QueryResponse(
            answer=answer.answer,
            sources=[_source_item(s) for s in answer.sources],
            cached=answer.cached,
        )

    @app.post("/query/stream", tags=["Query"])
    async def query_stream(request: QueryRequest):
        """Stream an answer as newline-delimited JSON events."""
        lodestar = get_lodestar()

        async def lines():
            async for event in lodestar.query_stream(request.query, request.top_k):
                yield _event_line(event)

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    @app.post("/search", response_model=SearchResponse, tags=["Query"])
    async def search(request: QueryRequest):
        """Hybrid search without answer generation."""
        sources = await get_lodestar().search(request.query, request.top_k)
        return SearchResponse(
            results=[_source_item(s) for s in sources],
            query=request.query,
            count=len(sources),
        )

    @app.get("/documents", response_model=List[DocumentItem], tags=["Documents"])
    async def list_documents():
        """List ingested documents."""
        return [_document_item(d) for d in await get_lodestar().list_documents()]

    @app.get("/documents/{document_id}", response_model=DocumentItem, tags=["Documents"])
    async def get_document(document_id: str):
        document = await get_lodestar().get_document(document_id)
        if document is None:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        return _document_item(document)

    @app.delete("/documents/{document_id}", tags=["Documents"])
    async def delete_document(document_id: str):
        """Delete a document and all its chunks."""
        lodestar = get_lodestar()
        if await lodestar.get_document(document_id) is None:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        deleted = await lodestar.delete_document(document_id)
        return {"deleted": deleted, "document_id": document_id}

    @app.get("/stats", response_model=StatsResponse, tags=["Management"])
    async def get_stats():
        """Get engine statistics including cache info."""
        return StatsResponse(**await get_lodestar().get_stats())

    @app.post("/cache/clear", tags=["Cache"])
    async def clear_cache():
        """Clear the answer cache."""
        return {"cleared": True, "entries_cleared": await get_lodestar().clear_cache()}

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "lodestar"}

    return app
