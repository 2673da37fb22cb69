"""Chunk/document store adapters (SQLite and in-memory)."""

import asyncio
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import numpy as np

from .errors import PersistenceError
from .models import CacheEntry, Chunk, Document, DocumentCategory, DocumentStatus, Source

T = TypeVar("T")


class ChunkStore(ABC):
    """Keyed persistence for documents and their chunks.

    Every method is a suspension point. Chunks are returned in the order they
    were first written.
    """

    @abstractmethod
    async def put_document(self, document: Document) -> None:
        """Insert or replace a document record."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def list_documents(self) -> List[Document]:
        ...

    @abstractmethod
    async def delete_document(self, document_id: str) -> int:
        """Delete a document and its chunks. Returns the number of chunks removed."""

    @abstractmethod
    async def put_chunks(self, chunks: Sequence[Chunk]) -> None:
        """Insert a batch of chunks.

        Raises:
            PersistenceError: On any write failure, including duplicate ids
        """

    @abstractmethod
    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        """Fetch chunks by id, preserving the requested order and skipping unknown ids."""

    @abstractmethod
    async def all_chunks(self) -> List[Chunk]:
        ...

    @abstractmethod
    async def count_chunks(self) -> int:
        ...

    async def count_documents(self) -> int:
        return len(await self.list_documents())

    async def close(self) -> None:
        """Release resources."""


class InMemoryChunkStore(ChunkStore):
    """Process-local store, used by tests and demos."""

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._chunks: Dict[str, Chunk] = {}

    async def put_document(self, document: Document) -> None:
        self._documents[document.id] = replace(document, tags=list(document.tags))

    async def get_document(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)

    async def list_documents(self) -> List[Document]:
        return list(self._documents.values())

    async def delete_document(self, document_id: str) -> int:
        self._documents.pop(document_id, None)
        doomed = [cid for cid, c in self._chunks.items() if c.document_id == document_id]
        for cid in doomed:
            del self._chunks[cid]
        return len(doomed)

    async def put_chunks(self, chunks: Sequence[Chunk]) -> None:
        ids = [c.id for c in chunks]
        clashes = [cid for cid in ids if cid in self._chunks]
        if clashes or len(set(ids)) != len(ids):
            raise PersistenceError(f"Duplicate chunk ids: {clashes or ids}")
        for chunk in chunks:
            self._chunks[chunk.id] = chunk

    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        return [self._chunks[cid] for cid in chunk_ids if cid in self._chunks]

    async def all_chunks(self) -> List[Chunk]:
        return list(self._chunks.values())

    async def count_chunks(self) -> int:
        return len(self._chunks)


class SQLiteChunkStore(ChunkStore):
    """SQLite-backed store; blocking calls run in a thread under a lock."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                summary TEXT,
                tags_json TEXT,
                category TEXT NOT NULL,
                upload_date TEXT NOT NULL,
                status TEXT NOT NULL
            )
        """)

        # seq keeps chunks in write order for index builds
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                document_id TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB NOT NULL,
                source_title TEXT,
                tags_json TEXT
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS query_cache (
                query TEXT PRIMARY KEY,
                answer TEXT NOT NULL,
                sources_json TEXT NOT NULL,
                created_at REAL NOT NULL
            )
        """)
        self.conn.commit()

    async def _run(self, fn: Callable[[], T]) -> T:
        def locked() -> T:
            with self._lock:
                try:
                    return fn()
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise PersistenceError(f"SQLite operation failed: {e}") from e

        return await asyncio.to_thread(locked)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            summary=row["summary"] or "",
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
            category=DocumentCategory(row["category"]),
            upload_date=datetime.fromisoformat(row["upload_date"]),
            status=DocumentStatus(row["status"]),
        )

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(
            id=row["id"],
            document_id=row["document_id"],
            content=row["content"],
            embedding=np.frombuffer(row["embedding"], dtype=np.float32).tolist(),
            source_title=row["source_title"] or "",
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
        )

    async def put_document(self, document: Document) -> None:
        def write() -> None:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO documents (
                    id, title, content, summary, tags_json, category, upload_date, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.title,
                    document.content,
                    document.summary,
                    json.dumps(document.tags, ensure_ascii=False),
                    DocumentCategory(document.category).value,
                    document.upload_date.isoformat(),
                    DocumentStatus(document.status).value,
                ),
            )
            self.conn.commit()

        await self._run(write)

    async def get_document(self, document_id: str) -> Optional[Document]:
        def read() -> Optional[Document]:
            row = self.conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return self._row_to_document(row) if row else None

        return await self._run(read)

    async def list_documents(self) -> List[Document]:
        def read() -> List[Document]:
            rows = self.conn.execute("SELECT * FROM documents ORDER BY upload_date").fetchall()
            return [self._row_to_document(row) for row in rows]

        return await self._run(read)

    async def count_documents(self) -> int:
        return await self._run(lambda: self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0])

    async def delete_document(self, document_id: str) -> int:
        def delete() -> int:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            removed = cursor.rowcount
            cursor.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            self.conn.commit()
            return removed

        return await self._run(delete)

    async def put_chunks(self, chunks: Sequence[Chunk]) -> None:
        rows: List[Any] = [
            (
                c.id,
                c.document_id,
                c.content,
                np.asarray(c.embedding, dtype=np.float32).tobytes(),
                c.source_title,
                json.dumps(c.tags, ensure_ascii=False),
            )
            for c in chunks
        ]

        def write() -> None:
            self.conn.executemany(
                """
                INSERT INTO chunks (id, document_id, content, embedding, source_title, tags_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self.conn.commit()

        await self._run(write)

    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        if not chunk_ids:
            return []
        ids = list(chunk_ids)

        def read() -> List[Chunk]:
            placeholders = ",".join("?" for _ in ids)
            rows = self.conn.execute(
                f"SELECT * FROM chunks WHERE id IN ({placeholders})", ids
            ).fetchall()
            by_id = {row["id"]: self._row_to_chunk(row) for row in rows}
            return [by_id[cid] for cid in ids if cid in by_id]

        return await self._run(read)

    async def all_chunks(self) -> List[Chunk]:
        def read() -> List[Chunk]:
            rows = self.conn.execute("SELECT * FROM chunks ORDER BY seq").fetchall()
            return [self._row_to_chunk(row) for row in rows]

        return await self._run(read)

    async def count_chunks(self) -> int:
        return await self._run(lambda: self.conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0])

    # ============ Answer cache ============

    async def get_cached_answer(self, query: str) -> Optional[CacheEntry]:
        def read() -> Optional[CacheEntry]:
            row = self.conn.execute("SELECT * FROM query_cache WHERE query = ?", (query,)).fetchone()
            if row is None:
                return None
            return CacheEntry(
                query=row["query"],
                answer=row["answer"],
                sources=[Source(**s) for s in json.loads(row["sources_json"])],
                created_at=row["created_at"],
            )

        return await self._run(read)

    async def put_cached_answer(self, entry: CacheEntry) -> None:
        sources_json = json.dumps([asdict(s) for s in entry.sources], ensure_ascii=False)

        def write() -> None:
            self.conn.execute(
                "INSERT OR REPLACE INTO query_cache (query, answer, sources_json, created_at) VALUES (?, ?, ?, ?)",
                (entry.query, entry.answer, sources_json, entry.created_at),
            )
            self.conn.commit()

        await self._run(write)

    async def delete_cached_answer(self, query: str) -> None:
        def delete() -> None:
            self.conn.execute("DELETE FROM query_cache WHERE query = ?", (query,))
            self.conn.commit()

        await self._run(delete)

    async def clear_cached_answers(self) -> int:
        def delete() -> int:
            removed = self.conn.execute("SELECT COUNT(*) FROM query_cache").fetchone()[0]
            self.conn.execute("DELETE FROM query_cache")
            self.conn.commit()
            return removed

        return await self._run(delete)

    async def count_cached_answers(self) -> int:
        return await self._run(lambda: self.conn.execute("SELECT COUNT(*) FROM query_cache").fetchone()[0])

    async def close(self) -> None:
        """Close database connection."""
        await self._run(self.conn.close)
