"""Contract tests shared by the in-memory and SQLite chunk stores."""

from pathlib import Path

import pytest

from lodestar.errors import PersistenceError
from lodestar.models import Chunk, Document, DocumentCategory, DocumentStatus
from lodestar.storage import InMemoryChunkStore, SQLiteChunkStore


def make_chunk(chunk_id: str, document_id: str = "doc", vector=None) -> Chunk:
    return Chunk(
        id=chunk_id,
        document_id=document_id,
        content=f"content of {chunk_id}",
        embedding=vector or [0.5, 0.25, -1.0],
        source_title="Expense Policy",
        tags=["Finance"],
    )


@pytest.fixture(params=["memory", "sqlite"])
async def chunk_store(request, tmp_path: Path):
    if request.param == "memory":
        store = InMemoryChunkStore()
    else:
        store = SQLiteChunkStore(str(tmp_path / "kb.db"))
    yield store
    await store.close()


class TestDocuments:
    @pytest.mark.asyncio
    async def test_put_and_get_document(self, chunk_store) -> None:
        document = Document(
            id="doc",
            title="Expense Policy",
            content="Full text",
            summary="Summary",
            tags=["Finance", "Travel"],
            category=DocumentCategory.POLICY,
        )
        await chunk_store.put_document(document)

        loaded = await chunk_store.get_document("doc")

        assert loaded.title == "Expense Policy"
        assert loaded.tags == ["Finance", "Travel"]
        assert loaded.category == DocumentCategory.POLICY
        assert loaded.status == DocumentStatus.PROCESSING
        assert loaded.upload_date == document.upload_date

    @pytest.mark.asyncio
    async def test_put_document_upserts(self, chunk_store) -> None:
        document = Document(id="doc", title="Draft", content="text")
        await chunk_store.put_document(document)
        document.status = DocumentStatus.READY
        await chunk_store.put_document(document)

        assert (await chunk_store.get_document("doc")).status == DocumentStatus.READY
        assert await chunk_store.count_documents() == 1

    @pytest.mark.asyncio
    async def test_missing_document_is_none(self, chunk_store) -> None:
        assert await chunk_store.get_document("nope") is None


class TestChunks:
    @pytest.mark.asyncio
    async def test_chunks_roundtrip_in_write_order(self, chunk_store) -> None:
        await chunk_store.put_chunks([make_chunk("b"), make_chunk("a")])
        await chunk_store.put_chunks([make_chunk("c")])

        chunks = await chunk_store.all_chunks()

        assert [c.id for c in chunks] == ["b", "a", "c"]
        assert chunks[0].embedding == [0.5, 0.25, -1.0]
        assert chunks[0].tags == ["Finance"]
        assert await chunk_store.count_chunks() == 3

    @pytest.mark.asyncio
    async def test_get_chunks_preserves_request_order_and_skips_unknown(self, chunk_store) -> None:
        await chunk_store.put_chunks([make_chunk("a"), make_chunk("b"), make_chunk("c")])

        chunks = await chunk_store.get_chunks(["c", "missing", "a"])

        assert [c.id for c in chunks] == ["c", "a"]

    @pytest.mark.asyncio
    async def test_duplicate_chunk_id_is_a_persistence_error(self, chunk_store) -> None:
        await chunk_store.put_chunks([make_chunk("a")])

        with pytest.raises(PersistenceError):
            await chunk_store.put_chunks([make_chunk("b"), make_chunk("a")])
        assert await chunk_store.count_chunks() == 1

    @pytest.mark.asyncio
    async def test_delete_document_removes_its_chunks_only(self, chunk_store) -> None:
        await chunk_store.put_document(Document(id="doc", title="T", content="text"))
        await chunk_store.put_chunks([make_chunk("a"), make_chunk("b"), make_chunk("x", document_id="other")])

        removed = await chunk_store.delete_document("doc")

        assert removed == 2
        assert await chunk_store.get_document("doc") is None
        assert [c.id for c in await chunk_store.all_chunks()] == ["x"]


class TestSQLitePersistence:
    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path: Path) -> None:
        path = str(tmp_path / "kb.db")
        store = SQLiteChunkStore(path)
        await store.put_document(Document(id="doc", title="T", content="text"))
        await store.put_chunks([make_chunk("a")])
        await store.close()

        reopened = SQLiteChunkStore(path)
        try:
            assert await reopened.count_chunks() == 1
            assert (await reopened.get_document("doc")).title == "T"
        finally:
            await reopened.close()
