"""End-to-end tests for lodestar.engine.Lodestar over in-process fakes.

Covers:
- Paragraph-aligned retrieval
- Citation markers pointing into the returned sources
- Answer caching, TTL expiry and persistence across restarts
- Index freshness after ingest and delete
- Degraded search and the no-answer path
"""

import asyncio
from pathlib import Path

import pytest

from fakes import FlakyEmbedding, ScriptedGenerator, VocabularyEmbedding, make_config, make_paragraph
from lodestar.cache import DEFAULT_TTL_SECONDS, PersistentQueryCache
from lodestar.engine import Lodestar
from lodestar.errors import ValidationError
from lodestar.generation import NO_ANSWER
from lodestar.storage import SQLiteChunkStore

ORCHARD = make_paragraph(["apple", "orchard", "harvest"], 798)
PHYSICS = make_paragraph(["quantum", "photon", "laser"], 798)
POLAR = make_paragraph(["tundra", "penguin", "iceberg"], 800)

TRAVEL = (
    "Hotels are capped at 150 EUR per night for managers.\n\n"
    "Taxi receipts must be attached to every claim."
)
PAYROLL = "Payroll runs on the 25th of each month and bonuses are paid quarterly."


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_query_matches_only_its_paragraph(self, engine: Lodestar) -> None:
        result = await engine.ingest("science", "Mixed Notes", "\n\n".join([ORCHARD, PHYSICS, POLAR]))

        sources = await engine.search("quantum photon laser")

        assert result.chunk_count == 3
        assert [s.chunk_id for s in sources] == ["science-c1"]
        assert sources[0].content == PHYSICS
        assert sources[0].document_title == "Mixed Notes"
        assert sources[0].score == pytest.approx(1.0, abs=1e-3)

    @pytest.mark.asyncio
    async def test_exact_chunk_text_ranks_its_chunk_first(self, engine: Lodestar) -> None:
        await engine.ingest("science", "Mixed Notes", "\n\n".join([ORCHARD, PHYSICS, POLAR]))

        sources = await engine.search(PHYSICS)

        assert sources[0].chunk_id == "science-c1"
        assert sources[0].score == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.asyncio
    async def test_new_document_is_searchable_immediately(self, engine: Lodestar) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        assert await engine.search("payroll bonuses") == []

        await engine.ingest("payroll", "Payroll Calendar", PAYROLL)

        sources = await engine.search("payroll bonuses")
        assert [s.document_id for s in sources] == ["payroll"]

    @pytest.mark.asyncio
    async def test_deleted_document_disappears_from_results(self, engine: Lodestar) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        await engine.ingest("payroll", "Payroll Calendar", PAYROLL)
        assert await engine.search("payroll bonuses")

        assert await engine.delete_document("payroll") == 1

        assert await engine.search("payroll bonuses") == []

    @pytest.mark.asyncio
    async def test_search_during_delete_settles_on_persisted_count(self, engine: Lodestar, store) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        await engine.ingest("payroll", "Payroll Calendar", PAYROLL)

        await asyncio.gather(engine.search("hotel limit"), engine.delete_document("payroll"))
        await engine.search("hotel limit")

        stats = await engine.get_stats()
        assert stats["index_generation"] == await store.count_chunks()
        assert not stats["index_stale"]

    @pytest.mark.asyncio
    async def test_embedding_outage_degrades_search_to_empty(self, store, generator, config) -> None:
        kb = await Lodestar(
            config, store=store, embedding_provider=FlakyEmbedding(retryable=False), generator=generator
        ).start()
        try:
            await kb.ingest("travel", "Travel Policy", TRAVEL)
            assert await kb.search("poison question") == []
        finally:
            await kb.close()

    @pytest.mark.asyncio
    async def test_blank_query_is_rejected(self, engine: Lodestar) -> None:
        with pytest.raises(ValidationError):
            await engine.search("   ")
        with pytest.raises(ValidationError):
            await engine.query("")


class TestAnswers:
    @pytest.mark.asyncio
    async def test_citations_index_into_returned_sources(self, engine: Lodestar, generator: ScriptedGenerator) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)

        answer = await engine.query("hotels capped for managers")

        assert answer.answer == generator.answer
        assert "[1]" in answer.answer
        assert answer.sources
        assert generator.seen_sources == [answer.sources]
        assert answer.sources[0].document_id == "travel"
        assert not answer.cached

    @pytest.mark.asyncio
    async def test_stream_emits_sources_then_deltas_then_done(self, engine: Lodestar) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)

        events = [event async for event in engine.query_stream("hotels capped for managers")]

        assert events[0].type == "sources"
        assert events[-1].type == "done"
        assert {e.type for e in events[1:-1]} == {"delta"}
        assert len(events) > 3

    @pytest.mark.asyncio
    async def test_no_match_returns_no_answer_without_generation(
        self, engine: Lodestar, generator: ScriptedGenerator
    ) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)

        first = await engine.query("quarterly zebra migration")
        second = await engine.query("quarterly zebra migration")

        assert first.answer == NO_ANSWER
        assert first.sources == []
        assert generator.answer_calls == 0
        assert not second.cached
        assert await engine.cache.size() == 0


class TestAnswerCache:
    @pytest.mark.asyncio
    async def test_repeated_query_is_served_from_cache(
        self, engine: Lodestar, generator: ScriptedGenerator
    ) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)

        first = await engine.query("hotels capped for managers")
        second = await engine.query("  hotels capped for managers  ")

        assert generator.answer_calls == 1
        assert second.cached
        assert second.answer == first.answer
        assert second.sources == first.sources

    @pytest.mark.asyncio
    async def test_cache_expires_after_a_day(self, engine: Lodestar, generator: ScriptedGenerator, clock) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        await engine.query("hotels capped for managers")

        clock.advance(DEFAULT_TTL_SECONDS + 1)
        again = await engine.query("hotels capped for managers")

        assert generator.answer_calls == 2
        assert not again.cached

    @pytest.mark.asyncio
    async def test_cached_answer_replays_as_one_delta(self, engine: Lodestar, generator: ScriptedGenerator) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        await engine.query("hotels capped for managers")

        events = [event async for event in engine.query_stream("hotels capped for managers")]

        assert [e.type for e in events] == ["sources", "delta", "done"]
        assert all(e.cached for e in events)
        assert events[1].text == generator.answer

    @pytest.mark.asyncio
    async def test_answers_survive_restart_with_sqlite_store(self, config, tmp_path: Path) -> None:
        db_path = str(tmp_path / "kb.db")
        first_run = ScriptedGenerator()
        async with Lodestar(
            config, store=SQLiteChunkStore(db_path), embedding_provider=VocabularyEmbedding(), generator=first_run
        ) as kb:
            assert isinstance(kb.cache, PersistentQueryCache)
            await kb.ingest("travel", "Travel Policy", TRAVEL)
            answer = await kb.query("hotels capped for managers")

        second_run = ScriptedGenerator()
        async with Lodestar(
            config, store=SQLiteChunkStore(db_path), embedding_provider=VocabularyEmbedding(), generator=second_run
        ) as kb:
            again = await kb.query("hotels capped for managers")

        assert first_run.answer_calls == 1
        assert second_run.answer_calls == 0
        assert again.cached
        assert again.answer == answer.answer
        assert again.sources == answer.sources

    @pytest.mark.asyncio
    async def test_clear_cache_forces_regeneration(self, engine: Lodestar, generator: ScriptedGenerator) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        await engine.query("hotels capped for managers")

        assert await engine.clear_cache() == 1
        await engine.query("hotels capped for managers")

        assert generator.answer_calls == 2


class TestConstruction:
    def test_embedding_dimension_must_match_config(self, store, generator) -> None:
        with pytest.raises(ValueError, match="embedding_dim 64"):
            Lodestar(
                make_config(), store=store, embedding_provider=VocabularyEmbedding(dimension=32), generator=generator
            )


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_reflect_store_and_index(self, engine: Lodestar) -> None:
        await engine.ingest("travel", "Travel Policy", TRAVEL)
        stats = await engine.get_stats()
        assert stats["documents"] == 1
        assert stats["chunks"] == 1
        assert stats["index_stale"]

        await engine.search("hotel")
        stats = await engine.get_stats()
        assert stats["index_generation"] == 1
        assert stats["index_size"] == 1
        assert not stats["index_stale"]
        assert stats["embedding_dim"] == 64
