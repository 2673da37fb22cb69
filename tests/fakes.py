"""In-process stand-ins for the embedding provider, chat model and store."""

import asyncio
import re
from typing import Dict, List, Optional, Sequence

from lodestar.config import LodestarConfig
from lodestar.embeddings import BaseEmbeddingProvider
from lodestar.errors import PersistenceError, ProviderError
from lodestar.generation import AnswerGenerator
from lodestar.models import Chunk, DocumentInsights, Source
from lodestar.storage import InMemoryChunkStore

_WORD = re.compile(r"[a-z]+")


class VocabularyEmbedding(BaseEmbeddingProvider):
    """Bag-of-words vectors: every new word gets the next free dimension."""

    name = "vocabulary"

    def __init__(self, dimension: int = 64):
        super().__init__("vocabulary-test")
        self._dimension = dimension
        self.vocabulary: Dict[str, int] = {}
        self.calls: List[List[str]] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    def vectorize(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for word in _WORD.findall(text.lower()):
            if word not in self.vocabulary:
                self.vocabulary[word] = len(self.vocabulary) % self._dimension
            vector[self.vocabulary[word]] += 1.0
        return vector

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vectorize(t) for t in texts]


class FlakyEmbedding(VocabularyEmbedding):
    """Fails the first ``failures`` calls, and every call containing ``poison``."""

    name = "flaky"

    def __init__(self, failures: int = 0, poison: str = "poison", retryable: bool = True):
        super().__init__()
        self.failures = failures
        self.poison = poison
        self.retryable = retryable

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise ProviderError("temporary outage", retryable=True, provider=self.name)
        if any(self.poison in t for t in texts):
            raise ProviderError("input rejected", retryable=self.retryable, provider=self.name)
        return [self.vectorize(t) for t in texts]


DEFAULT_INSIGHTS = DocumentInsights(
    summary="Travel expenses need receipts and manager approval.",
    entities=["Finance", "Travel"],
    rules=["Hotels are capped at 150 EUR per night", "Receipts are mandatory"],
    suggested_questions=["What is the hotel limit?"],
)


class ScriptedGenerator(AnswerGenerator):
    """Streams a fixed answer word by word and counts every call."""

    def __init__(
        self,
        answer: str = "Hotels are capped at 150 EUR per night [1].",
        insights: Optional[DocumentInsights] = None,
        fail_insights: bool = False,
    ):
        self.answer = answer
        self.insights = insights or DEFAULT_INSIGHTS
        self.fail_insights = fail_insights
        self.answer_calls = 0
        self.insight_calls = 0
        self.seen_sources: List[List[Source]] = []

    async def stream_answer(self, query: str, sources: List[Source]):
        self.answer_calls += 1
        self.seen_sources.append(list(sources))
        for i, word in enumerate(self.answer.split(" ")):
            yield word if i == 0 else " " + word

    async def extract_insights(self, title: str, text: str) -> DocumentInsights:
        self.insight_calls += 1
        if self.fail_insights:
            raise ProviderError("model unavailable", provider="scripted")
        return self.insights


class FailingStore(InMemoryChunkStore):
    """Raises on the ``fail_on_batch``-th chunk write (1-based)."""

    def __init__(self, fail_on_batch: int):
        super().__init__()
        self.fail_on_batch = fail_on_batch
        self.batches = 0

    async def put_chunks(self, chunks: Sequence[Chunk]) -> None:
        self.batches += 1
        if self.batches == self.fail_on_batch:
            raise PersistenceError("disk full")
        await super().put_chunks(chunks)


class GatedStore(InMemoryChunkStore):
    """Blocks ``all_chunks`` until ``release`` is set, to hold a build open."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def all_chunks(self) -> List[Chunk]:
        self.entered.set()
        await self.release.wait()
        return await super().all_chunks()


class LaggingStore(GatedStore):
    """Reads its rows first, then blocks, so a build returns what was there on entry."""

    async def all_chunks(self) -> List[Chunk]:
        rows = await InMemoryChunkStore.all_chunks(self)
        self.entered.set()
        await self.release.wait()
        return rows


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_paragraph(words: Sequence[str], length: int) -> str:
    """Whole words cycled from ``words`` up to ``length`` characters."""
    text = ""
    i = 0
    while True:
        word = words[i % len(words)]
        candidate = f"{text} {word}" if text else word
        if len(candidate) > length:
            return text
        text = candidate
        i += 1


def make_config(**overrides) -> LodestarConfig:
    """Config with a 64-dim embedding space and no retry or persistence delays."""
    values = dict(
        embedding_dim=64,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=0.0,
        persist_yield_seconds=0.0,
        chat_fallback_model=None,
    )
    values.update(overrides)
    return LodestarConfig(**values)
