"""Shared fixtures: fast-retry config and an engine wired to in-process fakes."""

import pytest

from fakes import FakeClock, ScriptedGenerator, VocabularyEmbedding, make_config
from lodestar.config import LodestarConfig
from lodestar.engine import Lodestar
from lodestar.storage import InMemoryChunkStore


@pytest.fixture
def config() -> LodestarConfig:
    return make_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def embedding() -> VocabularyEmbedding:
    return VocabularyEmbedding()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def store() -> InMemoryChunkStore:
    return InMemoryChunkStore()


@pytest.fixture
async def engine(config, store, embedding, generator, clock):
    """A started engine over an in-memory store."""
    kb = Lodestar(config, store=store, embedding_provider=embedding, generator=generator, clock=clock)
    await kb.start()
    yield kb
    await kb.close()
