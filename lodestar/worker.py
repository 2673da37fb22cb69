"""Dedicated background thread for index builds and hybrid scoring.

The orchestration side talks to the worker only through the request/response
messages below. The index buffer is allocated on the worker thread and never
leaves it; a ``BuildRequest`` hands over the chunk data and the sender keeps
no reference to it afterwards.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from loguru import logger

from .errors import IndexStaleError
from .models import SearchResult
from .scoring import IndexSnapshot, ScoringWeights, build_snapshot, rank


@dataclass(frozen=True)
class BuildRequest:
    ids: Tuple[str, ...]
    contents: Tuple[str, ...]
    vectors: Tuple[Sequence[float], ...]
    dimension: int
    generation: int


@dataclass(frozen=True)
class BuildResponse:
    generation: int
    size: int


@dataclass(frozen=True)
class SearchRequest:
    query_vector: Tuple[float, ...]
    query_text: str
    k: int
    weights: ScoringWeights
    # None accepts whatever snapshot is installed
    expected_generation: Optional[int] = None


@dataclass(frozen=True)
class SearchResponse:
    results: Tuple[SearchResult, ...]
    generation: Optional[int]


WorkerRequest = Union[BuildRequest, SearchRequest]
WorkerResponse = Union[BuildResponse, SearchResponse]


class ScoringWorker:
    """Single-threaded executor that owns the current index snapshot."""

    def __init__(self, thread_name: str = "lodestar-scoring"):
        self.thread_name = thread_name
        self._executor: Optional[ThreadPoolExecutor] = None
        # Only ever read or written on the worker thread
        self._snapshot: Optional[IndexSnapshot] = None

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.thread_name)
            logger.debug(f"Scoring worker {self.thread_name} started")

    async def close(self) -> None:
        """Finish queued work, then stop the thread."""
        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, True)
            logger.debug(f"Scoring worker {self.thread_name} stopped")

    async def submit(self, request: WorkerRequest) -> WorkerResponse:
        """Send one request to the worker thread and await its response."""
        if self._executor is None:
            raise RuntimeError("Scoring worker is not running; call start() first")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._handle, request)

    def _handle(self, request: WorkerRequest) -> WorkerResponse:
        if isinstance(request, BuildRequest):
            return self._build(request)
        if isinstance(request, SearchRequest):
            return self._search(request)
        raise TypeError(f"Unsupported worker request: {type(request).__name__}")

    def _build(self, request: BuildRequest) -> BuildResponse:
        snapshot = build_snapshot(
            request.ids,
            request.contents,
            request.vectors,
            request.dimension,
            request.generation,
        )
        self._snapshot = snapshot
        return BuildResponse(generation=snapshot.generation, size=snapshot.size)

    def _search(self, request: SearchRequest) -> SearchResponse:
        snapshot = self._snapshot
        if snapshot is None:
            return SearchResponse(results=(), generation=None)
        if request.expected_generation is not None and request.expected_generation != snapshot.generation:
            raise IndexStaleError(
                "Installed index does not match the requested generation",
                context={"expected": request.expected_generation, "installed": snapshot.generation},
            )
        results = rank(snapshot, request.query_vector, request.query_text, request.k, request.weights)
        return SearchResponse(results=tuple(results), generation=snapshot.generation)
