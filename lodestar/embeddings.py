"""Embedding providers and the batching embedding client."""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import httpx
import openai
from loguru import logger
from openai import AsyncOpenAI

from .errors import ProviderError, classify_http_error, classify_openai_error
from .retry import RetryPolicy, call_with_retry

ProgressCallback = Callable[[int, int], None]


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    name = "provider"

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch of texts in one provider call.

        Returns one vector per input, in input order. Failures are raised as
        ``ProviderError`` (or ``CapacityError``) so callers can decide whether
        to retry.
        """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return embedding dimension for this model."""

    async def close(self) -> None:
        """Release network resources held by the provider."""


class OpenAIEmbedding(BaseEmbeddingProvider):
    """OpenAI embedding provider (async client, retries handled by the caller)."""

    name = "openai"

    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        super().__init__(model)
        self.api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.client = AsyncOpenAI(api_key=self.api_key, base_url=base_url, timeout=timeout, max_retries=0)

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1536)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except openai.OpenAIError as e:
            raise classify_openai_error(e, provider=self.name) from e

        # Sort by index to ensure correct order
        data = sorted(response.data, key=lambda x: x.index)
        return [item.embedding for item in data]

    async def close(self) -> None:
        await self.client.close()


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    HuggingFace sentence-transformers embedding provider (local, free).

    Requires: pip install "lodestar-rag[local]"

    The model is loaded lazily and ``encode`` runs in a worker thread so the
    event loop stays responsive.

    Example:
        >>> embedder = HuggingFaceEmbedding("all-MiniLM-L6-v2")
        >>> vectors = await embedder.embed(["Hello world"])
    """

    name = "huggingface"

    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-MiniLM-L12-v2": 384,
        "all-mpnet-base-v2": 768,
        "paraphrase-multilingual-MiniLM-L12-v2": 384,
        "BAAI/bge-small-zh-v1.5": 512,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-base-en-v1.5": 768,
    }

    def __init__(self, model: str = "all-MiniLM-L6-v2", hf_token: Optional[str] = None):
        super().__init__(model)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._model = None
        self._dimension: Optional[int] = None

    def _load_model(self):
        """Lazy-load the model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers not installed. "
                    'Run: pip install "lodestar-rag[local]"'
                )
            self._model = SentenceTransformer(self.model, token=self.hf_token)
            self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is not None:
            return self._dimension
        if self.model in self.MODEL_DIMENSIONS:
            return self.MODEL_DIMENSIONS[self.model]
        self._load_model()
        return self._dimension or 384

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load_model()
        return model.encode(texts, convert_to_numpy=True).tolist()

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            return await asyncio.to_thread(self._encode, texts)
        except (RuntimeError, ValueError) as e:
            raise ProviderError(f"local model failed: {e}", retryable=False, provider=self.name) from e


class JinaEmbedding(BaseEmbeddingProvider):
    """
    Jina AI embedding provider (API-based).

    Requires: JINA_API_KEY environment variable
    """

    name = "jina"
    API_URL = "https://api.jina.ai/v1/embeddings"

    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-base-zh": 768,
        "jina-embeddings-v2-small-en": 512,
    }

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        jina_api_key: Optional[str] = None,
        task: Optional[str] = "retrieval.passage",
        timeout: float = 30.0,
    ):
        super().__init__(model)
        self.api_key = jina_api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass jina_api_key parameter."
            )
        self.task = task
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1024)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {"model": self.model, "input": texts}
        if self.task:
            payload["task"] = self.task

        try:
            response = await self.client.post(self.API_URL, headers=headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e, provider=self.name) from e

        try:
            data = sorted(response.json()["data"], key=lambda item: item["index"])
            return [item["embedding"] for item in data]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"malformed embedding response: {e!r}", provider=self.name) from e

    async def close(self) -> None:
        await self.client.aclose()


def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs,
) -> BaseEmbeddingProvider:
    """
    Factory function to create embedding providers.

    Args:
        provider: Provider name ('openai', 'huggingface', 'jina')
        model: Model name (uses provider default if not specified)
        **kwargs: Additional provider-specific arguments

    Example:
        >>> embedder = create_embedding_provider("huggingface", "all-MiniLM-L6-v2")
    """
    provider = provider.lower()

    if provider in ("openai", "openai-embedding"):
        return OpenAIEmbedding(model or "text-embedding-3-small", **kwargs)
    elif provider in ("huggingface", "hf", "sentence-transformers"):
        return HuggingFaceEmbedding(model or "all-MiniLM-L6-v2", **kwargs)
    elif provider in ("jina", "jina-ai"):
        return JinaEmbedding(model or "jina-embeddings-v3", **kwargs)
    else:
        raise ValueError(
            f"Unknown provider: {provider}. "
            f"Supported: 'openai', 'huggingface', 'jina'"
        )


@dataclass
class EmbeddingResult:
    """Vectors in input order plus the positions that fell back to zero vectors."""
    vectors: List[List[float]]
    degraded: List[int] = field(default_factory=list)


class EmbeddingClient:
    """
    Batches texts through a provider with retry and per-item degradation.

    Texts are sent ``batch_size`` at a time; a progress callback fires with
    ``(processed, total)`` after each batch. A batch that still fails after
    retries is re-sent item by item, and any item that keeps failing is
    replaced by a zero vector instead of aborting the whole request.
    """

    def __init__(
        self,
        provider: BaseEmbeddingProvider,
        dimension: int,
        *,
        batch_size: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.provider = provider
        self.dimension = dimension
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()

    async def _call(self, texts: List[str]) -> List[List[float]]:
        vectors = await self.provider.embed(texts)
        if len(vectors) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}",
                provider=self.provider.name,
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self.dimension:
                raise ProviderError(
                    f"Expected {self.dimension} dimensions, got {len(vector)} for text {i}",
                    provider=self.provider.name,
                )
        return [list(map(float, vector)) for vector in vectors]

    async def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        return await call_with_retry(
            lambda: self._call(texts),
            self.retry_policy,
            description=f"{self.provider.name} embedding of {len(texts)} text(s)",
        )

    async def _embed_one_by_one(self, texts: List[str], offset: int, degraded: List[int]) -> List[List[float]]:
        vectors = []
        for i, text in enumerate(texts):
            try:
                vectors.extend(await self._call_with_retry([text]))
            except ProviderError as e:
                logger.warning(f"Embedding of item {offset + i} degraded to a zero vector: {e}")
                degraded.append(offset + i)
                vectors.append([0.0] * self.dimension)
        return vectors

    async def embed(
        self,
        texts: Sequence[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> EmbeddingResult:
        """
        Embed texts in order.

        Args:
            texts: Non-empty strings; surrounding whitespace is trimmed
            on_progress: Optional callback receiving ``(processed, total)``

        Returns:
            EmbeddingResult with one vector per input

        Raises:
            ValueError: If any text is empty after trimming
        """
        cleaned = [t.strip() for t in texts]
        if any(not t for t in cleaned):
            raise ValueError("Cannot embed empty text")

        total = len(cleaned)
        vectors: List[List[float]] = []
        degraded: List[int] = []

        for start in range(0, total, self.batch_size):
            batch = cleaned[start:start + self.batch_size]
            if len(batch) == 1:
                vectors.extend(await self._embed_one_by_one(batch, start, degraded))
            else:
                try:
                    vectors.extend(await self._call_with_retry(batch))
                except ProviderError as e:
                    logger.warning(
                        f"Batch {start}-{start + len(batch) - 1} failed ({e}); embedding items individually"
                    )
                    vectors.extend(await self._embed_one_by_one(batch, start, degraded))

            processed = min(start + self.batch_size, total)
            logger.debug(f"Embedded {processed}/{total} texts with {self.provider.model}")
            if on_progress:
                on_progress(processed, total)

        return EmbeddingResult(vectors=vectors, degraded=degraded)

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query; failures propagate as ``ProviderError``."""
        text = text.strip()
        if not text:
            raise ValueError("Cannot embed empty text")
        return (await self._call_with_retry([text]))[0]
