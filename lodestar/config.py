"""Configuration models for the Lodestar retrieval core."""

import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class LodestarConfig:
    """Configuration for the Lodestar retrieval core."""

    # Embedding settings
    embedding_provider: str = "openai"  # 'openai', 'huggingface', 'jina'
    embedding_model: Optional[str] = None  # None picks the provider default
    embedding_dim: int = 1536
    embedding_batch_size: int = 5  # small batches keep payloads bounded

    # Retry settings (delay doubles from the base on every attempt)
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_jitter: float = 0.25

    # Chunking settings (characters)
    chunk_size: int = 800
    chunk_overlap: int = 50
    min_document_length: int = 10

    # Persistence settings
    persist_batch_size: int = 100
    persist_yield_seconds: float = 0.02

    # Search settings
    default_k: int = 4
    semantic_weight: float = 0.7
    lexical_weight: float = 0.3
    min_score: float = 0.35

    # Query cache
    cache_ttl_seconds: float = 24 * 60 * 60

    # Generation settings (any OpenAI-compatible chat endpoint)
    chat_model: str = "gpt-4o-mini"
    chat_fallback_model: Optional[str] = "gpt-4o"
    chat_base_url: Optional[str] = None
    chat_temperature: float = 0.1
    summary_input_chars: int = 2000

    # Storage
    db_path: str = "lodestar.db"

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.embedding_dim <= 0:
            raise ValueError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.embedding_batch_size <= 0:
            raise ValueError(
                f"embedding_batch_size must be positive, got {self.embedding_batch_size}"
            )
        if self.retry_max_attempts < 1:
            raise ValueError(f"retry_max_attempts must be >= 1, got {self.retry_max_attempts}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be in [0, chunk_size)"
            )
        if self.persist_batch_size <= 0:
            raise ValueError(
                f"persist_batch_size must be positive, got {self.persist_batch_size}"
            )
        if self.semantic_weight < 0 or self.lexical_weight < 0:
            raise ValueError("search weights must be non-negative")
        if self.semantic_weight + self.lexical_weight <= 0:
            raise ValueError("search weights must not both be zero")
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError(f"min_score must be within [0, 1], got {self.min_score}")
        if self.cache_ttl_seconds <= 0:
            raise ValueError(f"cache_ttl_seconds must be positive, got {self.cache_ttl_seconds}")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "LodestarConfig":
        """
        Build a config from ``LODESTAR_<FIELD>`` environment variables.

        Explicit keyword overrides win over the environment.

        Example:
            >>> cfg = LodestarConfig.from_env({"LODESTAR_CHUNK_SIZE": "600"})
            >>> cfg.chunk_size
            600
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for f in dataclasses.fields(cls):
            raw = environ.get(f"LODESTAR_{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(raw, f.default)

        values.update(overrides)
        return cls(**values)


def _coerce(raw: str, default: Any) -> Any:
    """Coerce an environment string to the type of the field default."""
    if raw.strip().lower() in ("none", "null"):
        return None
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
