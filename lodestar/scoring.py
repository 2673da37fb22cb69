"""Index snapshot construction and hybrid (semantic + lexical) ranking.

Everything here is CPU-bound and runs on the scoring worker thread.
"""

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from loguru import logger

from .models import SearchResult

_TOKEN_SPLIT = re.compile(r"[\W_]+")


@dataclass(frozen=True)
class ScoringWeights:
    semantic: float = 0.7
    lexical: float = 0.3
    min_score: float = 0.35


@dataclass
class IndexSnapshot:
    """
    Flattened in-memory index.

    ``buffer`` holds ``size * dimension`` float32 values, row i being the
    vector of ``ids[i]``. ``generation`` is the persisted chunk count the
    snapshot was built from.
    """
    buffer: np.ndarray
    norms: np.ndarray
    ids: Tuple[str, ...]
    contents: Tuple[str, ...]
    dimension: int
    generation: int

    @property
    def size(self) -> int:
        return len(self.ids)

    @property
    def matrix(self) -> np.ndarray:
        return self.buffer.reshape(self.size, self.dimension)


def build_snapshot(
    ids: Sequence[str],
    contents: Sequence[str],
    vectors: Sequence[Sequence[float]],
    dimension: int,
    generation: int,
) -> IndexSnapshot:
    """
    Copy chunk vectors into one contiguous buffer with parallel id/content arrays.

    Vectors whose length differs from ``dimension`` are left out of the
    snapshot (the generation still counts them, so it keeps matching the
    persisted chunk count).
    """
    rows = [i for i, v in enumerate(vectors) if len(v) == dimension]
    if len(rows) != len(vectors):
        logger.warning(f"Skipping {len(vectors) - len(rows)} chunk(s) with mismatched dimension")

    buffer = np.zeros(len(rows) * dimension, dtype=np.float32)
    for slot, i in enumerate(rows):
        buffer[slot * dimension:(slot + 1) * dimension] = vectors[i]

    norms = np.linalg.norm(buffer.reshape(len(rows), dimension), axis=1)
    return IndexSnapshot(
        buffer=buffer,
        norms=norms,
        ids=tuple(ids[i] for i in rows),
        contents=tuple(contents[i] for i in rows),
        dimension=dimension,
        generation=generation,
    )


def extract_keywords(query: str) -> List[str]:
    """Lowercased query tokens longer than one character, split on whitespace/punctuation."""
    seen = []
    for token in _TOKEN_SPLIT.split(query.lower()):
        if len(token) > 1 and token not in seen:
            seen.append(token)
    return seen


def lexical_score(keywords: Sequence[str], content: str) -> float:
    """Fraction of keywords found as substrings of the content."""
    if not keywords:
        return 0.0
    haystack = content.lower()
    hits = sum(1 for kw in keywords if kw in haystack)
    return min(1.0, hits / len(keywords))


def semantic_scores(snapshot: IndexSnapshot, query_vector: Sequence[float]) -> np.ndarray:
    """Cosine similarity of the query against every row, clipped to [0, 1]."""
    query = np.asarray(query_vector, dtype=np.float32)
    if query.shape != (snapshot.dimension,):
        raise ValueError(
            f"Query vector has dimension {query.shape[-1] if query.ndim else 0}, "
            f"index expects {snapshot.dimension}"
        )

    # Query norm is loop invariant: computed once for all rows
    query_norm = float(np.linalg.norm(query))
    dots = snapshot.matrix @ query
    denominators = snapshot.norms * query_norm
    cosine = np.divide(
        dots,
        denominators,
        out=np.zeros_like(dots),
        where=denominators > 0,
    )
    return np.clip(cosine, 0.0, 1.0)


def rank(
    snapshot: IndexSnapshot,
    query_vector: Sequence[float],
    query_text: str,
    k: int,
    weights: ScoringWeights,
) -> List[SearchResult]:
    """
    Score every chunk and return up to ``k`` results at or above the threshold.

    final = (w_sem * cosine + w_lex * keyword_overlap) / (w_sem + w_lex)

    With the default 0.7/0.3 weights the divisor is 1. Results are sorted by
    descending score; ties keep index order.
    """
    if snapshot.size == 0 or k <= 0:
        return []

    semantic = semantic_scores(snapshot, query_vector)
    keywords = extract_keywords(query_text)
    lexical = np.fromiter(
        (lexical_score(keywords, content) for content in snapshot.contents),
        dtype=np.float32,
        count=snapshot.size,
    )

    total_weight = weights.semantic + weights.lexical
    final = (weights.semantic * semantic + weights.lexical * lexical) / total_weight

    candidates = np.flatnonzero(final >= weights.min_score)
    if candidates.size == 0:
        return []
    order = candidates[np.argsort(-final[candidates], kind="stable")][:k]
    return [SearchResult(chunk_id=snapshot.ids[i], score=float(final[i])) for i in order]
