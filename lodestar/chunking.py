"""Recursive text chunking for document ingestion."""

import re
from typing import List, Pattern

# Separator tiers, tried in priority order. Each match ends a part and stays
# attached to it so concatenating the parts reproduces the input.
SEPARATORS: List[Pattern[str]] = [
    re.compile(r"\n[ \t]*\n\s*"),                # paragraph break
    re.compile(r"\n\s*"),                        # line break
    re.compile(r"(?:[.!?](?=\s)|[。！？；])\s*"),  # sentence end
    re.compile(r"\s+"),                          # any whitespace
]


def normalize_text(text: str) -> str:
    """Collapse runs of spaces/tabs and unify line endings."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return re.sub(r"[ \t]+", " ", text)


def _split_keep(fragment: str, pattern: Pattern[str]) -> List[str]:
    """Split after every separator match, keeping the separator on the left part."""
    parts = []
    start = 0
    for match in pattern.finditer(fragment):
        end = match.end()
        if start < end < len(fragment):
            parts.append(fragment[start:end])
            start = end
    parts.append(fragment[start:])
    return [p for p in parts if p.strip()]


def _sliding_window(fragment: str, max_chars: int, overlap_chars: int) -> List[str]:
    """Fixed-width slices; consecutive slices share ``overlap_chars`` characters."""
    step = max_chars - overlap_chars
    windows = []
    for start in range(0, len(fragment), step):
        windows.append(fragment[start:start + max_chars])
        if start + max_chars >= len(fragment):
            break
    return windows


def _split_recursive(fragment: str, max_chars: int, overlap_chars: int, tier: int) -> List[str]:
    if len(fragment.strip()) <= max_chars:
        return [fragment]

    for level in range(tier, len(SEPARATORS)):
        parts = _split_keep(fragment, SEPARATORS[level])
        if len(parts) < 2:
            continue
        out: List[str] = []
        for part in parts:
            if len(part.strip()) > max_chars:
                out.extend(_split_recursive(part, max_chars, overlap_chars, level + 1))
            else:
                out.append(part)
        return out

    # No separator left in an oversized run
    return _sliding_window(fragment.strip(), max_chars, overlap_chars)


def _merge(parts: List[str], max_chars: int) -> List[str]:
    """Greedily merge consecutive parts while the buffer stays within max_chars."""
    chunks = []
    buffer = ""
    for part in parts:
        if buffer and len((buffer + part).strip()) > max_chars:
            chunks.append(buffer.strip())
            buffer = part
        else:
            buffer += part
    if buffer.strip():
        chunks.append(buffer.strip())
    return chunks


def chunk_text(
    text: str,
    *,
    max_chars: int = 800,
    overlap_chars: int = 50,
) -> List[str]:
    """
    Split text into ordered segments of at most ``max_chars`` characters.

    Separators are tried in priority order (paragraph, line, sentence,
    whitespace); a fragment that is still oversized after the last tier is
    cut into fixed-width windows overlapping by ``overlap_chars``.

    Args:
        text: Input text to chunk
        max_chars: Maximum characters per chunk
        overlap_chars: Overlap between fixed-width fallback windows

    Returns:
        List of text chunks; empty for empty or whitespace-only input

    Example:
        >>> chunk_text("First paragraph.\\n\\nSecond one.", max_chars=20)
        ['First paragraph.', 'Second one.']
    """
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if not 0 <= overlap_chars < max_chars:
        raise ValueError(f"overlap_chars ({overlap_chars}) must be in [0, max_chars)")

    text = normalize_text(text)
    if not text.strip():
        return []
    if len(text.strip()) <= max_chars:
        return [text.strip()]

    parts = _split_recursive(text, max_chars, overlap_chars, tier=0)
    return _merge(parts, max_chars)
