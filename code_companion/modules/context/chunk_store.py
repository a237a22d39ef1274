"""
Context Chunk Store.

Holds typed, timestamped, sourced context fragments between turns, with
near-duplicate replacement, a size cap and age-based purge.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..schemas import ContextChunk


DEFAULT_MAX_CHUNKS = 200
DEFAULT_MAX_AGE_SECONDS = 2 * 60 * 60
DEFAULT_SIMILARITY_THRESHOLD = 0.8


def character_similarity(a: str, b: str) -> float:
    """Share of the shorter string's characters that occur in the longer one,
    relative to the longer string's length.

    Approximate: short unrelated strings over a common alphabet can score high.
    """
    shorter, longer = (a, b) if len(a) < len(b) else (b, a)
    if not longer:
        return 1.0
    alphabet = set(longer)
    matches = sum(1 for ch in shorter if ch in alphabet)
    return matches / len(longer)


class ContextChunkStore:
    """
    In-memory chunk list owned by one session.

    Usage:
        store = ContextChunkStore()
        store.add_chunk(chunk)
        store.cleanup()
    """

    def __init__(
        self,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.max_chunks = max_chunks
        self.max_age_seconds = max_age_seconds
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._chunks: List[ContextChunk] = []

    @property
    def chunks(self) -> List[ContextChunk]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    def _find_duplicate(self, chunk: ContextChunk) -> Optional[int]:
        for i, existing in enumerate(self._chunks):
            if (
                existing.type == chunk.type
                and existing.source == chunk.source
                and character_similarity(existing.content, chunk.content) > self.similarity_threshold
            ):
                return i
        return None

    def add_chunk(self, chunk: ContextChunk) -> None:
        idx = self._find_duplicate(chunk)
        if idx is not None:
            if chunk.timestamp > self._chunks[idx].timestamp:
                self._chunks[idx] = chunk
        else:
            self._chunks.append(chunk)

        if len(self._chunks) > self.max_chunks:
            # Keep the newest; stable sort leaves equal timestamps in insertion order.
            newest = sorted(self._chunks, key=lambda c: c.timestamp, reverse=True)[: self.max_chunks]
            keep = {id(c) for c in newest}
            dropped = len(self._chunks) - len(newest)
            self._chunks = [c for c in self._chunks if id(c) in keep]
            logger.debug(f"Chunk cap reached, dropped {dropped} oldest chunk(s)")

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop chunks older than ``max_age_seconds``. Returns how many were removed."""
        current = self._clock() if now is None else now
        cutoff = current - self.max_age_seconds
        before = len(self._chunks)
        self._chunks = [c for c in self._chunks if c.timestamp >= cutoff]
        removed = before - len(self._chunks)
        if removed:
            logger.debug(f"Purged {removed} stale context chunk(s)")
        return removed

    def get_stats(self) -> Dict[str, object]:
        by_type: Dict[str, int] = {}
        total_tokens = 0
        for c in self._chunks:
            by_type[c.type.value] = by_type.get(c.type.value, 0) + 1
            total_tokens += c.token_count

        return {
            "total_chunks": len(self._chunks),
            "chunks_by_type": by_type,
            "total_tokens": total_tokens,
            "oldest_chunk": min((c.timestamp for c in self._chunks), default=None),
            "newest_chunk": max((c.timestamp for c in self._chunks), default=None),
        }

    def reset(self) -> None:
        self._chunks = []
