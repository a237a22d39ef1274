"""
Context Assembler.

Builds the final message list for one model call: reserves response space,
computes the context budget left after the conversation, fits prioritized
chunks into it (compressing when a chunk does not fit whole) and prepends
them as a single sectioned system message.

Only supplemental context is ever cut; user-authored messages pass through
untouched.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from ..config import ContextSettings
from ..schemas import AssembledContext, ChatMessage, ChunkType, ContextChunk, ModelConfig, TaskType
from ..tokens import estimate_tokens, estimate_total
from .chunk_store import ContextChunkStore
from .gatherer import ContextGatherer
from .prioritizer import ContextPrioritizer


# 20% of the model window is left for the response.
CONTEXT_TARGET_SHARE = 0.8
MIN_CONTEXT_SHARE = 0.3

# Lines kept by compression: declarations, imports, comments, markers.
COMPRESSION_KEEP_SUBSTRINGS: Tuple[str, ...] = (
    "function",
    "def ",
    "class",
    "import",
    "export",
    "const",
    "let",
    "var",
    "//",
    "TODO",
    "FIXME",
)
COMPRESSION_KEEP_PREFIXES: Tuple[str, ...] = ("*", "#")


@dataclass(frozen=True)
class Section:
    title: str
    chunk_types: Tuple[ChunkType, ...]
    show_source: bool = False


SECTIONS: Tuple[Section, ...] = (
    Section("Project Context", (ChunkType.WORKSPACE,)),
    Section("Current File Context", (ChunkType.FILE, ChunkType.SELECTION), show_source=True),
    Section("Current Issues", (ChunkType.ERROR,)),
    Section("Documentation", (ChunkType.DOCUMENTATION,)),
)


def compress_content(content: str, fallback_ratio: float = 0.7) -> str:
    """Keep structurally meaningful lines; if none qualify, keep a prefix."""
    kept = []
    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if any(s in stripped for s in COMPRESSION_KEEP_SUBSTRINGS) or stripped.startswith(COMPRESSION_KEEP_PREFIXES):
            kept.append(line)

    if kept:
        return "\n".join(kept)
    return content[: int(len(content) * fallback_ratio)]


def context_budget(max_tokens: int, hard_cap: int, message_tokens: int) -> Tuple[int, int]:
    """Return (target_context_tokens, available_for_context)."""
    target = min(math.floor(max_tokens * CONTEXT_TARGET_SHARE), hard_cap)
    available = max(target - message_tokens, math.floor(target * MIN_CONTEXT_SHARE))
    return target, available


def build_context_message(chunks: Sequence[ContextChunk]) -> str:
    grouped: Dict[ChunkType, List[ContextChunk]] = {}
    for c in chunks:
        grouped.setdefault(c.type, []).append(c)

    sections: List[str] = []
    for section in SECTIONS:
        members = [c for t in section.chunk_types for c in grouped.get(t, [])]
        if not members:
            continue
        if section.show_source:
            body = "\n\n".join(f"From {c.source}:\n{c.content}" for c in members)
        else:
            body = "\n\n".join(c.content for c in members)
        sections.append(f"## {section.title}\n{body}")

    return "\n\n".join(sections)


class ContextAssembler:
    """
    Usage:
        assembler = ContextAssembler(store, prioritizer, gatherer=gatherer)
        result = await assembler.optimize(messages, model_config, TaskType.CODING)
    """

    def __init__(
        self,
        store: ContextChunkStore,
        prioritizer: ContextPrioritizer,
        gatherer: Optional[ContextGatherer] = None,
        settings: Optional[ContextSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.prioritizer = prioritizer
        self.gatherer = gatherer
        self.settings = settings or ContextSettings()
        self._clock = clock

    async def optimize(
        self,
        messages: Sequence[ChatMessage],
        model_config: ModelConfig,
        task_type: TaskType = TaskType.GENERAL,
        now: Optional[float] = None,
    ) -> AssembledContext:
        message_tokens = estimate_total(m.content for m in messages)

        if any(m.context_embedded for m in messages):
            logger.debug("Conversation already carries embedded context; passing through")
            return AssembledContext(
                optimized_messages=list(messages),
                context_summary="embedded context preserved",
                tokens_used=0,
                message_tokens=message_tokens,
                available_for_context=0,
                compression_applied=False,
            )

        current = self._clock() if now is None else now
        if self.gatherer is not None:
            await self.gatherer.gather(task_type, now=current)

        _, available = context_budget(model_config.max_tokens, self.settings.max_tokens, message_tokens)
        ranked = self.prioritizer.prioritize(self.store.chunks, messages, task_type, now=current)
        included, summary, tokens_used, compressed = self._fit(ranked, available)

        optimized: List[ChatMessage] = []
        context_text = build_context_message(included)
        if context_text:
            optimized.append(ChatMessage(role="system", content=context_text, timestamp=datetime.now()))
        optimized.extend(messages)

        logger.debug(
            f"Assembled context: {len(included)}/{len(ranked)} chunk(s), "
            f"{tokens_used}/{available} tokens, compression={compressed}"
        )

        return AssembledContext(
            optimized_messages=optimized,
            context_summary=", ".join(summary),
            tokens_used=tokens_used,
            message_tokens=message_tokens,
            available_for_context=available,
            compression_applied=compressed,
        )

    def _fit(
        self, ranked: Sequence[ContextChunk], available: int
    ) -> Tuple[List[ContextChunk], List[str], int, bool]:
        included: List[ContextChunk] = []
        summary: List[str] = []
        used = 0
        compressed_any = False

        for chunk in ranked:
            if used + chunk.token_count <= available:
                included.append(chunk)
                used += chunk.token_count
                summary.append(f"{chunk.type.value}: {chunk.source}")
                continue

            if self.settings.compression_ratio <= 0:
                continue

            compressed = compress_content(chunk.content, self.settings.compression_ratio)
            tokens = estimate_tokens(compressed)
            if used + tokens <= available:
                included.append(chunk.model_copy(update={"content": compressed, "token_count": tokens}))
                used += tokens
                compressed_any = True
                summary.append(f"{chunk.type.value} (compressed): {chunk.source}")

        return included, summary, used, compressed_any
