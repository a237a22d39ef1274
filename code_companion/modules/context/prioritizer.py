"""
Context Prioritizer.

Scores chunks against the latest user message and ranks them for the
assembler. Type bonuses are an explicit rule table so they can be tested and
tuned without touching the scoring code.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ..schemas import ChatMessage, ChunkType, ContextChunk, TaskType


MAX_RELEVANCE = 100.0
KEYWORD_WEIGHT = 50.0
RELEVANCE_RANK_WEIGHT = 10.0
MIN_KEYWORD_LENGTH = 4
RECENCY_DECAY_HOURS = 24.0


@dataclass(frozen=True)
class TypeBonusRule:
    chunk_type: ChunkType
    bonus: float
    task_type: Optional[TaskType] = None  # None = any task

    def applies(self, chunk: ContextChunk, task_type: TaskType) -> bool:
        if chunk.type != self.chunk_type:
            return False
        return self.task_type is None or self.task_type == task_type


TYPE_BONUS_RULES: Sequence[TypeBonusRule] = (
    TypeBonusRule(chunk_type=ChunkType.FILE, bonus=20.0, task_type=TaskType.CODING),
    TypeBonusRule(chunk_type=ChunkType.ERROR, bonus=30.0, task_type=TaskType.CODING),
    TypeBonusRule(chunk_type=ChunkType.SELECTION, bonus=25.0),
)


def last_user_message(messages: Sequence[ChatMessage]) -> str:
    for m in reversed(messages):
        if m.role == "user":
            return m.content
    return ""


def keyword_overlap(message: str, content: str) -> float:
    """Fraction of message keywords (len >= 4) that appear in the content.

    A keyword matches a content token when either contains the other.
    """
    keywords = [w for w in message.lower().split() if len(w) >= MIN_KEYWORD_LENGTH]
    if not keywords:
        return 0.0
    tokens = set(content.lower().split())
    matched = sum(1 for w in keywords if any(w in t or t in w for t in tokens))
    return matched / len(keywords)


class ContextPrioritizer:
    """
    Usage:
        prioritizer = ContextPrioritizer(prioritize_recent=True)
        ranked = prioritizer.prioritize(store.chunks, messages, TaskType.CODING)
    """

    def __init__(
        self,
        prioritize_recent: bool = True,
        rules: Sequence[TypeBonusRule] = TYPE_BONUS_RULES,
        clock: Callable[[], float] = time.time,
    ):
        self.prioritize_recent = prioritize_recent
        self.rules = tuple(rules)
        self._clock = clock

    def score(self, chunk: ContextChunk, user_message: str, task_type: TaskType) -> float:
        score = keyword_overlap(user_message, chunk.content) * KEYWORD_WEIGHT
        score += sum(r.bonus for r in self.rules if r.applies(chunk, task_type))
        return min(score, MAX_RELEVANCE)

    def rank_key(self, chunk: ContextChunk, now: float) -> float:
        key = chunk.priority + chunk.relevance_score * RELEVANCE_RANK_WEIGHT
        if self.prioritize_recent:
            age_hours = max(0.0, now - chunk.timestamp) / 3600.0
            key *= math.exp(-age_hours / RECENCY_DECAY_HOURS)
        return key

    def prioritize(
        self,
        chunks: Sequence[ContextChunk],
        messages: Sequence[ChatMessage],
        task_type: TaskType = TaskType.GENERAL,
        now: Optional[float] = None,
    ) -> List[ContextChunk]:
        """Score every chunk in place and return them best-first.

        The sort is stable: equal rank keys keep their input order.
        """
        current = self._clock() if now is None else now
        user_message = last_user_message(messages)
        for chunk in chunks:
            chunk.relevance_score = self.score(chunk, user_message, task_type)
        return sorted(chunks, key=lambda c: self.rank_key(c, current), reverse=True)
