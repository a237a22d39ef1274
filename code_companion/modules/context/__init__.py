"""
Context pipeline for model prompts.

Components:
- ContextChunkStore: typed, sourced chunks with dedupe, cap and age purge
- ContextGatherer: pulls editor, workspace and diagnostics context into the store
- ContextPrioritizer: scores and ranks chunks for the current turn
- ContextAssembler: fits ranked chunks into the model's token budget
"""

from .chunk_store import ContextChunkStore, character_similarity
from .gatherer import BASE_PRIORITIES, ContextGatherer
from .prioritizer import TYPE_BONUS_RULES, ContextPrioritizer, TypeBonusRule
from .assembler import ContextAssembler, build_context_message, compress_content, context_budget

__all__ = [
    "ContextChunkStore",
    "character_similarity",
    "BASE_PRIORITIES",
    "ContextGatherer",
    "TYPE_BONUS_RULES",
    "ContextPrioritizer",
    "TypeBonusRule",
    "ContextAssembler",
    "build_context_message",
    "compress_content",
    "context_budget",
]
