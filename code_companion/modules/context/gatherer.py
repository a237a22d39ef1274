"""
Context Gatherer.

Pulls fresh context from the editor, the workspace and the diagnostics source
into the chunk store once per turn. Every source is best-effort: a failing
collaborator is logged and the turn continues with whatever was collected.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..collaborators import Diagnostic, DiagnosticsSource, EditorContextSupplier, WorkspaceReader
from ..config import ContextSettings
from ..schemas import ChunkType, ContextChunk, TaskType
from ..tokens import estimate_tokens
from .chunk_store import ContextChunkStore


# Base priority per chunk type.
BASE_PRIORITIES: Dict[ChunkType, int] = {
    ChunkType.SELECTION: 90,
    ChunkType.ERROR: 80,
    ChunkType.FILE: 75,
    ChunkType.WORKSPACE: 60,
    ChunkType.DOCUMENTATION: 50,
}

MANIFEST_GLOB = "{package.json,tsconfig.json,requirements.txt,pyproject.toml,Cargo.toml,go.mod}"
README_GLOB = "{README.md,README.txt,README.rst}"
EXCLUDE_GLOB = "**/node_modules/**"

MANIFEST_LIMIT = 5
MANIFEST_CHARS = 1000
README_CHARS = 2000
ERRORS_PER_FILE = 5


class ContextGatherer:
    """
    Feeds a ContextChunkStore from external collaborators.

    Usage:
        gatherer = ContextGatherer(store, editor=..., workspace=..., diagnostics=...)
        await gatherer.gather(TaskType.CODING)
    """

    def __init__(
        self,
        store: ContextChunkStore,
        editor: Optional[EditorContextSupplier] = None,
        workspace: Optional[WorkspaceReader] = None,
        diagnostics: Optional[DiagnosticsSource] = None,
        settings: Optional[ContextSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.editor = editor
        self.workspace = workspace
        self.diagnostics = diagnostics
        self.settings = settings or ContextSettings()
        self._clock = clock

    def _chunk(self, content: str, chunk_type: ChunkType, source: str, timestamp: float) -> ContextChunk:
        return ContextChunk(
            content=content,
            type=chunk_type,
            priority=BASE_PRIORITIES[chunk_type],
            timestamp=timestamp,
            token_count=estimate_tokens(content),
            source=source,
        )

    async def gather(self, task_type: TaskType = TaskType.GENERAL, now: Optional[float] = None) -> int:
        """Collect one round of context. Returns the store size afterwards."""
        timestamp = self._clock() if now is None else now

        if self.editor is not None and self.settings.include_workspace_context:
            self._add_editor_context(timestamp)

        if self.workspace is not None and self.settings.include_workspace_context:
            self._add_workspace_context(timestamp)

        if self.diagnostics is not None and self.settings.include_error_context:
            self._add_error_context(timestamp)

        self.store.cleanup(now=timestamp)
        logger.debug(f"Gathered context for task={task_type.value}: {len(self.store)} chunk(s) in store")
        return len(self.store)

    def _add_editor_context(self, timestamp: float) -> None:
        try:
            ctx = self.editor.get_editor_context()
        except Exception as e:
            logger.warning(f"Failed to read editor context: {e}")
            return
        if ctx is None:
            return

        if ctx.selected_text.strip():
            self.store.add_chunk(
                self._chunk(ctx.selected_text, ChunkType.SELECTION, f"{ctx.file_path}:selection", timestamp)
            )
        if ctx.surrounding_text.strip():
            self.store.add_chunk(self._chunk(ctx.surrounding_text, ChunkType.FILE, ctx.file_path, timestamp))

    def _read_text(self, path: str) -> Optional[str]:
        raw = self.workspace.read_file(path)
        if raw is None:
            return None
        return raw.decode("utf-8", errors="replace")

    def _add_workspace_context(self, timestamp: float) -> None:
        try:
            for path in self.workspace.find_files(MANIFEST_GLOB, EXCLUDE_GLOB, MANIFEST_LIMIT):
                text = self._read_text(path)
                if text:
                    self.store.add_chunk(self._chunk(text[:MANIFEST_CHARS], ChunkType.WORKSPACE, path, timestamp))

            readmes = self.workspace.find_files(README_GLOB, EXCLUDE_GLOB, 1)
            if readmes:
                text = self._read_text(readmes[0])
                if text:
                    self.store.add_chunk(
                        self._chunk(text[:README_CHARS], ChunkType.DOCUMENTATION, readmes[0], timestamp)
                    )
        except Exception as e:
            logger.warning(f"Failed to gather workspace context: {e}")

    def _add_error_context(self, timestamp: float) -> None:
        try:
            errors = self.diagnostics.list_errors()
        except Exception as e:
            logger.warning(f"Failed to read diagnostics: {e}")
            return

        by_file: "OrderedDict[str, List[Diagnostic]]" = OrderedDict()
        for d in errors:
            by_file.setdefault(d.file, []).append(d)

        for file, diags in by_file.items():
            summary = "\n".join(f"{d.file}:{d.line}: {d.message}" for d in diags[:ERRORS_PER_FILE])
            self.store.add_chunk(
                self._chunk(f"Recent errors:\n{summary}", ChunkType.ERROR, f"diagnostics:{file}", timestamp)
            )
