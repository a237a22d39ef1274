"""
Code Companion - External Collaborators

Interfaces the pipeline consumes (editor, workspace files, diagnostics,
secrets, key-value persistence) plus small local implementations used by the
CLI, the HTTP app and the test suite.
"""

from __future__ import annotations

import fnmatch
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from loguru import logger


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class EditorContext:
    """What the active editor can tell us about the user's focus."""
    selected_text: str
    surrounding_text: str
    file_path: str
    language_id: str


@dataclass(frozen=True)
class Diagnostic:
    file: str
    line: int
    message: str


# =============================================================================
# INTERFACES
# =============================================================================


@runtime_checkable
class EditorContextSupplier(Protocol):
    def get_editor_context(self) -> Optional[EditorContext]: ...


@runtime_checkable
class WorkspaceReader(Protocol):
    def read_file(self, path: str) -> Optional[bytes]: ...

    def find_files(self, glob: str, exclude_glob: Optional[str], limit: int) -> List[str]: ...


@runtime_checkable
class DiagnosticsSource(Protocol):
    def list_errors(self) -> List[Diagnostic]: ...


@runtime_checkable
class SecretStore(Protocol):
    def get_api_key(self, provider_name: str) -> Optional[str]: ...


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...


# =============================================================================
# WORKSPACE
# =============================================================================


_BRACE_RE = re.compile(r"\{([^{}]*)\}")


def expand_braces(pattern: str) -> List[str]:
    """Expand one level of ``{a,b}`` alternation (VS Code glob style)."""
    m = _BRACE_RE.search(pattern)
    if not m:
        return [pattern]
    head, tail = pattern[: m.start()], pattern[m.end():]
    out: List[str] = []
    for alt in m.group(1).split(","):
        out.extend(expand_braces(f"{head}{alt}{tail}"))
    return out


class LocalWorkspaceReader:
    """Filesystem-backed workspace rooted at ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def read_file(self, path: str) -> Optional[bytes]:
        target = (self.root / path).resolve()
        if self.root not in target.parents and target != self.root:
            logger.warning(f"Refusing to read outside workspace: {path}")
            return None
        if not target.is_file():
            return None
        return target.read_bytes()

    def _excluded(self, rel: str, exclude_glob: Optional[str]) -> bool:
        if not exclude_glob:
            return False
        return any(
            fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(f"/{rel}", pat)
            for pat in expand_braces(exclude_glob)
        )

    def find_files(self, glob: str, exclude_glob: Optional[str], limit: int) -> List[str]:
        found: List[str] = []
        for pattern in expand_braces(glob):
            for p in sorted(self.root.glob(pattern)):
                if not p.is_file():
                    continue
                rel = p.relative_to(self.root).as_posix()
                if rel in found or self._excluded(rel, exclude_glob):
                    continue
                found.append(rel)
                if len(found) >= limit:
                    return found
        return found


# =============================================================================
# EDITOR / DIAGNOSTICS
# =============================================================================


LANGUAGE_IDS = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".md": "markdown",
}


class FileEditorContext:
    """Simulates an editor focused on ``path`` at ``line`` (1-based)."""

    def __init__(
        self,
        path: Path,
        line: int = 1,
        radius: int = 20,
        selection: Optional[Tuple[int, int]] = None,
    ):
        self.path = Path(path)
        self.line = max(1, line)
        self.radius = radius
        self.selection = selection

    def get_editor_context(self) -> Optional[EditorContext]:
        if not self.path.is_file():
            return None

        lines = self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        idx = min(self.line, max(len(lines), 1)) - 1
        start = max(0, idx - self.radius)
        end = min(len(lines), idx + self.radius + 1)

        selected = ""
        if self.selection:
            s, e = self.selection
            selected = "\n".join(lines[max(0, s - 1): e])

        return EditorContext(
            selected_text=selected,
            surrounding_text="\n".join(lines[start:end]),
            file_path=str(self.path),
            language_id=LANGUAGE_IDS.get(self.path.suffix.lower(), "plaintext"),
        )


class StaticDiagnostics:
    def __init__(self, errors: Sequence[Diagnostic] = ()):
        self._errors = list(errors)

    def list_errors(self) -> List[Diagnostic]:
        return list(self._errors)


# =============================================================================
# SECRETS / PERSISTENCE
# =============================================================================


DEFAULT_KEY_ENV = {
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


class EnvSecretStore:
    """Reads provider API keys from environment variables."""

    def __init__(self, env_keys: Optional[Dict[str, str]] = None):
        self.env_keys = {**DEFAULT_KEY_ENV, **(env_keys or {})}

    def get_api_key(self, provider_name: str) -> Optional[str]:
        var = self.env_keys.get(provider_name)
        if not var:
            return None
        value = os.environ.get(var, "").strip()
        return value or None


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class JsonFileKeyValueStore:
    """Whole-file JSON store. Writes go through a temp file and rename."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[Any]:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self.path)


# =============================================================================
# BUNDLE
# =============================================================================


@dataclass
class Collaborators:
    """Everything the pipeline consumes from its host. Unset pieces are skipped."""
    secrets: SecretStore
    editor: Optional[EditorContextSupplier] = None
    workspace: Optional[WorkspaceReader] = None
    diagnostics: Optional[DiagnosticsSource] = None
    kv_store: Optional[KeyValueStore] = None
