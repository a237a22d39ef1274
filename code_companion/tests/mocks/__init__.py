"""
Test mocks package for Code Companion

Provides deterministic provider payloads for testing without API calls.
"""

import json
from pathlib import Path
from typing import Any, Dict

MOCKS_DIR = Path(__file__).parent


def load_mock(filename: str) -> Dict[str, Any]:
    """Load a mock JSON file."""
    mock_path = MOCKS_DIR / filename
    if not mock_path.exists():
        raise FileNotFoundError(f"Mock file not found: {mock_path}")

    with open(mock_path, "r", encoding="utf-8") as f:
        return json.load(f)


def get_completion(scenario: str = "ok") -> Dict[str, Any]:
    """
    Get a mock chat-completion payload.

    Args:
        scenario: "ok", "no_usage" or "malformed"
    """
    return load_mock("chat_completions.json")[scenario]


def get_openrouter_catalog() -> Dict[str, Any]:
    return load_mock("openrouter_models.json")
