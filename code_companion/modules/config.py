"""
Code Companion - Configuration

YAML file (config.yaml) validated into pydantic sections, with a handful of
COMPANION_* environment overrides applied on top. API keys never live here;
they come from the secret store.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .schemas import RetryConfig


class ContextSettings(BaseModel):
    max_tokens: int = Field(default=8000, gt=0)  # hard cap on the context target
    prioritize_recent: bool = True
    include_workspace_context: bool = True
    include_error_context: bool = True
    compression_ratio: float = Field(default=0.7, ge=0.0, le=1.0)
    max_chunks: int = Field(default=200, gt=0)
    max_chunk_age_seconds: float = Field(default=2 * 60 * 60, gt=0)
    surrounding_lines: int = Field(default=20, ge=0)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class CacheSettings(BaseModel):
    max_size: int = Field(default=100, gt=0)
    ttl_seconds: float = Field(default=30 * 60, gt=0)
    timing_window: int = Field(default=20, gt=0)
    content_prefix_chars: int = Field(default=500, gt=0)


class CostSettings(BaseModel):
    daily_limit: float = Field(default=5.0, ge=0.0)
    storage_key: str = "costTracker"
    state_file: Optional[str] = None  # JSON file backing the key-value store


class ProviderSettings(BaseModel):
    default_model: Optional[str] = "deepseek-chat"
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    catalog_ttl_seconds: float = Field(default=5 * 60, gt=0)
    default_temperature: float = 0.7
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "https://github.com/code-companion/code-companion"
    openrouter_title: str = "Code Companion"


class CompanionConfig(BaseModel):
    context: ContextSettings = Field(default_factory=ContextSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cost: CostSettings = Field(default_factory=CostSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)


# env var -> (section, key, caster)
ENV_OVERRIDES = {
    "COMPANION_DAILY_LIMIT": ("cost", "daily_limit", float),
    "COMPANION_STATE_FILE": ("cost", "state_file", str),
    "COMPANION_DEFAULT_MODEL": ("providers", "default_model", str),
    "COMPANION_CONTEXT_MAX_TOKENS": ("context", "max_tokens", int),
}


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using defaults.")
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"Config root must be a mapping, got {type(data).__name__}. Using defaults.")
        return {}

    logger.info(f"Loaded configuration from: {config_path}")
    return data


def _apply_env_overrides(raw: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for var, (section, key, caster) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            cast_value = caster(value)
        except ValueError:
            logger.warning(f"Ignoring {var}={value!r}: not a valid {caster.__name__}")
            continue
        section_data = raw.get(section) or {}
        section_data[key] = cast_value
        raw[section] = section_data
    return raw


def load_config(
    config_path: Union[str, Path] = "config.yaml",
    environ: Optional[Dict[str, str]] = None,
) -> CompanionConfig:
    """Load config.yaml, apply COMPANION_* overrides, validate.

    Invalid values are reported and replaced by defaults rather than aborting
    startup.
    """

    raw = _apply_env_overrides(_read_yaml(Path(config_path)), environ)
    try:
        return CompanionConfig.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Invalid configuration, using defaults: {e}")
        return CompanionConfig()
