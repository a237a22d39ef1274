from __future__ import annotations

from typing import List

from ..schemas import ModelConfig, TokenPricing
from .base import BaseModelProvider


DEEPSEEK_PRICING = TokenPricing(input=0.0014, output=0.0028)

DEEPSEEK_MODELS: List[ModelConfig] = [
    ModelConfig(
        id="deepseek-chat",
        name="DeepSeek Chat",
        provider="deepseek",
        max_tokens=4096,
        cost_per_1k_tokens=DEEPSEEK_PRICING,
        capabilities=["chat", "code-analysis", "debugging"],
    ),
    ModelConfig(
        id="deepseek-coder",
        name="DeepSeek Coder",
        provider="deepseek",
        max_tokens=16384,
        cost_per_1k_tokens=DEEPSEEK_PRICING,
        capabilities=["code-generation", "code-review", "refactoring"],
    ),
]


class DeepSeekProvider(BaseModelProvider):
    """Primary backend with a fixed catalog."""

    name = "deepseek"
    display_name = "DeepSeek"

    async def get_available_models(self, force_refresh: bool = False) -> List[ModelConfig]:
        return list(DEEPSEEK_MODELS)

    def litellm_model(self, model: ModelConfig) -> str:
        return f"deepseek/{model.id}"

    def default_max_tokens(self, model: ModelConfig) -> int:
        return model.max_tokens
