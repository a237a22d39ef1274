"""Model backends, in routing precedence order."""

from typing import Dict, Tuple, Type

from .base import BaseModelProvider, CompletionCall, CompletionPayload, parse_completion
from .deepseek import DEEPSEEK_MODELS, DeepSeekProvider
from .openrouter import OpenRouterProvider, infer_capabilities

PROVIDER_PRECEDENCE: Tuple[str, ...] = ("deepseek", "openrouter")

PROVIDER_CLASSES: Dict[str, Type[BaseModelProvider]] = {
    "deepseek": DeepSeekProvider,
    "openrouter": OpenRouterProvider,
}

__all__ = [
    "BaseModelProvider",
    "CompletionCall",
    "CompletionPayload",
    "parse_completion",
    "DEEPSEEK_MODELS",
    "DeepSeekProvider",
    "OpenRouterProvider",
    "infer_capabilities",
    "PROVIDER_PRECEDENCE",
    "PROVIDER_CLASSES",
]
