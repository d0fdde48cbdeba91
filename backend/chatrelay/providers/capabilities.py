"""
Model-family capability table.

Capabilities are resolved once per request from the model id by longest
matching prefix; call sites read flags instead of testing model names.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict


@dataclass(frozen=True)
class ModelCapabilities:
    family: str
    supports_sampling: bool = True  # temperature / top_p / penalties
    token_param: str = "max_tokens"  # or "max_completion_tokens"
    supports_streaming: bool = True
    supports_reasoning_effort: bool = False
    supports_response_format: bool = True
    max_stop_sequences: int = 4
    min_temperature: float = 0.0
    max_temperature: float = 2.0

    @property
    def is_reasoning(self) -> bool:
        return not self.supports_sampling

    def clamp_temperature(self, value: float) -> float:
        return max(self.min_temperature, min(self.max_temperature, float(value)))


_OPENAI_CHAT = ModelCapabilities(family="openai-chat")
_OPENAI_REASONING = ModelCapabilities(
    family="openai-reasoning",
    supports_sampling=False,
    token_param="max_completion_tokens",
    supports_reasoning_effort=True,
)
_OPENAI_REASONING_NO_STREAM = ModelCapabilities(
    family="openai-reasoning-legacy",
    supports_sampling=False,
    token_param="max_completion_tokens",
    supports_streaming=False,
    supports_response_format=False,
)

MODEL_CAPABILITIES: Dict[str, ModelCapabilities] = {
    "gpt-5": _OPENAI_REASONING,
    "o1": _OPENAI_REASONING_NO_STREAM,
    "o1-mini": _OPENAI_REASONING_NO_STREAM,
    "o1-preview": _OPENAI_REASONING_NO_STREAM,
    "o3": _OPENAI_REASONING,
    "o4-mini": _OPENAI_REASONING,
    "gpt-4": _OPENAI_CHAT,
    "gpt-3.5": _OPENAI_CHAT,
    "deepseek": ModelCapabilities(family="deepseek-chat", max_stop_sequences=16),
    "deepseek-reasoner": ModelCapabilities(
        family="deepseek-reasoner",
        supports_sampling=False,
        supports_response_format=False,
        max_stop_sequences=16,
    ),
    "default": _OPENAI_CHAT,
}


@lru_cache(maxsize=256)
def resolve_capabilities(model: str | None) -> ModelCapabilities:
    """
    Resolve capabilities for a model id: exact match, then the longest
    table prefix, then the "default" entry.
    """
    model_key = (model or "").strip().lower()
    if model_key in MODEL_CAPABILITIES:
        return MODEL_CAPABILITIES[model_key]
    best_key = None
    for key in MODEL_CAPABILITIES:
        if key == "default":
            continue
        if model_key.startswith(key) and (best_key is None or len(key) > len(best_key)):
            best_key = key
    if best_key is None:
        return MODEL_CAPABILITIES["default"]
    return MODEL_CAPABILITIES[best_key]
