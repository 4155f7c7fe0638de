"""Model pricing catalog, cost calculator and token estimator.

One embedded table of per-million-token prices and context limits, looked up
case-insensitively by canonical name or alias. Pricing follows the public
tokencost tables.

Usage::

    from mcp_orchestrator.models import CostCalculator, default_catalog

    info = default_catalog().lookup("GPT-4o-2024-08-06")   # -> gpt-4o
    usd = CostCalculator().cost("gpt-4o", 1_000, 200)
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable

from pydantic import BaseModel

from mcp_orchestrator.errors import AgentValidationError

logger = logging.getLogger(__name__)

_PER_MILLION = 1_000_000


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    """Pricing and limits for one model."""

    name: str
    prompt_cost_per_m: float  # USD per 1M prompt tokens
    completion_cost_per_m: float  # USD per 1M completion tokens
    cached_prompt_cost_per_m: float = 0.0
    max_prompt_tokens: int = 0
    max_completion_tokens: int = 0
    aliases: list[str] = []


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

_DEFAULT_MODELS: list[dict[str, Any]] = [
    # OpenAI GPT-4 family
    {"name": "gpt-4", "prompt_cost_per_m": 30.0, "completion_cost_per_m": 60.0,
     "max_prompt_tokens": 8192, "max_completion_tokens": 4096,
     "aliases": ["gpt-4-0314", "gpt-4-0613"]},
    {"name": "gpt-4-32k", "prompt_cost_per_m": 60.0, "completion_cost_per_m": 120.0,
     "max_prompt_tokens": 32768, "max_completion_tokens": 4096,
     "aliases": ["gpt-4-32k-0314", "gpt-4-32k-0613"]},
    {"name": "gpt-4o", "prompt_cost_per_m": 2.5, "completion_cost_per_m": 10.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384,
     "aliases": ["gpt-4o-2024-08-06", "gpt-4o-2024-05-13", "chatgpt-4o-latest",
                 "gpt-4o-audio-preview", "gpt-4o-audio-preview-2024-10-01"]},
    {"name": "gpt-4o-mini", "prompt_cost_per_m": 0.15, "completion_cost_per_m": 0.6,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384,
     "aliases": ["gpt-4o-mini-2024-07-18"]},
    {"name": "gpt-4-turbo", "prompt_cost_per_m": 10.0, "completion_cost_per_m": 30.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 4096,
     "aliases": ["gpt-4-turbo-preview", "gpt-4-turbo-2024-04-09", "gpt-4-1106-preview",
                 "gpt-4-0125-preview", "gpt-4-vision-preview", "gpt-4-1106-vision-preview"]},
    {"name": "gpt-4.1", "prompt_cost_per_m": 2.0, "cached_prompt_cost_per_m": 0.5,
     "completion_cost_per_m": 8.0, "max_prompt_tokens": 1_047_576,
     "max_completion_tokens": 32768, "aliases": ["gpt-4.1-2025-04-14"]},
    {"name": "gpt-4.1-mini", "prompt_cost_per_m": 0.4, "cached_prompt_cost_per_m": 0.1,
     "completion_cost_per_m": 1.6, "max_prompt_tokens": 1_047_576,
     "max_completion_tokens": 32768, "aliases": ["gpt-4.1-mini-2025-04-14"]},
    {"name": "gpt-4.1-nano", "prompt_cost_per_m": 0.1, "cached_prompt_cost_per_m": 0.03,
     "completion_cost_per_m": 0.4, "max_prompt_tokens": 1_047_576,
     "max_completion_tokens": 32768, "aliases": ["gpt-4.1-nano-2025-04-14"]},
    # OpenAI GPT-3.5 family
    {"name": "gpt-3.5-turbo", "prompt_cost_per_m": 1.5, "completion_cost_per_m": 2.0,
     "max_prompt_tokens": 16385, "max_completion_tokens": 4096,
     "aliases": ["gpt-3.5-turbo-0301", "gpt-3.5-turbo-0613", "gpt-3.5-turbo-1106",
                 "gpt-3.5-turbo-0125", "gpt-3.5-turbo-16k", "gpt-3.5-turbo-16k-0613"]},
    # OpenAI fine-tuned
    {"name": "ft:gpt-3.5-turbo", "prompt_cost_per_m": 3.0, "completion_cost_per_m": 6.0,
     "max_prompt_tokens": 16385, "max_completion_tokens": 4096,
     "aliases": ["ft:gpt-3.5-turbo-0125", "ft:gpt-3.5-turbo-1106", "ft:gpt-3.5-turbo-0613"]},
    {"name": "ft:gpt-4-0613", "prompt_cost_per_m": 30.0, "completion_cost_per_m": 60.0,
     "max_prompt_tokens": 8192, "max_completion_tokens": 4096},
    {"name": "ft:gpt-4o-2024-08-06", "prompt_cost_per_m": 3.75, "completion_cost_per_m": 15.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384},
    {"name": "ft:gpt-4o-mini-2024-07-18", "prompt_cost_per_m": 0.3, "completion_cost_per_m": 1.2,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384},
    {"name": "ft:davinci-002", "prompt_cost_per_m": 2.0, "completion_cost_per_m": 2.0,
     "max_prompt_tokens": 16384, "max_completion_tokens": 4096},
    {"name": "ft:babbage-002", "prompt_cost_per_m": 0.4, "completion_cost_per_m": 0.4,
     "max_prompt_tokens": 16384, "max_completion_tokens": 4096},
    # o1 reasoning models
    {"name": "o1-mini", "prompt_cost_per_m": 1.1, "completion_cost_per_m": 4.4,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 65536,
     "aliases": ["o1-mini-2024-09-12"]},
    {"name": "o1-preview", "prompt_cost_per_m": 15.0, "completion_cost_per_m": 60.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 32768,
     "aliases": ["o1-preview-2024-09-12"]},
    {"name": "o1-pro", "prompt_cost_per_m": 150.0, "completion_cost_per_m": 600.0,
     "max_prompt_tokens": 200_000, "max_completion_tokens": 100_000,
     "aliases": ["o1-pro-2025-03-19"]},
    # Anthropic Claude 3
    {"name": "claude-3-opus", "prompt_cost_per_m": 15.0, "completion_cost_per_m": 75.0,
     "max_prompt_tokens": 200_000, "max_completion_tokens": 4096,
     "aliases": ["claude-3-opus-20240229"]},
    {"name": "claude-3-sonnet", "prompt_cost_per_m": 3.0, "completion_cost_per_m": 15.0,
     "max_prompt_tokens": 200_000, "max_completion_tokens": 4096,
     "aliases": ["claude-3-sonnet-20240229"]},
    {"name": "claude-3-haiku", "prompt_cost_per_m": 0.25, "completion_cost_per_m": 1.25,
     "max_prompt_tokens": 200_000, "max_completion_tokens": 4096,
     "aliases": ["claude-3-haiku-20240307"]},
    # Azure OpenAI
    {"name": "azure/gpt-4o-2024-08-06", "prompt_cost_per_m": 2.75, "completion_cost_per_m": 11.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384,
     "aliases": ["azure/us/gpt-4o-2024-08-06", "azure/eu/gpt-4o-2024-08-06",
                 "azure/global/gpt-4o-2024-08-06"]},
    {"name": "azure/gpt-4o-2024-11-20", "prompt_cost_per_m": 2.75, "completion_cost_per_m": 11.0,
     "max_prompt_tokens": 128_000, "max_completion_tokens": 16384,
     "aliases": ["azure/us/gpt-4o-2024-11-20", "azure/eu/gpt-4o-2024-11-20",
                 "azure/global/gpt-4o-2024-11-20"]},
    # Gemini (free experimental tiers)
    {"name": "gemini/gemini-2.0-pro-exp-02-05", "prompt_cost_per_m": 0.0,
     "completion_cost_per_m": 0.0, "max_prompt_tokens": 2_097_152, "max_completion_tokens": 8192},
    {"name": "gemini/gemini-2.0-flash-thinking-exp-01-21", "prompt_cost_per_m": 0.0,
     "completion_cost_per_m": 0.0, "max_prompt_tokens": 1_048_576, "max_completion_tokens": 65536},
]


def _normalize_name(name: str) -> str:
    return name.strip().lower()


class ModelCatalog:
    """Lookup of model pricing by canonical name or alias."""

    def __init__(self, models: Iterable[ModelInfo]) -> None:
        self._models: dict[str, ModelInfo] = {}
        self._aliases: dict[str, str] = {}
        for info in models:
            key = _normalize_name(info.name)
            self._models[key] = info
            for alias in info.aliases:
                self._aliases[_normalize_name(alias)] = key

    def lookup(self, name: str) -> ModelInfo | None:
        """Return the model for *name*, or None when it is not catalogued.

        A provider-prefixed name (``openai/gpt-4o``) that is not itself in the
        table is retried without its first path segment.
        """
        norm = _normalize_name(name)
        info = self._resolve(norm)
        if info is None and "/" in norm:
            info = self._resolve(norm.split("/", 1)[1])
        return info

    def _resolve(self, norm: str) -> ModelInfo | None:
        if norm in self._models:
            return self._models[norm]
        canonical = self._aliases.get(norm)
        if canonical is not None:
            return self._models[canonical]
        return None

    def list_models(self) -> list[ModelInfo]:
        return list(self._models.values())


_default_catalog: ModelCatalog | None = None


def default_catalog() -> ModelCatalog:
    """The embedded catalog, built once."""
    global _default_catalog  # noqa: PLW0603
    if _default_catalog is None:
        _default_catalog = ModelCatalog(ModelInfo(**m) for m in _DEFAULT_MODELS)
    return _default_catalog


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def _message_text(message: Any) -> str:
    """Plain text of an OpenAI-format message; JSON of the message otherwise."""
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content:
        return content
    if isinstance(content, list):
        parts = [
            p.get("text", "") for p in content
            if isinstance(p, dict) and isinstance(p.get("text"), str)
        ]
        text = "".join(parts)
        if text:
            return text
    return json.dumps(message, default=str, ensure_ascii=False)


class TokenEstimator:
    """Rough chars/4 token counts for when a provider reports no usage."""

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text) / 4))

    def count(self, message: Any) -> int:
        return max(1, self.count_text(_message_text(message)))

    def count_all(self, messages: Iterable[Any]) -> int:
        return sum(self.count(m) for m in messages)


# ---------------------------------------------------------------------------
# Cost calculation
# ---------------------------------------------------------------------------


class CostCalculator:
    """USD cost of LLM calls from the pricing catalog."""

    def __init__(
        self,
        catalog: ModelCatalog | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.catalog = catalog or default_catalog()
        self.estimator = estimator or TokenEstimator()

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        info = self.catalog.lookup(model)
        if info is None:
            raise AgentValidationError(f"model not found: {model}")
        return (
            prompt_tokens * info.prompt_cost_per_m / _PER_MILLION
            + completion_tokens * info.completion_cost_per_m / _PER_MILLION
        )

    def evaluate(self, model: str, response: Any) -> tuple[int, float, bool]:
        """Return ``(tokens, usd, approximate)`` for one LLM response.

        Exact provider counts are used when the response reports any tokens;
        otherwise prompt tokens are estimated from the request messages and
        completion tokens from the response text.

        Raises:
            AgentValidationError: If the model is not in the catalog.
        """
        usage = response.usage
        if usage.total_tokens != 0:
            usd = self.cost(model, usage.prompt_tokens, usage.completion_tokens)
            return usage.total_tokens, usd, False

        prompt_chars = sum(len(_message_text(m)) for m in response.messages or [])
        prompt_tokens = math.ceil(prompt_chars / 4)
        completion_tokens = math.ceil(len(response.text or "") / 4)
        usd = self.cost(model, prompt_tokens, completion_tokens)
        logger.debug(
            "Estimated %d prompt + %d completion tokens for %s (no usage reported)",
            prompt_tokens, completion_tokens, model,
        )
        return prompt_tokens + completion_tokens, usd, True
