"""LLM adapter wrapping litellm.

Sends a transcript plus the MCP tool catalog to the configured provider and
returns a typed :class:`LLMResponse`. Every call forces a tool call
(``tool_choice="required"``), retries transient failures with exponential
backoff and scrubs credentials from anything it raises.

Usage::

    service = LLMService(settings.agent.llm)
    response = await service.send(chat.messages, tools)
    for call in response.calls:
        print(call.name, call.arguments)

Providers are looked up by name (``openai``, ``anthropic``); add more with
:func:`register_provider`.
"""

from __future__ import annotations

import json as _json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

import litellm
from mcp import types

from mcp_orchestrator.config import LLMSettings
from mcp_orchestrator.errors import (
    AgentError,
    AgentExternalError,
    AgentValidationError,
    RetryConfig,
    retry_with_backoff,
    sanitize_error,
    wrap_error,
)
from mcp_orchestrator.models import CostCalculator

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0


@dataclass(frozen=True)
class ToolCall:
    """The LLM's intent to invoke one tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def arguments_json(self) -> str:
        return _json.dumps(self.arguments, ensure_ascii=False)

    def __str__(self) -> str:
        return f"{self.name}({self.arguments_json()}) [{self.id}]"


@dataclass
class LLMResponse:
    """One completion.

    Attributes:
        text: Assistant text (may be empty when the model only calls tools).
        calls: Tool calls in the order the model emitted them.
        usage: Provider-reported token counts, zeros when unavailable.
        cost: USD cost of this completion (0.0 when unknown).
        duration_ms: Wall time including retries.
        messages: The request messages this completion answered.
        model: Model name the response was produced for.
    """

    text: str = ""
    calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    duration_ms: int = 0
    messages: list[dict[str, Any]] = field(default_factory=list)
    model: str = ""


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@runtime_checkable
class ProviderClient(Protocol):
    """Narrow capability a provider must offer: one forced-tool completion."""

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Any: ...


class LiteLLMProvider:
    """Provider client backed by ``litellm.acompletion``."""

    def __init__(self, provider: str, model: str, api_key: str) -> None:
        self.provider = provider
        self.model = model
        self.api_key = api_key

    @property
    def litellm_model(self) -> str:
        if self.model.startswith(f"{self.provider}/"):
            return self.model
        return f"{self.provider}/{self.model}"

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Any:
        return await litellm.acompletion(
            model=self.litellm_model,
            messages=messages,
            tools=tools,
            tool_choice="required",
            api_key=self.api_key,
            **options,
        )


ProviderFactory = Callable[[LLMSettings], ProviderClient]

_PROVIDERS: dict[str, ProviderFactory] = {
    "openai": lambda s: LiteLLMProvider("openai", s.model, s.api_key),
    "anthropic": lambda s: LiteLLMProvider("anthropic", s.model, s.api_key),
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Make another provider name available to :class:`LLMService`."""
    _PROVIDERS[name.strip().lower()] = factory


def supported_providers() -> list[str]:
    return sorted(_PROVIDERS)


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------


def _mcp_tool_to_openai(tool: types.Tool) -> dict[str, Any]:
    """Convert an MCP Tool to OpenAI function-calling format.

    MCP: {"name": "foo", "description": "...", "inputSchema": {...}}
    OpenAI: {"type": "function", "function": {"name": "foo", "description": "...", "parameters": {...}}}
    """
    parameters = dict(tool.inputSchema or {})
    parameters.setdefault("type", "object")
    if not isinstance(parameters.get("properties"), dict):
        parameters["properties"] = {}
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": parameters,
        },
    }


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _extract_usage(response: Any) -> TokenUsage:
    """Token usage from a litellm response; zeros when the provider sent none."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    details = getattr(usage, "completion_tokens_details", None)
    reasoning = getattr(details, "reasoning_tokens", None) if details is not None else None
    return TokenUsage(
        prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        total_tokens=int(getattr(usage, "total_tokens", 0) or 0),
        reasoning_tokens=int(reasoning or 0),
    )


def _parse_arguments(raw: Any, tool_name: str) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = _json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Unparseable arguments for tool %s: %s", tool_name, str(raw)[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _extract_tool_calls(message: Any) -> list[ToolCall]:
    """Tool calls of a response message as :class:`ToolCall` objects."""
    calls: list[ToolCall] = []
    for tc in getattr(message, "tool_calls", None) or []:
        fn = tc.function
        calls.append(ToolCall(
            id=tc.id or "",
            name=fn.name or "",
            arguments=_parse_arguments(fn.arguments, fn.name),
        ))
    return calls


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class LLMService:
    """Provider-agnostic, stateless-per-call LLM adapter."""

    def __init__(
        self,
        settings: LLMSettings,
        calculator: CostCalculator | None = None,
        provider: ProviderClient | None = None,
    ) -> None:
        if not settings.provider:
            raise AgentValidationError("provider is required")
        if not settings.model:
            raise AgentValidationError("model is required")
        if not settings.api_key:
            raise AgentValidationError("API key is required")
        provider_name = settings.provider.strip().lower()
        if provider is None:
            factory = _PROVIDERS.get(provider_name)
            if factory is None:
                raise AgentValidationError(f"unsupported provider: {settings.provider}")
            provider = factory(settings)

        self.settings = settings
        self.model = settings.model
        self.provider = provider
        self.calculator = calculator or CostCalculator()
        self.retry: RetryConfig = settings.retry.to_retry_config()
        logger.info("LLM service ready: provider=%s model=%s", provider_name, self.model)

    def _call_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.settings.temperature is not None:
            options["temperature"] = self.settings.temperature
        if self.settings.max_tokens is not None and self.settings.max_tokens > 0:
            options["max_tokens"] = self.settings.max_tokens
        return options

    async def _generate_once(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Any:
        try:
            return await self.provider.generate(messages, tools, options)
        except AgentError:
            raise
        except Exception as e:
            raise wrap_error(e, "failed to send request to LLM") from e

    async def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[types.Tool],
    ) -> LLMResponse:
        """Send *messages* with *tools* and return the parsed response.

        Raises:
            AgentError: Sanitized; transient when retries ran out, external
                when the provider answered without a tool call.
        """
        snapshot = list(messages)
        openai_tools = [_mcp_tool_to_openai(t) for t in tools]
        options = self._call_options()
        logger.debug(
            ">> LLM request: %d messages, %d tools, options=%s",
            len(snapshot), len(openai_tools), options,
        )

        t0 = time.monotonic()
        try:
            raw = await retry_with_backoff(
                lambda: self._generate_once(snapshot, openai_tools, options),
                self.retry,
                operation="LLM request",
            )
            response = self._build_response(raw, snapshot)
        except AgentError as exc:
            raise sanitize_error(exc) from None
        response.duration_ms = int((time.monotonic() - t0) * 1000)

        logger.info(
            "<< LLM response: %d tool calls, %d tokens, $%.6f, %dms",
            len(response.calls), response.usage.total_tokens, response.cost, response.duration_ms,
        )
        return response

    def _build_response(self, raw: Any, messages: list[dict[str, Any]]) -> LLMResponse:
        choices = getattr(raw, "choices", None) or []
        if not choices:
            raise AgentExternalError("empty response from LLM")
        message = choices[0].message
        calls = _extract_tool_calls(message)
        if not calls:
            raise AgentExternalError("no function call in response")

        usage = _extract_usage(raw)
        return LLMResponse(
            text=getattr(message, "content", None) or "",
            calls=calls,
            usage=usage,
            cost=self._compute_cost(raw, usage),
            messages=messages,
            model=self.model,
        )

    def _compute_cost(self, raw: Any, usage: TokenUsage) -> float:
        """Cost from the catalog, then litellm's price map, else 0.0."""
        if usage.total_tokens == 0:
            return 0.0
        try:
            return self.calculator.cost(self.model, usage.prompt_tokens, usage.completion_tokens)
        except AgentValidationError:
            pass
        try:
            return float(litellm.completion_cost(completion_response=raw))
        except Exception as e:
            logger.warning("Failed to calculate cost for model %s: %s", self.model, e)
            return 0.0
