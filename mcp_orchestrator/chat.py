"""Chat transcript for one agent run.

Holds the OpenAI-format message list sent to the LLM, the running token and
cost totals, and applies compaction when the transcript outgrows its token
ceiling. The first message is always the rendered system prompt.

Usage::

    chat = Chat("gpt-4o", template, "input", max_tokens=8192, request_budget=0.5)
    chat.begin("What time is it?", tools)
    response = await llm.send(chat.messages, tools)
    chat.add_assistant_message(response)
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from mcp import types

from mcp_orchestrator.compaction import CompactionStrategy, drop_orphan_tool_results
from mcp_orchestrator.errors import AgentValidationError
from mcp_orchestrator.llm import LLMResponse, ToolCall
from mcp_orchestrator.models import CostCalculator, TokenEstimator
from mcp_orchestrator.prompts import render_system_prompt, render_tools_description

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 8192


@dataclass
class ChatInfo:
    """Summary of a transcript for reporting."""

    model: str = ""
    max_tokens: int = DEFAULT_MAX_TOKENS
    request_budget: float = 0.0
    total_tokens: int = 0
    total_cost: float = 0.0
    approximate: bool = False
    llm_requests: int = 0
    message_count: int = 0
    tool_call_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def content_text(content: Sequence[Any]) -> str:
    """Flatten MCP content blocks to text; non-text blocks are JSON-encoded."""
    parts: list[str] = []
    for block in content:
        if isinstance(block, types.TextContent):
            parts.append(block.text)
        elif hasattr(block, "model_dump"):
            parts.append(json.dumps(block.model_dump(mode="json", exclude_none=True)))
        else:
            parts.append(str(block))
    return "\n".join(parts)


class Chat:
    """Append-only transcript with token/cost accounting."""

    def __init__(
        self,
        model: str,
        prompt_template: str,
        argument_name: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        request_budget: float = 0.0,
        calculator: CostCalculator | None = None,
        compaction: CompactionStrategy | None = None,
    ) -> None:
        if max_tokens < 0:
            logger.warning(
                "Invalid max tokens value %d, using default %d", max_tokens, DEFAULT_MAX_TOKENS
            )
            max_tokens = DEFAULT_MAX_TOKENS
        self.prompt_template = prompt_template
        self.argument_name = argument_name
        self.calculator = calculator or CostCalculator()
        self.estimator: TokenEstimator = self.calculator.estimator
        self.compaction = compaction
        self._messages: list[dict[str, Any]] = []
        self._info = ChatInfo(model=model, max_tokens=max_tokens, request_budget=request_budget)
        # estimated size of the current transcript, unlike the cumulative total_tokens
        self._context_tokens = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[dict[str, Any]]:
        """Snapshot of the transcript; mutating it does not affect the chat."""
        return list(self._messages)

    def info(self) -> ChatInfo:
        return ChatInfo(**asdict(self._info))

    def exceeded_request_budget(self) -> bool:
        budget = self._info.request_budget
        if budget > 0 and self._info.total_cost > budget:
            logger.warning(
                "Request budget exceeded: total cost %.4f > budget %.4f",
                self._info.total_cost, budget,
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def begin(self, user_query: str, tools: Sequence[types.Tool]) -> None:
        """Seed the transcript with the rendered system prompt."""
        if self._messages:
            raise RuntimeError("chat already started")
        prompt = render_system_prompt(
            self.prompt_template,
            self.argument_name,
            user_query,
            render_tools_description(tools),
        )
        self._append({"role": "system", "content": prompt})
        logger.debug(
            "Added system message, total tokens now %d", self._info.total_tokens
        )

    def add_assistant_message(self, response: LLMResponse) -> None:
        """Record an LLM response and its cost.

        When the provider reported no token usage the calculator's estimate
        is used and the totals are marked approximate. Responses that only
        carry tool calls add no message; their calls are recorded through
        :meth:`add_tool_call`.
        """
        tokens = response.usage.total_tokens
        cost = response.cost
        if tokens == 0:
            try:
                tokens, cost, approximate = self.calculator.evaluate(self._info.model, response)
            except AgentValidationError as e:
                logger.warning("Failed to estimate cost for %s: %s", self._info.model, e)
                tokens = self.estimator.count_text(response.text)
                approximate = True
            if approximate:
                self._info.approximate = True

        if response.text:
            message = {"role": "assistant", "content": response.text}
            self._messages.append(message)
            self._context_tokens += self.estimator.count(message)
        self._info.total_tokens += tokens
        self._info.total_cost += cost
        self._info.llm_requests += 1
        self._info.message_count = len(self._messages)
        logger.debug(
            "Added assistant message, total tokens: %d, cost: %f, approx: %s",
            self._info.total_tokens, self._info.total_cost, self._info.approximate,
        )
        self._maybe_compact()

    def add_tool_call(self, call: ToolCall) -> None:
        if not call.id or not call.name:
            logger.warning("Skipping tool call with empty id or name: %s", call)
            return
        self._append({
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments_json()},
            }],
        })
        self._info.tool_call_count += 1

    def add_tool_result(self, call: ToolCall, result: types.CallToolResult) -> None:
        if not call.id or not call.name:
            logger.warning("Skipping result of tool call with empty id or name: %s", call)
            return
        text = content_text(result.content)
        if result.isError:
            body = "Result: Error: " + json.dumps({"error": text}, ensure_ascii=False)
        else:
            body = "Result: " + text
        self._append({
            "role": "tool",
            "tool_call_id": call.id,
            "name": call.name,
            "content": body,
        })
        self._maybe_compact()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(self, message: dict[str, Any]) -> None:
        tokens = self.estimator.count(message)
        self._messages.append(message)
        self._info.total_tokens += tokens
        self._context_tokens += tokens
        self._info.message_count = len(self._messages)

    def _maybe_compact(self) -> None:
        ceiling = self._info.max_tokens
        if self.compaction is None or ceiling <= 0 or self._context_tokens <= ceiling:
            return
        compacted, tokens = self.compaction.compact(self._messages, self._context_tokens, ceiling)
        if len(compacted) == len(self._messages):
            return
        kept = drop_orphan_tool_results(compacted)
        for orphan in compacted[1:1 + len(compacted) - len(kept)]:
            tokens -= self.estimator.count(orphan)
        self._messages = kept
        self._context_tokens = tokens
        self._info.message_count = len(self._messages)
