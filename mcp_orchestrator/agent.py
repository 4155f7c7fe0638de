"""Reason-act loop.

Each run seeds a fresh :class:`~mcp_orchestrator.chat.Chat` with the system
prompt, then alternates LLM requests and sequential tool dispatch until the
LLM calls the synthetic ``answer`` tool, the request budget is exceeded or
the iteration cap is reached.

Usage::

    agent = Agent(AgentConfig.from_settings(config.agent), llm, connector)
    answer, meta = await agent.run("What time is it?")

Tool failures never abort a run: they are fed back to the LLM as
error-marked tool results so it can recover.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

from mcp import types

from mcp_orchestrator.chat import Chat
from mcp_orchestrator.compaction import CompactionStrategy, get_compaction_strategy
from mcp_orchestrator.config import AgentSettings
from mcp_orchestrator.errors import AgentInternalError, SessionLimitError
from mcp_orchestrator.llm import LLMResponse, ToolCall
from mcp_orchestrator.models import CostCalculator

logger = logging.getLogger(__name__)

ANSWER_TOOL_NAME = "answer"

ANSWER_TOOL = types.Tool(
    name=ANSWER_TOOL_NAME,
    description=(
        "Use this tool to answer the user and finish the session. "
        "The argument 'text' is the final answer."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "text": {
                "type": "string",
                "description": "The final answer to the user's request",
            },
        },
        "required": ["text"],
    },
)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@runtime_checkable
class LLMClient(Protocol):
    async def send(
        self, messages: list[dict[str, Any]], tools: list[types.Tool]
    ) -> LLMResponse: ...


@runtime_checkable
class ToolConnector(Protocol):
    async def get_all_tools(self) -> list[types.Tool]: ...

    async def execute_tool(self, call: ToolCall) -> types.CallToolResult: ...


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfig:
    tool_name: str = "process"
    argument_name: str = "input"
    tool_description: str = "Process user queries with LLM"
    model: str = ""
    prompt_template: str = ""
    max_tokens: int = 8192
    max_llm_iterations: int = 100
    request_budget: float = 0.0
    compaction_strategy: str | None = None

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "AgentConfig":
        return cls(
            tool_name=settings.tool.name,
            argument_name=settings.tool.argument_name,
            tool_description=settings.tool.description,
            model=settings.llm.model,
            prompt_template=settings.llm.prompt_template,
            max_tokens=settings.chat.max_tokens,
            max_llm_iterations=settings.chat.max_llm_iterations,
            request_budget=settings.chat.request_budget,
            compaction_strategy=settings.chat.compaction_strategy or None,
        )


@dataclass
class MetaInfo:
    """Metrics of one run.

    ``tokens`` and ``cost`` are run totals; the prompt/completion/reasoning
    counts are those of the final LLM response.
    """

    tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class Agent:
    def __init__(
        self,
        config: AgentConfig,
        llm: LLMClient,
        connector: ToolConnector,
        calculator: CostCalculator | None = None,
    ) -> None:
        self.config = config
        self.llm = llm
        self.connector = connector
        self.calculator = calculator or getattr(llm, "calculator", None) or CostCalculator()
        self.compaction: CompactionStrategy | None = None
        if config.compaction_strategy:
            self.compaction = get_compaction_strategy(config.compaction_strategy)

    async def tools(self) -> list[types.Tool]:
        """Downstream catalog plus the answer tool."""
        tools = [
            t for t in await self.connector.get_all_tools() if t.name != ANSWER_TOOL_NAME
        ]
        tools.append(ANSWER_TOOL)
        logger.info("Tools for LLM: %s", [t.name for t in tools])
        return tools

    def _new_chat(self) -> Chat:
        chat = Chat(
            self.config.model,
            self.config.prompt_template,
            self.config.argument_name,
            max_tokens=self.config.max_tokens,
            request_budget=self.config.request_budget,
            calculator=self.calculator,
            compaction=self.compaction,
        )
        info = chat.info()
        logger.info(
            "Chat configured with max tokens: %d, request budget: %.4f",
            info.max_tokens, info.request_budget,
        )
        return chat

    async def run(self, user_query: str) -> tuple[str, MetaInfo]:
        """Answer *user_query*.

        Raises:
            SessionLimitError: Budget exceeded or iteration cap reached; the
                error's ``meta`` holds the run totals so far.
            AgentInternalError: The LLM answered without any tool call.
            AgentError: LLM adapter failures, already sanitized.
        """
        start = time.monotonic()
        tools = await self.tools()
        chat = self._new_chat()
        chat.begin(user_query, tools)

        def meta(response: LLMResponse | None = None) -> MetaInfo:
            info = chat.info()
            result = MetaInfo(
                tokens=info.total_tokens,
                cost=info.total_cost,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            if response is not None:
                result.prompt_tokens = response.usage.prompt_tokens
                result.completion_tokens = response.usage.completion_tokens
                result.reasoning_tokens = response.usage.reasoning_tokens
            return result

        limit = self.config.max_llm_iterations
        for iteration in range(1, limit + 1):
            response = await self.llm.send(chat.messages, tools)
            chat.add_assistant_message(response)

            if chat.exceeded_request_budget():
                info = chat.info()
                raise SessionLimitError(
                    f"exceeded request budget: total cost {info.total_cost:.4f} "
                    f"> budget {info.request_budget:.4f}",
                    meta=meta(response),
                )
            if not response.calls:
                raise AgentInternalError("LLM returned no tool calls")

            for call in response.calls:
                if call.name == ANSWER_TOOL_NAME:
                    answer = call.arguments.get("text")
                    answer = "" if answer is None else str(answer)
                    logger.info("<< LLM asked to answer the user with: %s", answer)
                    return answer, meta(response)

            logger.info(
                "<< LLM asked to call tools (iteration %d, cost $%.6f, %dms):\n%s",
                iteration, response.cost, response.duration_ms,
                "\n".join(str(c) for c in response.calls),
            )
            await self._dispatch(chat, response.calls)
            logger.info("Iteration %d complete: %s", iteration, chat.info().to_dict())

        raise SessionLimitError(
            f"exceeded maximum number of LLM iterations ({limit})", meta=meta()
        )

    async def _dispatch(self, chat: Chat, calls: list[ToolCall]) -> None:
        """Execute *calls* in order, recording each call and its result."""
        for call in calls:
            chat.add_tool_call(call)
            try:
                result = await self.connector.execute_tool(call)
            except Exception as e:
                logger.error("Failed to execute tool %s: %s", call.name, e)
                result = types.CallToolResult(
                    content=[types.TextContent(type="text", text=f"Error: {e}")],
                    isError=True,
                )
            chat.add_tool_result(call, result)
