"""MCP agent orchestrator.

An MCP server exposing one tool that answers requests with an LLM, which in
turn calls the tools of downstream MCP servers until it produces an answer.

Usage:
    from mcp_orchestrator import Application, load_configuration

    config = load_configuration("agent.yaml")
    async with Application(config) as app:
        result = await app.call_direct("What time is it?")
        print(result.answer, result.meta.cost)
"""

from mcp_orchestrator.agent import ANSWER_TOOL, Agent, AgentConfig, MetaInfo
from mcp_orchestrator.app import Application, DirectCallResult
from mcp_orchestrator.chat import Chat, ChatInfo
from mcp_orchestrator.compaction import DeleteOldStrategy, get_compaction_strategy
from mcp_orchestrator.config import Configuration, load_configuration
from mcp_orchestrator.connector import MCPConnector
from mcp_orchestrator.errors import (
    AgentError,
    AgentExternalError,
    AgentInternalError,
    AgentTransientError,
    AgentValidationError,
    ErrorCategory,
    SessionLimitError,
    ToolTimeoutError,
)
from mcp_orchestrator.llm import LLMResponse, LLMService, TokenUsage, ToolCall
from mcp_orchestrator.models import CostCalculator, ModelCatalog, ModelInfo, TokenEstimator
from mcp_orchestrator.server import AgentMCPServer, MCPLogHandler

__version__ = "1.0.0"

__all__ = [
    # Assembly
    "Application",
    "DirectCallResult",
    "Configuration",
    "load_configuration",
    # Agent
    "ANSWER_TOOL",
    "Agent",
    "AgentConfig",
    "MetaInfo",
    "Chat",
    "ChatInfo",
    "DeleteOldStrategy",
    "get_compaction_strategy",
    # MCP
    "AgentMCPServer",
    "MCPConnector",
    "MCPLogHandler",
    # LLM
    "LLMService",
    "LLMResponse",
    "TokenUsage",
    "ToolCall",
    "CostCalculator",
    "ModelCatalog",
    "ModelInfo",
    "TokenEstimator",
    # Errors
    "AgentError",
    "AgentExternalError",
    "AgentInternalError",
    "AgentTransientError",
    "AgentValidationError",
    "ErrorCategory",
    "SessionLimitError",
    "ToolTimeoutError",
]
