"""Application assembly: configuration → components → serve → close.

Usage::

    async with Application(config, log_handler=handler) as app:
        await app.serve()

    # or a single request without the MCP server
    async with Application(config) as app:
        result = await app.call_direct("What time is it?")
        print(json.dumps(result.to_dict()))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from mcp_orchestrator.agent import Agent, AgentConfig, MetaInfo
from mcp_orchestrator.config import Configuration
from mcp_orchestrator.connector import MCPConnector
from mcp_orchestrator.errors import AgentError, SessionLimitError, sanitize_error
from mcp_orchestrator.llm import LLMService
from mcp_orchestrator.server import AgentMCPServer, MCPLogHandler

logger = logging.getLogger(__name__)


@dataclass
class DirectCallResult:
    """JSON envelope of a direct (non-MCP) call."""

    success: bool
    answer: str = ""
    meta: MetaInfo = field(default_factory=MetaInfo)
    error_type: str = ""
    error_message: str = ""

    @classmethod
    def failure(
        cls, error_type: str, message: str, meta: MetaInfo | None = None
    ) -> "DirectCallResult":
        return cls(
            success=False,
            meta=meta or MetaInfo(),
            error_type=error_type,
            error_message=message,
        )

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        if self.error_type in ("user", "config"):
            return 1
        return 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": {"answer": self.answer},
            "meta": self.meta.to_dict(),
            "error": {"type": self.error_type, "message": self.error_message},
        }


class Application:
    """Owns the connector, LLM service, agent and MCP facade of one process."""

    def __init__(
        self,
        config: Configuration,
        log_handler: MCPLogHandler | None = None,
    ) -> None:
        self.config = config
        self.log_handler = log_handler
        self.connector: MCPConnector | None = None
        self.llm: LLMService | None = None
        self.agent: Agent | None = None
        self.server: AgentMCPServer | None = None

    async def __aenter__(self) -> "Application":
        try:
            await self.initialize()
        except BaseException:
            # servers connected before the failure must still be shut down
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Connect downstream servers and build every component.

        Raises:
            AgentError: Invalid configuration or a downstream server that
                could not be connected.
        """
        settings = self.config.agent
        self.connector = MCPConnector(
            settings.connections.mcp_servers,
            retry=settings.connections.retry.to_retry_config(),
            client_name=settings.name,
            client_version=settings.version,
        )
        await self.connector.connect()

        self.llm = LLMService(settings.llm)
        self.agent = Agent(
            AgentConfig.from_settings(settings),
            self.llm,
            self.connector,
            calculator=self.llm.calculator,
        )
        self.server = AgentMCPServer(self.config, self.agent, log_handler=self.log_handler)
        if self.log_handler is not None:
            self.log_handler.attach(self.server, asyncio.get_running_loop())
        logger.info("Application %s %s initialized", settings.name, settings.version)

    async def serve(self, daemon: bool | None = None) -> None:
        if self.server is None:
            raise AgentError("application not initialized")
        await self.server.serve(daemon)

    async def call_direct(self, text: str) -> DirectCallResult:
        """Run one request through the agent and wrap the outcome."""
        if self.agent is None:
            return DirectCallResult.failure("internal", "agent not initialized")
        if not text.strip():
            return DirectCallResult.failure("user", "empty input variable")
        try:
            answer, meta = await self.agent.run(text)
        except SessionLimitError as e:
            return DirectCallResult.failure("internal", str(sanitize_error(e)), e.meta)
        except Exception as e:
            logger.error("Direct call failed: %s", sanitize_error(e))
            return DirectCallResult.failure("internal", str(sanitize_error(e)))
        return DirectCallResult(success=True, answer=answer, meta=meta)

    async def close(self) -> None:
        if self.log_handler is not None:
            self.log_handler.detach()
        if self.connector is not None:
            await self.connector.close()
        logger.info("Application stopped")
