"""Connections to downstream MCP servers.

The connector starts every configured server (a child process over stdio when
``command`` is set, an SSE endpoint when ``url`` is set), discovers and
filters their tools into one catalog, and routes tool calls to the server
that owns each tool.

Usage::

    async with MCPConnector(config.agent.connections.mcp_servers) as connector:
        tools = await connector.get_all_tools()
        result = await connector.execute_tool(ToolCall("1", "current_time", {}))

Downstream ``notifications/message`` events are re-logged locally as
``[MCP <level>] <message>``; stdio servers' stderr is logged line by line.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

from mcp_orchestrator.config import MCPServerConnection
from mcp_orchestrator.errors import (
    AgentError,
    AgentExternalError,
    AgentInternalError,
    AgentTransientError,
    AgentValidationError,
    RetryConfig,
    ToolTimeoutError,
    retry_with_backoff,
    wrap_error,
)
from mcp_orchestrator.llm import ToolCall
from mcp_orchestrator.log_levels import from_mcp_level

logger = logging.getLogger(__name__)

DEFAULT_INIT_TIMEOUT = 10.0
DEFAULT_TOOL_TIMEOUT = 30.0


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def _notification_text(data: Any) -> str:
    if isinstance(data, dict) and "message" in data:
        return str(data["message"])
    return str(data)


class MCPConnector:
    """Client side of every downstream MCP server, with one merged tool catalog."""

    def __init__(
        self,
        servers: Mapping[str, MCPServerConnection],
        retry: RetryConfig | None = None,
        client_name: str = "mcp-orchestrator",
        client_version: str = "1.0.0",
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
        default_tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
    ) -> None:
        self.servers = dict(servers)
        self.retry = retry or RetryConfig()
        self.client_info = types.Implementation(name=client_name, version=client_version)
        self.init_timeout = init_timeout
        self.default_tool_timeout = default_tool_timeout

        self._lock = _ReadWriteLock()
        self._stacks: dict[str, AsyncExitStack] = {}
        self._sessions: dict[str, Any] = {}
        self._capabilities: dict[str, types.ServerCapabilities | None] = {}
        self._tools: dict[str, list[types.Tool]] = {}
        self._tool_index: dict[str, str] = {}

    async def __aenter__(self) -> "MCPConnector":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect to all configured servers and build the tool catalog.

        Raises:
            AgentValidationError: A server has neither ``command`` nor ``url``.
            AgentExternalError: A server could not be started, initialized or
                listed. Servers connected before the failure stay open until
                :meth:`close`.
        """
        async with self._lock.write():
            for server_id, cfg in self.servers.items():
                logger.info("Connecting to MCP server `%s`", server_id)
                try:
                    session, capabilities = await retry_with_backoff(
                        lambda: self._open(server_id, cfg),
                        self.retry,
                        operation=f"Connect to MCP server {server_id}",
                    )
                except AgentValidationError:
                    raise
                except Exception as e:
                    raise AgentExternalError(
                        f"failed to connect to MCP server {server_id}", original=e
                    ) from e

                try:
                    listed = await session.list_tools()
                except Exception as e:
                    raise AgentExternalError(
                        f"failed to list tools from MCP server {server_id}", original=e
                    ) from e
                self._register_server(server_id, session, listed.tools, capabilities)
            logger.info("Connected to %d MCP servers", len(self._sessions))

    async def _open(
        self, server_id: str, cfg: MCPServerConnection
    ) -> tuple[Any, types.ServerCapabilities | None]:
        """One connection attempt: transport, session, initialize."""
        stack = AsyncExitStack()
        try:
            if cfg.command:
                read, write = await self._open_stdio(stack, server_id, cfg)
            elif cfg.url:
                headers = {"Authorization": f"Bearer {cfg.api_key}"} if cfg.api_key else None
                read, write = await stack.enter_async_context(sse_client(cfg.url, headers=headers))
            else:
                raise AgentValidationError(
                    f"neither command nor url is specified for MCP server `{server_id}`"
                )

            session = await stack.enter_async_context(ClientSession(
                read,
                write,
                logging_callback=self._logging_callback(server_id),
                client_info=self.client_info,
            ))
            try:
                init = await asyncio.wait_for(session.initialize(), timeout=self.init_timeout)
            except asyncio.TimeoutError:
                raise AgentTransientError(
                    f"initialize timed out after {self.init_timeout:g} seconds"
                ) from None
        except AgentError:
            await stack.aclose()
            raise
        except OSError as e:
            await stack.aclose()
            raise AgentTransientError("failed to start MCP client", original=e) from e
        except Exception as e:
            await stack.aclose()
            raise wrap_error(e, "failed to initialize MCP client") from e

        self._stacks[server_id] = stack
        capabilities = init.capabilities
        if cfg.url and not (capabilities and capabilities.logging):
            logger.info(
                "MCP server `%s` does not support logging and has no stderr fallback", server_id
            )
        return session, capabilities

    async def _open_stdio(
        self, stack: AsyncExitStack, server_id: str, cfg: MCPServerConnection
    ) -> tuple[Any, Any]:
        params = StdioServerParameters(
            command=cfg.command,
            args=list(cfg.args),
            env=cfg.environment_map() or None,
        )
        read_fd, write_fd = os.pipe()
        errlog = os.fdopen(write_fd, "w")
        try:
            streams = await stack.enter_async_context(stdio_client(params, errlog=errlog))
        except BaseException:
            os.close(read_fd)
            raise
        finally:
            # The child holds its own copy of the write end.
            errlog.close()
        threading.Thread(
            target=self._pump_stderr,
            args=(server_id, read_fd),
            name=f"mcp-stderr-{server_id}",
            daemon=True,
        ).start()
        return streams

    def _pump_stderr(self, server_id: str, fd: int) -> None:
        with os.fdopen(fd, "r", errors="replace") as stream:
            for line in stream:
                line = line.strip()
                if not line:
                    continue
                level = logging.DEBUG if self._supports_logging(server_id) else logging.INFO
                logger.log(level, "`%s` stderr: %s", server_id, line)

    def _supports_logging(self, server_id: str) -> bool:
        capabilities = self._capabilities.get(server_id)
        return bool(capabilities and capabilities.logging is not None)

    def _logging_callback(self, server_id: str):
        async def on_log(params: types.LoggingMessageNotificationParams) -> None:
            logger.log(
                from_mcp_level(params.level),
                "[MCP %s] %s",
                params.level,
                _notification_text(params.data),
                extra={"server_id": server_id},
            )

        return on_log

    def _register_server(
        self,
        server_id: str,
        session: Any,
        tools: list[types.Tool],
        capabilities: types.ServerCapabilities | None = None,
    ) -> None:
        """Record a connected session and add its allowed tools to the catalog."""
        cfg = self.servers.get(server_id) or MCPServerConnection()
        accepted: list[types.Tool] = []
        for tool in tools:
            if not cfg.is_tool_allowed(tool.name):
                logger.info("`%s:%s` tool not allowed", server_id, tool.name)
                continue
            owner = self._tool_index.get(tool.name)
            if owner is not None:
                logger.warning(
                    "Duplicate tool %r from server %r (already from %r)",
                    tool.name, server_id, owner,
                )
                continue
            self._tool_index[tool.name] = server_id
            accepted.append(tool)
            logger.info("`%s:%s` tool added", server_id, tool.name)
        self._sessions[server_id] = session
        self._capabilities[server_id] = capabilities
        self._tools[server_id] = accepted
        logger.info("Connected to MCP server `%s` with %d tools", server_id, len(accepted))

    # ------------------------------------------------------------------
    # Lookup / dispatch
    # ------------------------------------------------------------------

    async def get_all_tools(self) -> list[types.Tool]:
        """Every catalogued tool, in server registration order."""
        async with self._lock.read():
            return [tool for tools in self._tools.values() for tool in tools]

    async def execute_tool(self, call: ToolCall) -> types.CallToolResult:
        """Run *call* on the server that owns the tool.

        Raises:
            AgentValidationError: Unknown tool or owning server not connected.
            ToolTimeoutError: The server did not answer within its timeout.
            AgentInternalError: The downstream call failed.
        """
        async with self._lock.read():
            server_id = self._tool_index.get(call.name)
            if server_id is None:
                raise AgentValidationError(f"tool `{call.name}` not found")
            session = self._sessions.get(server_id)
            if session is None:
                raise AgentValidationError(f"not connected to server: {server_id}")

            cfg = self.servers.get(server_id)
            timeout = cfg.timeout if cfg is not None and cfg.timeout > 0 else self.default_tool_timeout
            logger.debug(">> tool %s on `%s` (timeout %gs)", call, server_id, timeout)
            try:
                result = await asyncio.wait_for(
                    session.call_tool(call.name, call.arguments), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise ToolTimeoutError(call.name, timeout) from None
            except AgentError:
                raise
            except Exception as e:
                raise AgentInternalError(f"failed to call tool `{call.name}`", original=e) from e
            logger.debug("<< tool %s: isError=%s", call.name, result.isError)
            return result

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close every connection; individual failures are logged, not raised."""
        async with self._lock.write():
            # LIFO so each transport's task group unwinds in entry order
            for server_id in reversed(list(self._stacks)):
                stack = self._stacks[server_id]
                try:
                    await stack.aclose()
                except Exception as e:
                    logger.error("Failed to close MCP client `%s`: %s", server_id, e)
            self._stacks.clear()
            self._sessions.clear()
            self._capabilities.clear()
            self._tools.clear()
            self._tool_index.clear()
