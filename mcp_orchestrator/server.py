"""MCP server facade: exposes the agent as one MCP tool.

Serves over stdio (default) or HTTP/SSE (Starlette + uvicorn). Besides the
configured tool it offers ``logging/setLevel``, both as a tool and as the
protocol request, when MCP logging is enabled; local log records are then
forwarded to connected clients as ``notifications/message``.

Usage::

    server = AgentMCPServer(config, agent, log_handler=handler)
    handler.attach(server, asyncio.get_running_loop())
    await server.serve()

Agent failures (budget, iteration cap, LLM errors) reach the client as
successful RPCs carrying an error-marked tool result.

Records logged while a client request is being handled go to that client
only. Records with no owning request (startup, downstream stderr and
notifications) go to every client that has talked to the server.
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import io
import logging
import sys
import weakref
from typing import Any, Iterator, Protocol, runtime_checkable

import anyio
import uvicorn
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Mount, Route

from mcp_orchestrator.agent import Agent
from mcp_orchestrator.config import Configuration
from mcp_orchestrator.errors import AgentValidationError, sanitize_error
from mcp_orchestrator.log_levels import (
    MCP_LEVELS,
    parse_mcp_level,
    record_extras,
    to_mcp_level,
)

logger = logging.getLogger(__name__)
# Never forwarded to clients: failures while forwarding would loop.
_delivery_logger = logging.getLogger(__name__ + ".delivery")

SET_LEVEL_TOOL_NAME = "logging/setLevel"

PACKAGE_LOGGER = "mcp_orchestrator"

# MCP session of the client request the current task is serving.
request_session: contextvars.ContextVar[Any | None] = contextvars.ContextVar(
    "mcp_request_session", default=None
)


@contextlib.contextmanager
def bound_session(session: Any) -> Iterator[None]:
    """Attribute log records emitted inside the block to *session*."""
    token = request_session.set(session)
    try:
        yield
    finally:
        request_session.reset(token)


def _error_result(message: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)],
        isError=True,
    )


def _text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


class ToolCallFailed(Exception):
    """Raised from the MCP handler so the SDK returns an error-marked result."""


# ---------------------------------------------------------------------------
# Log forwarding
# ---------------------------------------------------------------------------


@runtime_checkable
class LogSink(Protocol):
    async def send_log(
        self, level: str, data: dict[str, Any], session: Any | None = None
    ) -> None: ...


class MCPLogHandler(logging.Handler):
    """Forwards log records to an MCP client through a :class:`LogSink`.

    Records are dropped until :meth:`attach` wires a sink and the event loop
    it runs on. ``emit`` may be called from any thread; the owning session is
    read from :data:`request_session` on the emitting thread.
    """

    def __init__(self, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._sink: LogSink | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[asyncio.Future[Any]] = set()

    def attach(self, sink: LogSink, loop: asyncio.AbstractEventLoop) -> None:
        self._sink = sink
        self._loop = loop

    def detach(self) -> None:
        self._sink = None
        self._loop = None

    @staticmethod
    def payload(record: logging.LogRecord) -> dict[str, Any]:
        data: dict[str, Any] = {
            "level": to_mcp_level(record.levelno),
            "message": record.getMessage(),
            "delivered_to_client": True,
        }
        extras = record_extras(record)
        if extras:
            data["data"] = extras
        return data

    def emit(self, record: logging.LogRecord) -> None:
        sink, loop = self._sink, self._loop
        if sink is None or loop is None or loop.is_closed():
            return
        if record.name.startswith(_delivery_logger.name):
            return
        session = request_session.get()
        try:
            data = self.payload(record)
            loop.call_soon_threadsafe(self._schedule, sink, data["level"], data, session)
        except RuntimeError:
            # loop closed between the check and the call
            return
        except Exception:
            self.handleError(record)

    def _schedule(
        self, sink: LogSink, level: str, data: dict[str, Any], session: Any | None
    ) -> None:
        future = asyncio.ensure_future(sink.send_log(level, data, session=session))
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class AgentMCPServer:
    """The orchestrator's MCP server surface."""

    def __init__(
        self,
        config: Configuration,
        agent: Agent,
        log_handler: MCPLogHandler | None = None,
    ) -> None:
        transports = config.runtime.transports
        if transports.stdio.enabled == transports.http.enabled:
            raise AgentValidationError("exactly one of stdio or http transport must be enabled")

        self.config = config
        self.agent = agent
        self.log_handler = log_handler
        self.tool_settings = config.agent.tool
        self.name = config.agent.name
        self.server: Server = Server(config.agent.name, version=config.agent.version)
        self._sessions: weakref.WeakSet[Any] = weakref.WeakSet()
        self._register_handlers()

    @property
    def logging_enabled(self) -> bool:
        return self.log_handler is not None

    # ------------------------------------------------------------------
    # Tool surface
    # ------------------------------------------------------------------

    def list_tools(self) -> list[types.Tool]:
        tool = self.tool_settings
        tools = [types.Tool(
            name=tool.name,
            description=tool.description,
            inputSchema={
                "type": "object",
                "properties": {
                    tool.argument_name: {
                        "type": "string",
                        "description": tool.argument_description,
                    },
                },
                "required": [tool.argument_name],
            },
        )]
        if self.logging_enabled:
            tools.append(types.Tool(
                name=SET_LEVEL_TOOL_NAME,
                description="Set the minimum level of log messages sent to the client",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "level": {
                            "type": "string",
                            "description": "MCP log level",
                            "enum": list(MCP_LEVELS),
                        },
                    },
                    "required": ["level"],
                },
            ))
        return tools

    async def handle_tool_call(
        self, name: str, arguments: dict[str, Any] | None
    ) -> types.CallToolResult:
        """Dispatch one ``tools/call``; failures come back error-marked."""
        arguments = arguments or {}
        if name == self.tool_settings.name:
            return await self._call_agent(arguments)
        if name == SET_LEVEL_TOOL_NAME and self.logging_enabled:
            return self._call_set_level(arguments)
        return _error_result(f"invalid tool name: {name}")

    async def _call_agent(self, arguments: dict[str, Any]) -> types.CallToolResult:
        arg_name = self.tool_settings.argument_name
        value = arguments.get(arg_name)
        if value is None:
            return _error_result(f"missing or nil input argument: {arg_name}")
        if not isinstance(value, str):
            return _error_result(
                f"invalid input argument type: expected string, got {type(value).__name__}"
            )
        if value == "":
            return _error_result("empty input variable")

        logger.info(">> Start new session with query: %s", value)
        try:
            answer, meta = await self.agent.run(value)
        except Exception as e:
            err = sanitize_error(e)
            logger.error("Agent run failed: %s", err)
            return _error_result(str(err))
        logger.info(
            "<< Session finished: %d tokens, $%.4f, %dms", meta.tokens, meta.cost, meta.duration_ms
        )
        return _text_result(answer)

    def _call_set_level(self, arguments: dict[str, Any]) -> types.CallToolResult:
        level = arguments.get("level")
        if not isinstance(level, str):
            return _error_result("missing or nil input argument: level")
        try:
            self.set_level(level)
        except ValueError as e:
            return _error_result(str(e))
        return types.CallToolResult(content=[])

    def set_level(self, level: str) -> None:
        """Apply an MCP log level to the package logger and the forwarder.

        Raises:
            ValueError: For a name that is not an MCP level.
        """
        levelno = parse_mcp_level(level)
        logging.getLogger(PACKAGE_LOGGER).setLevel(levelno)
        if self.log_handler is not None:
            self.log_handler.setLevel(levelno)
        logger.info("Log level set to %s", level)

    # ------------------------------------------------------------------
    # Log sink
    # ------------------------------------------------------------------

    async def send_log(
        self, level: str, data: dict[str, Any], session: Any | None = None
    ) -> None:
        """Deliver one record to *session*, or to every known session when None."""
        targets = [session] if session is not None else list(self._sessions)
        for target in targets:
            try:
                await target.send_log_message(level=level, data=data, logger=self.name)
            except Exception as e:
                self._sessions.discard(target)
                _delivery_logger.debug("Dropping MCP log session: %s", e)

    def _current_session(self) -> Any | None:
        try:
            session = self.server.request_context.session
        except LookupError:
            return None
        self._sessions.add(session)
        return session

    # ------------------------------------------------------------------
    # MCP wiring
    # ------------------------------------------------------------------

    def _register_handlers(self) -> None:
        server = self.server

        @server.list_tools()
        async def list_tools() -> list[types.Tool]:
            self._current_session()
            return self.list_tools()

        @server.call_tool(validate_input=False)
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            with bound_session(self._current_session()):
                result = await self.handle_tool_call(name, arguments)
            if result.isError:
                raise ToolCallFailed(
                    "\n".join(c.text for c in result.content if isinstance(c, types.TextContent))
                )
            return [c for c in result.content if isinstance(c, types.TextContent)]

        if self.logging_enabled:
            @server.set_logging_level()
            async def set_logging_level(level: types.LoggingLevel) -> None:
                with bound_session(self._current_session()):
                    self.set_level(level)

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    async def serve(self, daemon: bool | None = None) -> None:
        """Serve on the configured transport; ``daemon`` forces HTTP/SSE (True) or stdio (False)."""
        transports = self.config.runtime.transports
        use_http = transports.http.enabled if daemon is None else daemon
        if use_http:
            await self.serve_sse(transports.http.host, transports.http.port)
        else:
            await self.serve_stdio()

    async def serve_stdio(self) -> None:
        buffer_size = self.config.runtime.transports.stdio.buffer_size
        stdin = anyio.wrap_file(io.TextIOWrapper(
            open(sys.stdin.fileno(), "rb", buffering=buffer_size, closefd=False),
            encoding="utf-8",
        ))
        stdout = anyio.wrap_file(io.TextIOWrapper(
            open(sys.stdout.fileno(), "wb", buffering=buffer_size, closefd=False),
            encoding="utf-8",
        ))
        logger.info("Serving MCP on stdio")
        async with stdio_server(stdin=stdin, stdout=stdout) as (read, write):
            await self.server.run(read, write, self.server.create_initialization_options())

    def sse_app(self) -> Starlette:
        sse = SseServerTransport("/messages/")

        async def handle_sse(request):
            async with sse.connect_sse(request.scope, request.receive, request._send) as streams:
                await self.server.run(
                    streams[0], streams[1], self.server.create_initialization_options()
                )
            return Response()

        return Starlette(routes=[
            Route("/sse", endpoint=handle_sse, methods=["GET"]),
            Mount("/messages/", app=sse.handle_post_message),
        ])

    async def serve_sse(self, host: str, port: int) -> None:
        logger.info("Serving MCP over HTTP/SSE on %s:%d", host, port)
        config = uvicorn.Config(self.sse_app(), host=host, port=port, log_level="info")
        await uvicorn.Server(config).serve()
