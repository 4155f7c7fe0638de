"""Tests for the MCP server facade and log forwarding. Agent is mocked."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp import types
from starlette.applications import Starlette

from mcp_orchestrator.agent import MetaInfo
from mcp_orchestrator.config import Configuration
from mcp_orchestrator.errors import (
    REDACTED,
    AgentExternalError,
    AgentValidationError,
    SessionLimitError,
)
from mcp_orchestrator.server import (
    PACKAGE_LOGGER,
    SET_LEVEL_TOOL_NAME,
    AgentMCPServer,
    MCPLogHandler,
    bound_session,
)


@pytest.fixture(autouse=True)
def _restore_package_level():
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    level = package_logger.level
    yield
    package_logger.setLevel(level)


def _config(**overrides) -> Configuration:
    return Configuration.model_validate(overrides)


def _server(answer="42", handler=None, **overrides):
    agent = MagicMock()
    if isinstance(answer, BaseException):
        agent.run = AsyncMock(side_effect=answer)
    else:
        agent.run = AsyncMock(return_value=(answer, MetaInfo(tokens=10, cost=0.01)))
    return AgentMCPServer(_config(**overrides), agent, log_handler=handler), agent


def _text(result: types.CallToolResult) -> str:
    return result.content[0].text


class TestConstruction:
    def test_both_transports_rejected(self):
        with pytest.raises(AgentValidationError, match="exactly one"):
            _server(runtime={"transports": {"http": {"enabled": True}}})

    def test_no_transport_rejected(self):
        with pytest.raises(AgentValidationError):
            _server(runtime={"transports": {"stdio": {"enabled": False}}})


class TestListTools:
    def test_configured_tool(self):
        server, _ = _server(agent={"tool": {
            "name": "ask", "description": "Ask anything",
            "argumentName": "query", "argumentDescription": "The question",
        }})
        tools = server.list_tools()
        assert [t.name for t in tools] == ["ask"]
        assert tools[0].description == "Ask anything"
        assert tools[0].inputSchema == {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "The question"}},
            "required": ["query"],
        }

    def test_set_level_tool_with_logging(self):
        server, _ = _server(handler=MCPLogHandler())
        tools = server.list_tools()
        assert [t.name for t in tools] == ["process", SET_LEVEL_TOOL_NAME]
        assert "emergency" in tools[1].inputSchema["properties"]["level"]["enum"]


class TestHandleToolCall:
    @pytest.mark.asyncio
    async def test_success(self):
        server, agent = _server("It is noon")
        result = await server.handle_tool_call("process", {"input": "What time is it?"})
        assert not result.isError
        assert _text(result) == "It is noon"
        agent.run.assert_awaited_once_with("What time is it?")

    @pytest.mark.asyncio
    async def test_missing_argument(self):
        server, agent = _server()
        result = await server.handle_tool_call("process", {})
        assert result.isError
        assert _text(result) == "missing or nil input argument: input"
        agent.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_none_arguments(self):
        server, _ = _server()
        result = await server.handle_tool_call("process", None)
        assert _text(result) == "missing or nil input argument: input"

    @pytest.mark.asyncio
    async def test_wrong_type(self):
        server, _ = _server()
        result = await server.handle_tool_call("process", {"input": 5})
        assert result.isError
        assert _text(result) == "invalid input argument type: expected string, got int"

    @pytest.mark.asyncio
    async def test_empty_input(self):
        server, _ = _server()
        result = await server.handle_tool_call("process", {"input": ""})
        assert _text(result) == "empty input variable"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        server, _ = _server()
        result = await server.handle_tool_call("other", {"input": "x"})
        assert result.isError
        assert _text(result) == "invalid tool name: other"

    @pytest.mark.asyncio
    async def test_agent_error_is_redacted(self):
        server, _ = _server(AgentExternalError("provider rejected key sk-abcdefghijklmnopqrstuvwx"))
        result = await server.handle_tool_call("process", {"input": "hi"})
        assert result.isError
        assert "sk-abcdefghij" not in _text(result)
        assert REDACTED in _text(result)

    @pytest.mark.asyncio
    async def test_session_limit_is_error_result(self):
        server, _ = _server(SessionLimitError("exceeded maximum number of LLM iterations (3)"))
        result = await server.handle_tool_call("process", {"input": "loop"})
        assert result.isError
        assert _text(result) == "exceeded maximum number of LLM iterations (3)"


class TestSetLevel:
    @pytest.mark.asyncio
    async def test_set_level_tool(self):
        handler = MCPLogHandler()
        server, _ = _server(handler=handler)
        result = await server.handle_tool_call(SET_LEVEL_TOOL_NAME, {"level": "warning"})
        assert not result.isError
        assert result.content == []
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.WARNING
        assert handler.level == logging.WARNING

    @pytest.mark.asyncio
    async def test_notice_maps_to_info(self):
        server, _ = _server(handler=MCPLogHandler())
        await server.handle_tool_call(SET_LEVEL_TOOL_NAME, {"level": "notice"})
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.INFO

    @pytest.mark.asyncio
    async def test_invalid_level(self):
        server, _ = _server(handler=MCPLogHandler())
        result = await server.handle_tool_call(SET_LEVEL_TOOL_NAME, {"level": "loud"})
        assert result.isError
        assert _text(result) == "invalid log level: loud"

    @pytest.mark.asyncio
    async def test_not_offered_without_logging(self):
        server, _ = _server()
        result = await server.handle_tool_call(SET_LEVEL_TOOL_NAME, {"level": "debug"})
        assert _text(result) == f"invalid tool name: {SET_LEVEL_TOOL_NAME}"


# ---------------------------------------------------------------------------
# Log forwarding
# ---------------------------------------------------------------------------


def _record(level=logging.WARNING, msg="disk %s", args=("full",), name="mcp_orchestrator.x", **extra):
    record = logging.LogRecord(name, level, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMCPLogHandler:
    def test_payload(self):
        payload = MCPLogHandler.payload(_record(server_id="clock"))
        assert payload == {
            "level": "warning",
            "message": "disk full",
            "delivered_to_client": True,
            "data": {"server_id": "clock"},
        }

    def test_payload_without_extras(self):
        assert "data" not in MCPLogHandler.payload(_record(level=logging.INFO))

    @pytest.mark.asyncio
    async def test_emit_forwards_to_sink(self):
        sink = AsyncMock()
        handler = MCPLogHandler()
        handler.attach(sink, asyncio.get_running_loop())
        handler.emit(_record())
        for _ in range(3):
            await asyncio.sleep(0)
        sink.send_log.assert_awaited_once()
        level, data = sink.send_log.await_args.args
        assert level == "warning"
        assert data["message"] == "disk full"

    @pytest.mark.asyncio
    async def test_delivery_records_not_forwarded(self):
        sink = AsyncMock()
        handler = MCPLogHandler()
        handler.attach(sink, asyncio.get_running_loop())
        handler.emit(_record(name="mcp_orchestrator.server.delivery"))
        await asyncio.sleep(0)
        sink.send_log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_detached_handler_drops_records(self):
        sink = AsyncMock()
        handler = MCPLogHandler()
        handler.emit(_record())
        handler.attach(sink, asyncio.get_running_loop())
        handler.detach()
        handler.emit(_record())
        for _ in range(3):
            await asyncio.sleep(0)
        sink.send_log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emit_carries_bound_session(self):
        sink = AsyncMock()
        session = AsyncMock()
        handler = MCPLogHandler()
        handler.attach(sink, asyncio.get_running_loop())
        with bound_session(session):
            handler.emit(_record())
        handler.emit(_record())
        for _ in range(3):
            await asyncio.sleep(0)
        first, second = sink.send_log.await_args_list
        assert first.kwargs["session"] is session
        assert second.kwargs["session"] is None

    @pytest.mark.asyncio
    async def test_records_below_client_level_dropped(self):
        sink = AsyncMock()
        handler = MCPLogHandler()
        server, _ = _server(handler=handler)
        handler.attach(sink, asyncio.get_running_loop())
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(handler)
        try:
            await server.handle_tool_call(SET_LEVEL_TOOL_NAME, {"level": "warning"})
            log = logging.getLogger("mcp_orchestrator.agent")
            log.info("quiet")
            log.warning("loud")
            for _ in range(3):
                await asyncio.sleep(0)
        finally:
            package_logger.removeHandler(handler)
        messages = [c.args[1]["message"] for c in sink.send_log.await_args_list]
        assert messages == ["loud"]


class TestSendLog:
    @pytest.mark.asyncio
    async def test_sends_to_known_sessions(self):
        server, _ = _server(handler=MCPLogHandler())
        session = AsyncMock()
        server._sessions.add(session)
        await server.send_log("info", {"message": "hello"})
        session.send_log_message.assert_awaited_once_with(
            level="info", data={"message": "hello"}, logger="mcp-orchestrator"
        )

    @pytest.mark.asyncio
    async def test_request_logs_reach_only_calling_client(self):
        handler = MCPLogHandler()
        server, _ = _server(handler=handler)
        handler.attach(server, asyncio.get_running_loop())
        caller, bystander = AsyncMock(), AsyncMock()
        server._sessions.add(caller)
        server._sessions.add(bystander)
        with bound_session(caller):
            handler.emit(_record(
                level=logging.INFO,
                msg=">> Start new session with query: %s",
                args=("my secret question",),
            ))
        for _ in range(3):
            await asyncio.sleep(0)
        caller.send_log_message.assert_awaited_once()
        assert caller.send_log_message.await_args.kwargs["data"]["message"] == (
            ">> Start new session with query: my secret question"
        )
        assert bystander.send_log_message.await_count == 0

    @pytest.mark.asyncio
    async def test_unowned_records_reach_every_client(self):
        server, _ = _server(handler=MCPLogHandler())
        first, second = AsyncMock(), AsyncMock()
        server._sessions.add(first)
        server._sessions.add(second)
        await server.send_log("info", {"message": "starting"})
        first.send_log_message.assert_awaited_once()
        second.send_log_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_broken_session_dropped(self):
        server, _ = _server(handler=MCPLogHandler())
        session = AsyncMock()
        session.send_log_message.side_effect = RuntimeError("closed")
        server._sessions.add(session)
        await server.send_log("info", {"message": "hello"})
        assert session not in server._sessions


class TestTransports:
    def test_sse_app_routes(self):
        server, _ = _server(runtime={"transports": {"stdio": {"enabled": False}, "http": {"enabled": True}}})
        app = server.sse_app()
        assert isinstance(app, Starlette)
        paths = {route.path for route in app.routes}
        assert {"/sse", "/messages"} <= paths
