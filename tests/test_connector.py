"""Tests for the downstream MCP connector. All mocked (no real MCP servers).

Sessions are registered directly through ``_register_server`` or by patching
``_open``, so no child process or network transport is started.
"""

# mock-ok: MCP servers require subprocess lifecycle; unit tests must mock

from __future__ import annotations

import asyncio
import logging
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from mcp import types

from mcp_orchestrator.config import MCPServerConnection
from mcp_orchestrator.connector import MCPConnector
from mcp_orchestrator.errors import (
    AgentExternalError,
    AgentInternalError,
    AgentTransientError,
    AgentValidationError,
    RetryConfig,
    ToolTimeoutError,
)
from mcp_orchestrator.llm import ToolCall

_NO_RETRY = RetryConfig(max_retries=1, initial_backoff=0.0, max_backoff=0.0)


def _tool(name: str) -> types.Tool:
    return types.Tool(name=name, description=name, inputSchema={"type": "object"})


def _ok(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def _session(result: types.CallToolResult | None = None) -> AsyncMock:
    session = AsyncMock()
    session.call_tool.return_value = result or _ok("ok")
    return session


def _connector(**servers: MCPServerConnection) -> MCPConnector:
    return MCPConnector(servers, retry=_NO_RETRY)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    @pytest.mark.asyncio
    async def test_tools_in_registration_order(self):
        connector = _connector(a=MCPServerConnection(command="a"), b=MCPServerConnection(command="b"))
        connector._register_server("a", _session(), [_tool("one"), _tool("two")])
        connector._register_server("b", _session(), [_tool("three")])
        names = [t.name for t in await connector.get_all_tools()]
        assert names == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_include_filter(self):
        connector = _connector(a=MCPServerConnection(command="a", include_tools=["two"]))
        connector._register_server("a", _session(), [_tool("one"), _tool("two")])
        assert [t.name for t in await connector.get_all_tools()] == ["two"]

    @pytest.mark.asyncio
    async def test_exclude_wins_over_include(self):
        connector = _connector(a=MCPServerConnection(
            command="a", include_tools=["one", "two"], exclude_tools=["one"]
        ))
        connector._register_server("a", _session(), [_tool("one"), _tool("two")])
        assert [t.name for t in await connector.get_all_tools()] == ["two"]

    @pytest.mark.asyncio
    async def test_duplicate_name_first_server_wins(self, caplog):
        first, second = _session(_ok("from a")), _session(_ok("from b"))
        connector = _connector(a=MCPServerConnection(command="a"), b=MCPServerConnection(command="b"))
        connector._register_server("a", first, [_tool("dup")])
        with caplog.at_level(logging.WARNING, logger="mcp_orchestrator.connector"):
            connector._register_server("b", second, [_tool("dup")])

        assert [t.name for t in await connector.get_all_tools()] == ["dup"]
        result = await connector.execute_tool(ToolCall(id="1", name="dup"))
        assert result.content[0].text == "from a"
        assert "Duplicate tool 'dup'" in caplog.text


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestExecuteTool:
    @pytest.mark.asyncio
    async def test_routes_to_owner(self):
        a, b = _session(_ok("a")), _session(_ok("b"))
        connector = _connector(a=MCPServerConnection(command="a"), b=MCPServerConnection(command="b"))
        connector._register_server("a", a, [_tool("one")])
        connector._register_server("b", b, [_tool("two")])

        result = await connector.execute_tool(ToolCall(id="1", name="two", arguments={"x": 1}))
        assert result.content[0].text == "b"
        b.call_tool.assert_awaited_once_with("two", {"x": 1})
        a.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_result_passed_through(self):
        failing = types.CallToolResult(
            content=[types.TextContent(type="text", text="bad zone")], isError=True
        )
        connector = _connector(a=MCPServerConnection(command="a"))
        connector._register_server("a", _session(failing), [_tool("clock")])
        result = await connector.execute_tool(ToolCall(id="1", name="clock"))
        assert result.isError is True

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        connector = _connector()
        with pytest.raises(AgentValidationError, match="tool `nope` not found"):
            await connector.execute_tool(ToolCall(id="1", name="nope"))

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        session = AsyncMock()
        session.call_tool.side_effect = slow
        connector = _connector(a=MCPServerConnection(command="a", timeout=0.01))
        connector._register_server("a", session, [_tool("slow")])
        with pytest.raises(ToolTimeoutError, match="tool 'slow' execution timed out after 0.01 seconds"):
            await connector.execute_tool(ToolCall(id="1", name="slow"))

    @pytest.mark.asyncio
    async def test_default_timeout_used(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        session = AsyncMock()
        session.call_tool.side_effect = slow
        connector = MCPConnector(
            {"a": MCPServerConnection(command="a")}, retry=_NO_RETRY, default_tool_timeout=0.01
        )
        connector._register_server("a", session, [_tool("slow")])
        with pytest.raises(ToolTimeoutError):
            await connector.execute_tool(ToolCall(id="1", name="slow"))

    @pytest.mark.asyncio
    async def test_transport_failure_wrapped(self):
        session = AsyncMock()
        session.call_tool.side_effect = RuntimeError("pipe closed")
        connector = _connector(a=MCPServerConnection(command="a"))
        connector._register_server("a", session, [_tool("clock")])
        with pytest.raises(AgentInternalError, match="failed to call tool `clock`"):
            await connector.execute_tool(ToolCall(id="1", name="clock"))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_lists_tools(self):
        session = _session()
        session.list_tools.return_value = SimpleNamespace(tools=[_tool("clock")])
        connector = _connector(a=MCPServerConnection(command="a"))
        with patch.object(MCPConnector, "_open", new=AsyncMock(return_value=(session, None))):
            await connector.connect()
        assert [t.name for t in await connector.get_all_tools()] == ["clock"]

    @pytest.mark.asyncio
    async def test_missing_command_and_url(self):
        connector = _connector(a=MCPServerConnection())
        with pytest.raises(AgentValidationError, match="neither command nor url"):
            await connector.connect()

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        session = _session()
        session.list_tools.return_value = SimpleNamespace(tools=[])
        opener = AsyncMock(side_effect=[AgentTransientError("spawn failed"), (session, None)])
        connector = _connector(a=MCPServerConnection(command="a"))
        with patch.object(MCPConnector, "_open", new=opener):
            await connector.connect()
        assert opener.await_count == 2

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        opener = AsyncMock(side_effect=AgentTransientError("spawn failed"))
        connector = _connector(a=MCPServerConnection(command="a"))
        with patch.object(MCPConnector, "_open", new=opener):
            with pytest.raises(AgentExternalError, match="failed to connect to MCP server a"):
                await connector.connect()

    @pytest.mark.asyncio
    async def test_list_tools_failure(self):
        session = _session()
        session.list_tools.side_effect = RuntimeError("boom")
        connector = _connector(a=MCPServerConnection(command="a"))
        with patch.object(MCPConnector, "_open", new=AsyncMock(return_value=(session, None))):
            with pytest.raises(AgentExternalError, match="failed to list tools from MCP server a"):
                await connector.connect()

    @pytest.mark.asyncio
    async def test_close_clears_catalog(self):
        connector = _connector(a=MCPServerConnection(command="a"))
        connector._register_server("a", _session(), [_tool("clock")])
        await connector.close()
        assert await connector.get_all_tools() == []
        with pytest.raises(AgentValidationError):
            await connector.execute_tool(ToolCall(id="1", name="clock"))


class TestNotifications:
    @pytest.mark.asyncio
    async def test_downstream_log_relogged(self, caplog):
        connector = _connector()
        callback = connector._logging_callback("clock-server")
        params = types.LoggingMessageNotificationParams(
            level="warning", data={"message": "disk almost full"}
        )
        with caplog.at_level(logging.DEBUG, logger="mcp_orchestrator.connector"):
            await callback(params)
        record = next(r for r in caplog.records if "disk almost full" in r.getMessage())
        assert record.getMessage() == "[MCP warning] disk almost full"
        assert record.levelno == logging.WARNING
        assert record.server_id == "clock-server"


class TestStderr:
    @staticmethod
    def _pump(connector: MCPConnector, text: str) -> None:
        read_fd, write_fd = os.pipe()
        os.write(write_fd, text.encode())
        os.close(write_fd)
        connector._pump_stderr("clock", read_fd)

    def test_lines_logged_at_info_with_server_prefix(self, caplog):
        connector = _connector()
        with caplog.at_level(logging.DEBUG, logger="mcp_orchestrator.connector"):
            self._pump(connector, "  starting up \r\n   \n\nready\n")
        records = [r for r in caplog.records if "stderr" in r.getMessage()]
        assert [r.getMessage() for r in records] == [
            "`clock` stderr: starting up",
            "`clock` stderr: ready",
        ]
        assert all(r.levelno == logging.INFO for r in records)

    def test_debug_when_server_supports_logging(self, caplog):
        connector = _connector()
        connector._register_server(
            "clock", _session(), [],
            capabilities=types.ServerCapabilities(logging=types.LoggingCapability()),
        )
        with caplog.at_level(logging.DEBUG, logger="mcp_orchestrator.connector"):
            self._pump(connector, "ready\n")
        record = next(r for r in caplog.records if "stderr" in r.getMessage())
        assert record.levelno == logging.DEBUG
