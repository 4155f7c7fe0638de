"""Command-line entry point.

Usage:
    python -m mcp_orchestrator --config agent.yaml             # MCP server on stdio
    python -m mcp_orchestrator --config agent.yaml --daemon    # MCP server on HTTP/SSE
    python -m mcp_orchestrator --config agent.yaml --call "What time is it?"

``--call`` bypasses the MCP server, runs one request and prints a JSON
envelope ``{"success", "result": {"answer"}, "meta", "error"}``. Exit codes:
0 success, 1 configuration or user error, 2 anything else.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from mcp_orchestrator.app import Application, DirectCallResult
from mcp_orchestrator.config import Configuration, load_configuration
from mcp_orchestrator.errors import AgentError, sanitize_error
from mcp_orchestrator.logs import configure_logging
from mcp_orchestrator.server import MCPLogHandler

logger = logging.getLogger("mcp_orchestrator.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-orchestrator",
        description="MCP server that answers requests with an LLM using downstream MCP tools",
    )
    parser.add_argument("--config", help="Path to configuration file (YAML or JSON)")
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Serve MCP over HTTP/SSE instead of stdio",
    )
    parser.add_argument(
        "--call",
        metavar="TEXT",
        help="Run one request directly (bypasses the MCP server) and print a JSON result",
    )
    return parser


def _print_result(result: DirectCallResult) -> None:
    print(json.dumps(result.to_dict(), ensure_ascii=False))


async def _run_direct(config: Configuration, text: str) -> DirectCallResult:
    app = Application(config)
    try:
        await app.initialize()
    except Exception as e:
        await app.close()
        return DirectCallResult.failure("internal", str(sanitize_error(e)))
    try:
        return await app.call_direct(text)
    finally:
        await app.close()


async def _run_server(
    config: Configuration, handler: MCPLogHandler | None, daemon: bool
) -> None:
    async with Application(config, log_handler=handler) as app:
        await app.serve(daemon)


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    direct = args.call is not None

    try:
        config = load_configuration(args.config)
    except AgentError as e:
        if direct:
            _print_result(DirectCallResult.failure("config", str(sanitize_error(e))))
        else:
            print(f"Failed to load configuration: {sanitize_error(e)}", file=sys.stderr)
        sys.exit(1)

    if args.daemon:
        config.runtime.transports.stdio.enabled = False
        config.runtime.transports.http.enabled = True
    daemon = config.runtime.transports.http.enabled

    handler = configure_logging(config.runtime.log, protect_stdout=direct or not daemon)

    if direct:
        result = asyncio.run(_run_direct(config, args.call))
        _print_result(result)
        sys.exit(result.exit_code)

    try:
        asyncio.run(_run_server(config, handler, daemon))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except AgentError as e:
        logger.error("Main application failed: %s", sanitize_error(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
