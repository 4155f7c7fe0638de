"""Local logging setup for the ``mcp_orchestrator`` logger tree.

Usage::

    mcp_handler = configure_logging(config.runtime.log, protect_stdout=True)
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, TextIO

from mcp_orchestrator.config import LogSettings
from mcp_orchestrator.log_levels import parse_level_name, record_extras
from mcp_orchestrator.server import PACKAGE_LOGGER, MCPLogHandler

logger = logging.getLogger(__name__)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_INSTALLED_MARK = "_mcp_orchestrator_handler"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _formatter(fmt: str, stream: TextIO | None) -> logging.Formatter:
    if fmt == "auto":
        is_tty = stream is not None and hasattr(stream, "isatty") and stream.isatty()
        fmt = "text" if is_tty else "json"
    if fmt == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT)


def _local_handler(settings: LogSettings, protect_stdout: bool) -> logging.Handler | None:
    output = settings.output.strip()
    if output.lower() == "mcp":
        return None
    if output.lower() == "stdout":
        if protect_stdout:
            logger.warning("stdout carries the MCP protocol; logging to stderr instead")
            output = "stderr"
        else:
            handler: logging.Handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(_formatter(settings.format, sys.stdout))
            return handler
    if output.lower() in ("", "stderr"):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_formatter(settings.format, sys.stderr))
        return handler
    handler = logging.FileHandler(output, encoding="utf-8")
    handler.setFormatter(_formatter(settings.format, None))
    return handler


def configure_logging(
    settings: LogSettings, protect_stdout: bool = False
) -> MCPLogHandler | None:
    """Install handlers on the package logger.

    Replaces handlers installed by an earlier call. Returns the MCP log
    handler (not yet attached to a server) unless ``disableMCP`` is set.
    ``protect_stdout`` redirects ``output: stdout`` to stderr, for the stdio
    transport.
    """
    level = parse_level_name(settings.default_level)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for old in list(package_logger.handlers):
        if getattr(old, _INSTALLED_MARK, False):
            package_logger.removeHandler(old)
            old.close()
    package_logger.setLevel(level)
    package_logger.propagate = False

    handlers: list[logging.Handler] = []
    local = _local_handler(settings, protect_stdout)
    if local is not None:
        handlers.append(local)

    mcp_handler: MCPLogHandler | None = None
    if not settings.disable_mcp:
        mcp_handler = MCPLogHandler(level)
        handlers.append(mcp_handler)

    for handler in handlers:
        setattr(handler, _INSTALLED_MARK, True)
        package_logger.addHandler(handler)

    # Quiet chatty third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return mcp_handler
