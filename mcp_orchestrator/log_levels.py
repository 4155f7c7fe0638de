"""Log level mapping (stdlib, MCP, config names) and log record helpers."""

from __future__ import annotations

import logging
from typing import Any

# RFC 5424 severities used by MCP notifications/message
MCP_LEVELS = ("debug", "info", "notice", "warning", "error", "critical", "alert", "emergency")

_FROM_MCP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.ERROR,
    "alert": logging.ERROR,
    "emergency": logging.ERROR,
}

_CONFIG_NAMES = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "panic": logging.CRITICAL,
}


def to_mcp_level(levelno: int) -> str:
    """MCP level for a stdlib level number (anything above CRITICAL is an alert)."""
    if levelno > logging.CRITICAL:
        return "alert"
    if levelno >= logging.CRITICAL:
        return "critical"
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


def parse_mcp_level(level: str) -> int:
    """Stdlib level for an MCP level name.

    Raises:
        ValueError: If *level* is not an MCP level.
    """
    try:
        return _FROM_MCP[level.strip().lower()]
    except KeyError:
        raise ValueError(f"invalid log level: {level}") from None


def from_mcp_level(level: str) -> int:
    """Like :func:`parse_mcp_level` but unknown names map to INFO."""
    return _FROM_MCP.get(str(level).strip().lower(), logging.INFO)


def parse_level_name(name: str) -> int:
    """Stdlib level for a configured level name (``trace``, ``warn``, ``panic``, ...).

    Raises:
        ValueError: If the name is unknown.
    """
    try:
        return _CONFIG_NAMES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"unknown log level: {name}") from None


_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed through ``extra=`` on a log call."""
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
