"""Typed runtime configuration for mcp_orchestrator.

Configuration is assembled from three layers, later layers winning field by
field: built-in defaults, an optional YAML/JSON file, and ``SPL_*``
environment variables. Keys may be written in snake_case (``max_tokens``) or
camelCase (``maxTokens``).

Usage::

    from mcp_orchestrator.config import load_configuration

    config = load_configuration("agent.yaml")
    print(config.agent.tool.name, list(config.agent.connections.mcp_servers))
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from mcp_orchestrator.compaction import STRATEGIES as COMPACTION_STRATEGIES
from mcp_orchestrator.errors import AgentValidationError, RetryConfig
from mcp_orchestrator.log_levels import parse_level_name
from mcp_orchestrator.prompts import prompt_template_errors

logger = logging.getLogger(__name__)

ENV_PREFIX = "SPL_"

DEFAULT_PROMPT_TEMPLATE = (
    "You are a helpful assistant. Respond to the following request: {{input}}. "
    "Available tools: {{tools}}"
)


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class LogSettings(_Section):
    default_level: str = "info"
    format: Literal["text", "json", "auto"] = "text"
    output: str = "stderr"  # stderr | stdout | mcp | <file path>
    disable_mcp: bool = Field(default=False, alias="disableMCP")


class StdioSettings(_Section):
    enabled: bool = True
    buffer_size: int = 8192


class HTTPSettings(_Section):
    enabled: bool = False
    host: str = "localhost"
    port: int = 3000


class TransportSettings(_Section):
    stdio: StdioSettings = Field(default_factory=StdioSettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)


class RuntimeSettings(_Section):
    log: LogSettings = Field(default_factory=LogSettings)
    transports: TransportSettings = Field(default_factory=TransportSettings)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class RetrySettings(_Section):
    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_backoff=self.initial_backoff,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff=self.max_backoff,
        )


class ToolSettings(_Section):
    name: str = "process"
    description: str = "Process user queries with LLM"
    argument_name: str = "input"
    argument_description: str = "The user query to process"


class ChatSettings(_Section):
    max_tokens: int = 8192
    max_llm_iterations: int = Field(default=100, alias="maxLLMIterations")
    request_budget: float = 1.0
    compaction_strategy: str | None = "delete-old"


class LLMSettings(_Section):
    provider: str = "openai"
    model: str = "gpt-4"
    api_key: str = ""
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    max_tokens: int | None = None
    temperature: float | None = 0.7
    retry: RetrySettings = Field(default_factory=RetrySettings)


class MCPServerConnection(_Section):
    """One downstream MCP server: a command (stdio) or a URL (HTTP/SSE)."""

    url: str = ""
    api_key: str = ""
    command: str = ""
    args: list[str] = []
    environment: list[str] = []  # "KEY=VALUE" entries
    include_tools: list[str] = []
    exclude_tools: list[str] = []
    timeout: float = 0.0  # seconds; 0 means the connector default

    def is_tool_allowed(self, name: str) -> bool:
        """Exclude list wins; a non-empty include list is an allow-list."""
        if name in self.exclude_tools:
            return False
        if self.include_tools and name not in self.include_tools:
            return False
        return True

    def environment_map(self) -> dict[str, str]:
        env: dict[str, str] = {}
        for entry in self.environment:
            key, sep, value = entry.partition("=")
            if not sep or not key:
                logger.warning("Ignoring malformed environment entry %r", entry)
                continue
            env[key] = value
        return env


class ConnectionSettings(_Section):
    mcp_servers: dict[str, MCPServerConnection] = {}
    retry: RetrySettings = Field(default_factory=RetrySettings)


class AgentSettings(_Section):
    name: str = "mcp-orchestrator"
    version: str = "1.0.0"
    tool: ToolSettings = Field(default_factory=ToolSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    connections: ConnectionSettings = Field(default_factory=ConnectionSettings)


class Configuration(_Section):
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    def validation_errors(self) -> list[str]:
        """Every semantic problem with this configuration (empty when valid)."""
        errors: list[str] = []
        agent = self.agent
        if not agent.name:
            errors.append("agent name is required")

        tool = agent.tool
        for label, value in (
            ("tool name", tool.name),
            ("tool description", tool.description),
            ("tool argument name", tool.argument_name),
            ("tool argument description", tool.argument_description),
        ):
            if not value:
                errors.append(f"{label} is required")

        llm = agent.llm
        for label, value in (
            ("LLM provider", llm.provider),
            ("LLM model", llm.model),
            ("LLM API key", llm.api_key),
            ("LLM prompt template", llm.prompt_template),
        ):
            if not value:
                errors.append(f"{label} is required")
        if llm.prompt_template and tool.argument_name:
            errors.extend(prompt_template_errors(llm.prompt_template, tool.argument_name))

        try:
            parse_level_name(self.runtime.log.default_level)
        except ValueError as e:
            errors.append(str(e))

        transports = self.runtime.transports
        if transports.stdio.enabled == transports.http.enabled:
            errors.append("exactly one of stdio or http transport must be enabled")

        chat = agent.chat
        if chat.max_llm_iterations <= 0:
            errors.append("chat max LLM iterations must be positive")
        if chat.max_tokens < 0:
            errors.append("chat max tokens must not be negative")
        if chat.request_budget < 0:
            errors.append("chat request budget must not be negative")
        if chat.compaction_strategy and chat.compaction_strategy.lower() not in COMPACTION_STRATEGIES:
            errors.append(f"unknown compaction strategy: {chat.compaction_strategy}")

        for server_id, server in agent.connections.mcp_servers.items():
            if not server.command and not server.url:
                errors.append(f"MCP server `{server_id}`: either command or url is required")
            if server.timeout < 0:
                errors.append(f"MCP server `{server_id}`: timeout must not be negative")
        return errors

    def validate_or_raise(self) -> "Configuration":
        errors = self.validation_errors()
        if errors:
            raise AgentValidationError("invalid configuration: " + "; ".join(errors))
        return self


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _explicit_fields(raw: Mapping[str, Any], source: str) -> dict[str, Any]:
    """Validate one layer and keep only the fields it actually sets."""
    try:
        layer = Configuration.model_validate(raw)
    except ValidationError as e:
        raise AgentValidationError(f"invalid configuration in {source}", original=e) from e
    return layer.model_dump(exclude_unset=True)


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Parse a YAML (``.yaml``/``.yml``) or JSON configuration file."""
    p = Path(path)
    if not p.is_file():
        raise AgentValidationError(f"configuration file not found: {p}")
    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise AgentValidationError(f"failed to parse configuration file {p}", original=e) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise AgentValidationError(
            f"configuration file must hold a mapping, got {type(raw).__name__}: {p}"
        )
    return raw


# env var suffix -> path into the configuration tree
_ENV_FIELDS: dict[str, tuple[str, ...]] = {
    "LOG_LEVEL": ("runtime", "log", "default_level"),
    "LOG_FORMAT": ("runtime", "log", "format"),
    "LOG_OUTPUT": ("runtime", "log", "output"),
    "LOG_DISABLE_MCP": ("runtime", "log", "disable_mcp"),
    "TRANSPORTS_STDIO_ENABLED": ("runtime", "transports", "stdio", "enabled"),
    "TRANSPORTS_STDIO_BUFFER_SIZE": ("runtime", "transports", "stdio", "buffer_size"),
    "TRANSPORTS_HTTP_ENABLED": ("runtime", "transports", "http", "enabled"),
    "TRANSPORTS_HTTP_HOST": ("runtime", "transports", "http", "host"),
    "TRANSPORTS_HTTP_PORT": ("runtime", "transports", "http", "port"),
    "AGENT_NAME": ("agent", "name"),
    "AGENT_VERSION": ("agent", "version"),
    "TOOL_NAME": ("agent", "tool", "name"),
    "TOOL_DESCRIPTION": ("agent", "tool", "description"),
    "TOOL_ARGUMENT_NAME": ("agent", "tool", "argument_name"),
    "TOOL_ARGUMENT_DESCRIPTION": ("agent", "tool", "argument_description"),
    "CHAT_MAX_TOKENS": ("agent", "chat", "max_tokens"),
    "CHAT_MAX_ITERATIONS": ("agent", "chat", "max_llm_iterations"),
    "CHAT_REQUEST_BUDGET": ("agent", "chat", "request_budget"),
    "CHAT_COMPACTION_STRATEGY": ("agent", "chat", "compaction_strategy"),
    "LLM_PROVIDER": ("agent", "llm", "provider"),
    "LLM_MODEL": ("agent", "llm", "model"),
    "LLM_API_KEY": ("agent", "llm", "api_key"),
    "LLM_PROMPT_TEMPLATE": ("agent", "llm", "prompt_template"),
    "LLM_MAX_TOKENS": ("agent", "llm", "max_tokens"),
    "LLM_TEMPERATURE": ("agent", "llm", "temperature"),
}
for _group, _path in (("LLM_RETRY", ("agent", "llm", "retry")),
                      ("CONNECTIONS_RETRY", ("agent", "connections", "retry"))):
    for _name in ("max_retries", "initial_backoff", "max_backoff", "backoff_multiplier"):
        _ENV_FIELDS[f"{_group}_{_name.upper()}"] = _path + (_name,)


def _set_path(tree: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = tree
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _servers_from_env(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """Indexed ``SPL_MCPS_<i>_*`` servers; stops at the first missing ID."""
    servers: dict[str, dict[str, Any]] = {}
    index = 0
    while True:
        prefix = f"{ENV_PREFIX}MCPS_{index}_"
        server_id = environ.get(prefix + "ID", "")
        if not server_id:
            break
        server: dict[str, Any] = {}
        if environ.get(prefix + "COMMAND"):
            server["command"] = environ[prefix + "COMMAND"]
        if environ.get(prefix + "ARGS"):
            server["args"] = environ[prefix + "ARGS"].split()
        if environ.get(prefix + "URL"):
            server["url"] = environ[prefix + "URL"]
        if environ.get(prefix + "API_KEY"):
            server["api_key"] = environ[prefix + "API_KEY"]
        if environ.get(prefix + "INCLUDE_TOOLS"):
            server["include_tools"] = _split_list(environ[prefix + "INCLUDE_TOOLS"])
        if environ.get(prefix + "EXCLUDE_TOOLS"):
            server["exclude_tools"] = _split_list(environ[prefix + "EXCLUDE_TOOLS"])
        if environ.get(prefix + "TIMEOUT"):
            server["timeout"] = environ[prefix + "TIMEOUT"]
        env_prefix = prefix + "ENV_"
        env = [
            f"{key[len(env_prefix):]}={value}"
            for key, value in sorted(environ.items())
            if key.startswith(env_prefix)
        ]
        if env:
            server["environment"] = env
        servers[server_id] = server
        index += 1
    return servers


def config_from_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Raw configuration tree from ``SPL_*`` variables (unset ones omitted)."""
    if environ is None:
        environ = os.environ
    tree: dict[str, Any] = {}
    for suffix, path in _ENV_FIELDS.items():
        value = environ.get(ENV_PREFIX + suffix, "")
        if value != "":
            _set_path(tree, path, value)
    servers = _servers_from_env(environ)
    if servers:
        _set_path(tree, ("agent", "connections", "mcp_servers"), servers)
    return tree


def load_configuration(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Configuration:
    """Load, merge and validate configuration.

    Args:
        path: Optional YAML/JSON file.
        environ: Environment to read ``SPL_*`` variables from (default
            ``os.environ``).

    Raises:
        AgentValidationError: If a layer cannot be parsed or the merged
            configuration is invalid.
    """
    merged: dict[str, Any] = {}
    if path:
        merged = _deep_merge(merged, _explicit_fields(load_config_file(path), str(path)))
        logger.debug("Loaded configuration file %s", path)
    env_tree = config_from_env(environ)
    if env_tree:
        merged = _deep_merge(merged, _explicit_fields(env_tree, "environment"))
    config = Configuration.model_validate(merged)
    return config.validate_or_raise()
