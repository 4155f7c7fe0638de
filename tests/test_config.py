"""Tests for configuration loading, layering and validation."""

from __future__ import annotations

import json

import pytest

from mcp_orchestrator.config import (
    DEFAULT_PROMPT_TEMPLATE,
    Configuration,
    MCPServerConnection,
    config_from_env,
    load_config_file,
    load_configuration,
)
from mcp_orchestrator.errors import AgentValidationError

YAML_CONFIG = """
runtime:
  log:
    defaultLevel: debug
    format: json
  transports:
    stdio:
      enabled: true
agent:
  name: time-agent
  tool:
    name: ask_time
    argumentName: query
  chat:
    maxTokens: 4000
    maxLLMIterations: 5
    requestBudget: 0.1
  llm:
    provider: openai
    model: gpt-4o-mini
    apiKey: from-file
    promptTemplate: "Answer {{query}} using {{tools}}"
  connections:
    mcpServers:
      clock:
        command: uvx
        args: [mcp-server-time]
        environment: ["TZ=UTC"]
        excludeTools: [convert_time]
        timeout: 5
"""

KEY_ENV = {"SPL_LLM_API_KEY": "env-key"}


@pytest.fixture
def yaml_file(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text(YAML_CONFIG)
    return path


class TestDefaults:
    def test_defaults(self):
        config = Configuration()
        assert config.runtime.transports.stdio.enabled is True
        assert config.runtime.transports.http.enabled is False
        assert config.runtime.transports.http.port == 3000
        assert config.agent.tool.name == "process"
        assert config.agent.tool.argument_name == "input"
        assert config.agent.chat.max_tokens == 8192
        assert config.agent.chat.max_llm_iterations == 100
        assert config.agent.llm.prompt_template == DEFAULT_PROMPT_TEMPLATE

    def test_defaults_need_api_key(self):
        assert Configuration().validation_errors() == ["LLM API key is required"]


class TestFileLoading:
    def test_yaml(self, yaml_file):
        config = load_configuration(yaml_file, environ={})
        assert config.runtime.log.default_level == "debug"
        assert config.runtime.log.format == "json"
        assert config.agent.name == "time-agent"
        assert config.agent.tool.name == "ask_time"
        assert config.agent.tool.description == "Process user queries with LLM"
        assert config.agent.chat.max_llm_iterations == 5
        assert config.agent.llm.api_key == "from-file"
        clock = config.agent.connections.mcp_servers["clock"]
        assert clock.command == "uvx"
        assert clock.args == ["mcp-server-time"]
        assert clock.timeout == 5.0
        assert clock.environment_map() == {"TZ": "UTC"}

    def test_json(self, tmp_path):
        path = tmp_path / "agent.json"
        path.write_text(json.dumps({"agent": {"llm": {"api_key": "k"}, "tool": {"name": "t"}}}))
        config = load_configuration(path, environ={})
        assert config.agent.tool.name == "t"

    def test_missing_file(self, tmp_path):
        with pytest.raises(AgentValidationError, match="configuration file not found"):
            load_config_file(tmp_path / "nope.yaml")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("agent: [unclosed")
        with pytest.raises(AgentValidationError, match="failed to parse"):
            load_config_file(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(AgentValidationError, match="must hold a mapping"):
            load_config_file(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config_file(path) == {}

    def test_wrong_type(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text("agent:\n  chat:\n    maxTokens: lots\n")
        with pytest.raises(AgentValidationError, match="invalid configuration in"):
            load_configuration(path, environ=KEY_ENV)


class TestEnvironment:
    def test_env_overrides_file(self, yaml_file):
        config = load_configuration(yaml_file, environ={
            "SPL_LLM_API_KEY": "env-key",
            "SPL_CHAT_MAX_ITERATIONS": "7",
            "SPL_LOG_LEVEL": "warn",
        })
        assert config.agent.llm.api_key == "env-key"
        assert config.agent.chat.max_llm_iterations == 7
        assert config.runtime.log.default_level == "warn"
        # untouched file values survive
        assert config.agent.tool.name == "ask_time"
        assert config.agent.chat.max_tokens == 4000

    def test_env_only(self):
        config = load_configuration(environ={
            **KEY_ENV,
            "SPL_TRANSPORTS_STDIO_ENABLED": "false",
            "SPL_TRANSPORTS_HTTP_ENABLED": "true",
            "SPL_TRANSPORTS_HTTP_PORT": "8080",
            "SPL_LLM_RETRY_MAX_RETRIES": "5",
        })
        assert config.runtime.transports.http.enabled is True
        assert config.runtime.transports.http.port == 8080
        assert config.agent.llm.retry.max_retries == 5

    def test_indexed_servers(self):
        tree = config_from_env({
            "SPL_MCPS_0_ID": "clock",
            "SPL_MCPS_0_COMMAND": "uvx",
            "SPL_MCPS_0_ARGS": "mcp-server-time --local-timezone UTC",
            "SPL_MCPS_0_ENV_TZ": "UTC",
            "SPL_MCPS_0_EXCLUDE_TOOLS": "a, b",
            "SPL_MCPS_1_ID": "remote",
            "SPL_MCPS_1_URL": "http://localhost:9000/sse",
            "SPL_MCPS_3_ID": "skipped",
        })
        servers = tree["agent"]["connections"]["mcp_servers"]
        assert list(servers) == ["clock", "remote"]
        assert servers["clock"]["args"] == ["mcp-server-time", "--local-timezone", "UTC"]
        assert servers["clock"]["environment"] == ["TZ=UTC"]
        assert servers["clock"]["exclude_tools"] == ["a", "b"]
        assert servers["remote"] == {"url": "http://localhost:9000/sse"}

    def test_unset_variables_ignored(self):
        assert config_from_env({"UNRELATED": "1", "SPL_TOOL_NAME": ""}) == {}


class TestValidation:
    def _errors(self, **overrides) -> list[str]:
        data = {"agent": {"llm": {"apiKey": "k"}}}
        for section, values in overrides.items():
            data["agent"].setdefault(section, {}).update(values)
        return Configuration.model_validate(data).validation_errors()

    def test_valid(self):
        assert self._errors() == []

    def test_prompt_placeholders(self):
        errors = self._errors(llm={"promptTemplate": "no placeholders"})
        assert "prompt template must contain the {{input}} placeholder" in errors
        assert "prompt template must contain the {{tools}} placeholder" in errors

    def test_argument_name_placeholder(self):
        errors = self._errors(tool={"argumentName": "query"}, llm={"promptTemplate": "{{query}} {{tools}}"})
        assert errors == []

    def test_chat_limits(self):
        errors = self._errors(chat={"maxLLMIterations": 0, "requestBudget": -1})
        assert "chat max LLM iterations must be positive" in errors
        assert "chat request budget must not be negative" in errors

    def test_unknown_compaction(self):
        errors = self._errors(chat={"compactionStrategy": "summarize"})
        assert errors == ["unknown compaction strategy: summarize"]

    def test_server_without_command_or_url(self):
        errors = self._errors(connections={"mcpServers": {"x": {}}})
        assert errors == ["MCP server `x`: either command or url is required"]

    def test_bad_log_level(self):
        config = Configuration.model_validate({
            "runtime": {"log": {"defaultLevel": "chatty"}},
            "agent": {"llm": {"apiKey": "k"}},
        })
        assert config.validation_errors() == ["unknown log level: chatty"]

    def test_both_transports(self):
        config = Configuration.model_validate({
            "runtime": {"transports": {"http": {"enabled": True}}},
            "agent": {"llm": {"apiKey": "k"}},
        })
        assert config.validation_errors() == ["exactly one of stdio or http transport must be enabled"]

    def test_load_raises_with_all_errors(self):
        with pytest.raises(AgentValidationError, match="LLM API key is required") as exc_info:
            load_configuration(environ={"SPL_TOOL_NAME": "t", "SPL_CHAT_MAX_ITERATIONS": "0"})
        assert "chat max LLM iterations must be positive" in str(exc_info.value)


class TestServerConnection:
    def test_tool_filters(self):
        server = MCPServerConnection(include_tools=["a", "b"], exclude_tools=["b"])
        assert server.is_tool_allowed("a")
        assert not server.is_tool_allowed("b")
        assert not server.is_tool_allowed("c")
        assert MCPServerConnection().is_tool_allowed("anything")

    def test_malformed_environment_ignored(self):
        server = MCPServerConnection(environment=["A=1", "broken", "B=x=y"])
        assert server.environment_map() == {"A": "1", "B": "x=y"}
