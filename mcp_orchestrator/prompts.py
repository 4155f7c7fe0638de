"""System-prompt and tool-catalog rendering with Jinja2 templates.

The configured prompt template is a Jinja2 string that receives the user
request (under the configured argument name and under ``input``) and a
rendered description of the tool catalog (``tools``)::

    You are a helpful assistant. Respond to: {{input}}
    Available tools:
    {{tools}}

Placeholders the orchestrator does not provide are rendered back verbatim,
so templates can carry text meant for the model that happens to use braces.

Usage::

    from mcp_orchestrator.prompts import render_system_prompt, render_tools_description

    tools_text = render_tools_description(tools)
    prompt = render_system_prompt(template, "input", "What time is it?", tools_text)
"""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from jinja2 import BaseLoader, Environment, TemplateNotFound, Undefined

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{([^{}]+)\}\}")

TOOLS_DESCRIPTION_TEMPLATE = """
{%- for tool in tools %}
- `{{ tool.name }}` - {{ tool.description or "" }}
{%- if tool.inputSchema and tool.inputSchema.get("properties") -%}
. Arguments:
{%- for name, prop in tool.inputSchema["properties"].items() %}
  * `{{ name }}` ({{ prop.get("type", "any") }}): {{ prop.get("description", "") }}
{%- endfor %}
{%- else -%}
. No arguments required.
{%- endif %}
{%- endfor %}
"""


class _InlineLoader(BaseLoader):
    """Jinja2 loader for inline strings (no filesystem template inheritance)."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


class _PassthroughUndefined(Undefined):
    """Renders an unknown ``{{ name }}`` back as itself.

    Attribute and item lookups on it (``{{ user.name }}``, ``{{ cfg['k'] }}``)
    stay undefined and keep the full expression path.
    """

    def __str__(self) -> str:
        return "{{ %s }}" % (self._undefined_name or "")

    def __getattr__(self, name: str) -> "_PassthroughUndefined":
        if name[:2] == "__":
            raise AttributeError(name)
        return type(self)(name=f"{self._undefined_name}.{name}")

    def __getitem__(self, key: Any) -> "_PassthroughUndefined":
        return type(self)(name=f"{self._undefined_name}[{key!r}]")


_tools_env = Environment(loader=_InlineLoader())
_prompt_env = Environment(loader=_InlineLoader(), undefined=_PassthroughUndefined)
_tools_template = _tools_env.from_string(TOOLS_DESCRIPTION_TEMPLATE)


def template_placeholders(template: str) -> set[str]:
    """Names used in ``{{ ... }}`` expressions of *template*, stripped."""
    return {m.group(1).strip() for m in _PLACEHOLDER_RE.finditer(template)}


def prompt_template_errors(template: str, argument_name: str) -> list[str]:
    """Problems with a system-prompt template; empty when it is usable."""
    placeholders = template_placeholders(template)
    errors: list[str] = []
    if argument_name not in placeholders and "input" not in placeholders:
        errors.append(f"prompt template must contain the {{{{{argument_name}}}}} placeholder")
    if "tools" not in placeholders:
        errors.append("prompt template must contain the {{tools}} placeholder")
    return errors


def validate_prompt_template(template: str, argument_name: str) -> None:
    """Reject a template lacking the request or ``tools`` placeholder.

    Raises:
        ValueError: Naming the first missing placeholder.
    """
    errors = prompt_template_errors(template, argument_name)
    if errors:
        raise ValueError(errors[0])


def render_tools_description(tools: Sequence[Any]) -> str:
    """One bullet per tool, with a nested argument list or "No arguments required."."""
    return _tools_template.render(tools=list(tools)).strip(" \n")


def render_system_prompt(
    template: str,
    argument_name: str,
    user_input: str,
    tools_description: str,
) -> str:
    """Render the configured system-prompt template.

    The request text is substituted verbatim; it is never parsed as a template.
    """
    rendered = _prompt_env.from_string(template).render(
        **{argument_name: user_input, "input": user_input, "tools": tools_description}
    )
    logger.debug("Rendered system prompt (%d chars)", len(rendered))
    return rendered
