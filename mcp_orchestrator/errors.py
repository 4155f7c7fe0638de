"""Structured error types, retry and credential sanitizing for mcp_orchestrator.

Every error raised by the orchestrator carries an :class:`ErrorCategory` so
callers can decide how to react without parsing messages:

    from mcp_orchestrator.errors import AgentError, ErrorCategory

    try:
        answer, meta = await agent.run(query)
    except AgentError as exc:
        if exc.category is ErrorCategory.TRANSIENT:
            # already retried by the LLM adapter; caller may try later
            ...

Retry::

    result = await retry_with_backoff(send_once, RetryConfig(max_retries=3))

Only errors categorized as transient are retried. Anything crossing an external
boundary (MCP client, direct-call output, logs of provider failures) should go
through :func:`sanitize_error` first.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import litellm as _lt

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, enum.Enum):
    """How an error should be handled."""

    UNKNOWN = "unknown"
    VALIDATION = "validation"  # caller or configuration broke a contract
    TRANSIENT = "transient"  # retryable I/O fault
    EXTERNAL = "external"  # downstream service fault
    INTERNAL = "internal"  # bug or broken invariant


class AgentError(Exception):
    """Base for all mcp_orchestrator errors."""

    default_category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        category: ErrorCategory | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.original = original

    def __str__(self) -> str:
        if self.original is not None:
            return f"{self.message}: {self.original}"
        return self.message


class AgentValidationError(AgentError):
    """Contract violation by a caller or by configuration."""

    default_category = ErrorCategory.VALIDATION


class AgentTransientError(AgentError):
    """Retryable fault such as a provider 5xx or a timeout."""

    default_category = ErrorCategory.TRANSIENT


class AgentExternalError(AgentError):
    """A downstream service (LLM provider, MCP server) misbehaved."""

    default_category = ErrorCategory.EXTERNAL


class AgentInternalError(AgentError):
    """Bug or invariant break inside the orchestrator."""

    default_category = ErrorCategory.INTERNAL


class ToolTimeoutError(AgentError):
    """A downstream tool call did not finish within its timeout."""

    default_category = ErrorCategory.TRANSIENT

    def __init__(self, tool_name: str, timeout: float) -> None:
        super().__init__(
            f"tool '{tool_name}' execution timed out after {timeout:g} seconds"
        )
        self.tool_name = tool_name
        self.timeout = timeout


class SessionLimitError(AgentError):
    """An agent run stopped on a limit (request budget, iteration cap).

    ``meta`` holds the partial run metrics (a ``MetaInfo``) at the moment the
    limit tripped.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, meta: Any = None) -> None:
        super().__init__(message)
        self.meta = meta


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve litellm exception classes by name, skipping ones a release lacks."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


_VALIDATION_NAMES = (
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ContentPolicyViolationError",
    "BadRequestError",
    "UnprocessableEntityError",
)
_TRANSIENT_NAMES = (
    "RateLimitError",
    "Timeout",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    "BadGatewayError",
)

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "temporarily",
    "rate limit",
    "500",
    "502",
    "503",
    "504",
    "server error",
)
_VALIDATION_PATTERNS = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "authentication",
    "invalid api key",
)


def classify_error(error: BaseException) -> ErrorCategory:
    """Categorize any exception.

    Uses litellm exception types first, falls back to string matching.
    ``AgentError`` instances keep their own category.
    """
    if isinstance(error, AgentError):
        return error.category
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    # Order matters: litellm.Timeout subclasses BadRequestError in some releases.
    transient_types = _litellm_error_types(_lt, _TRANSIENT_NAMES)
    if transient_types and isinstance(error, transient_types):
        return ErrorCategory.TRANSIENT
    validation_types = _litellm_error_types(_lt, _VALIDATION_NAMES)
    if validation_types and isinstance(error, validation_types):
        return ErrorCategory.VALIDATION

    error_str = str(error).lower()
    if any(p in error_str for p in _VALIDATION_PATTERNS):
        return ErrorCategory.VALIDATION
    if any(p in error_str for p in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


_CATEGORY_CLASSES: dict[ErrorCategory, type[AgentError]] = {
    ErrorCategory.VALIDATION: AgentValidationError,
    ErrorCategory.TRANSIENT: AgentTransientError,
    ErrorCategory.EXTERNAL: AgentExternalError,
    ErrorCategory.INTERNAL: AgentInternalError,
    ErrorCategory.UNKNOWN: AgentError,
}


def wrap_error(error: BaseException, message: str | None = None) -> AgentError:
    """Wrap an exception in the AgentError subclass matching its category.

    Without *message* an existing AgentError is returned unchanged.
    """
    if isinstance(error, AgentError) and message is None:
        return error
    category = classify_error(error)
    cls = _CATEGORY_CLASSES[category]
    if message is None:
        return cls(str(error), original=error)
    return cls(message, category=category, original=error)


def is_transient(error: BaseException) -> bool:
    return isinstance(error, AgentError) and error.category is ErrorCategory.TRANSIENT


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff parameters (seconds).

    Attributes:
        max_retries: Retries after the first attempt.
        initial_backoff: Delay before the first retry.
        backoff_multiplier: Growth factor applied after each failed retry.
        max_backoff: Cap on the delay.
    """

    max_retries: int = 3
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    operation: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Await ``fn()`` until it succeeds, retrying retryable failures.

    Non-retryable errors are raised as-is on any attempt. When every retry
    fails, the last error is wrapped in an :class:`AgentTransientError`
    ("failed after N retries"). Cancellation is never swallowed.
    """
    try:
        return await fn()
    except Exception as e:
        if not should_retry(e):
            raise
        last_error: Exception = e

    delay = config.initial_backoff
    for attempt in range(1, config.max_retries + 1):
        logger.warning(
            "%s attempt %d/%d failed (retrying in %.1fs): %s",
            operation, attempt, config.max_retries + 1, delay, sanitize_message(str(last_error)),
        )
        await asyncio.sleep(delay)
        try:
            result = await fn()
        except Exception as e:
            if not should_retry(e):
                raise
            last_error = e
            delay = min(delay * config.backoff_multiplier, config.max_backoff)
            continue
        logger.info("%s succeeded after %d retries", operation, attempt)
        return result

    raise AgentTransientError(
        f"failed after {config.max_retries} retries", original=last_error
    )


# ---------------------------------------------------------------------------
# Credential sanitizing
# ---------------------------------------------------------------------------

REDACTED = "[REDACTED]"

_SENSITIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(sk-[a-zA-Z0-9]{16,})"),  # API keys
    re.compile(r"(Bearer\s+[a-zA-Z0-9_\-\.]+)"),
    re.compile(r"(Basic\s+[a-zA-Z0-9_\-\.+/=]+)"),
    re.compile(r"(password|passwd|pwd)[:=]\s*([^\s,;]+)"),
    re.compile(r"(\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4})"),  # card numbers
)


def sanitize_message(text: str) -> str:
    """Replace credentials in *text* with ``[REDACTED]``."""
    for pattern in _SENSITIVE_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def sanitize_error(error: BaseException) -> AgentError:
    """Return an AgentError with credentials scrubbed from its message.

    The category (and AgentError subclass) is preserved. Errors without
    anything to redact come back unchanged, so the function is idempotent.
    """
    wrapped = wrap_error(error)
    text = str(wrapped)
    clean = sanitize_message(text)
    if clean == text:
        return wrapped
    return _CATEGORY_CLASSES[wrapped.category](clean, category=wrapped.category)
