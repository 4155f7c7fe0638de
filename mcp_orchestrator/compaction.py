"""Transcript compaction strategies.

A strategy shrinks a transcript that grew past its token ceiling. The head
system message is always kept.

Usage::

    strategy = get_compaction_strategy("delete-old")
    messages, tokens = strategy.compact(messages, current_tokens=9_500, max_tokens=8_192)
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from mcp_orchestrator.models import TokenEstimator

logger = logging.getLogger(__name__)


@runtime_checkable
class CompactionStrategy(Protocol):
    name: str

    def compact(
        self,
        messages: list[dict[str, Any]],
        current_tokens: int,
        max_tokens: int,
    ) -> tuple[list[dict[str, Any]], int]: ...


class DeleteOldStrategy:
    """Drop the oldest messages, keeping the system message and the newest tail.

    Walks backward from the newest message and stops at the first one that no
    longer fits under ``max_tokens``, so the kept window is always a
    contiguous suffix of the transcript.
    """

    name = "delete-old"

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self.estimator = estimator or TokenEstimator()

    def compact(
        self,
        messages: list[dict[str, Any]],
        current_tokens: int,
        max_tokens: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return the kept messages and their estimated token count."""
        if len(messages) <= 1 or current_tokens <= max_tokens:
            return list(messages), current_tokens

        system = messages[0]
        used = self.estimator.count(system)
        tail: list[dict[str, Any]] = []
        for message in reversed(messages[1:]):
            tokens = self.estimator.count(message)
            if used + tokens > max_tokens:
                break
            tail.append(message)
            used += tokens
        tail.reverse()

        logger.info(
            "Compacted transcript from %d to %d messages (%d -> ~%d tokens)",
            len(messages), len(tail) + 1, current_tokens, used,
        )
        return [system, *tail], used


STRATEGIES: dict[str, type[DeleteOldStrategy]] = {
    DeleteOldStrategy.name: DeleteOldStrategy,
}


def get_compaction_strategy(name: str) -> CompactionStrategy:
    """Instantiate the strategy registered under *name* (case-insensitive).

    Raises:
        ValueError: If no strategy has that name.
    """
    cls = STRATEGIES.get(name.strip().lower())
    if cls is None:
        raise ValueError(
            f"unknown compaction strategy: {name} (available: {', '.join(sorted(STRATEGIES))})"
        )
    return cls()


def drop_orphan_tool_results(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Remove tool messages at the head of the window whose call was compacted away."""
    if not messages:
        return []
    head, rest = messages[0], messages[1:]
    start = 0
    while start < len(rest) and rest[start].get("role") == "tool":
        start += 1
    if start:
        logger.debug("Dropped %d orphaned tool results after compaction", start)
    return [head, *rest[start:]]
