"""
Topic resolution for channel subscriptions.

A trigger subscribes either to one pattern, to an explicit list of topics,
or to the chat topics of a set of agents. Wildcards in a pattern are left to
the backend; :func:`topic_matches` only routes pushes locally.
"""

from __future__ import annotations

import enum
from typing import Iterable

from pydantic import BaseModel, Field

from lerty_runtime.errors import InvalidConfiguration

AGENT_TOPIC_PREFIX = "agent_chat:agent_"
WILDCARD = "*"


class SubscriptionMode(str, enum.Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    AGENT = "agent"


class SubscriptionSpec(BaseModel):
    """What a trigger subscribes to."""

    mode: SubscriptionMode = SubscriptionMode.SINGLE
    pattern: str | None = None
    topics: list[str] = Field(default_factory=list)
    agent_ids: list[str] = Field(default_factory=list, alias="agentIds")

    model_config = {"populate_by_name": True, "frozen": True}

    def resolve(self) -> set[str]:
        return resolve_topics(self.mode, self.pattern, self.topics, self.agent_ids)


def agent_topic(agent_id: str) -> str:
    """Chat topic for one agent, e.g. ``agent_chat:agent_42``."""
    return f"{AGENT_TOPIC_PREFIX}{agent_id}"


def _clean(values: Iterable[str] | None) -> list[str]:
    return [v.strip() for v in values or () if v and v.strip()]


def resolve_topics(
    mode: SubscriptionMode | str,
    pattern: str | None = None,
    topics: Iterable[str] | None = None,
    agent_ids: Iterable[str] | None = None,
) -> set[str]:
    """Resolve a subscription request into concrete topic strings.

    Args:
        mode: ``single``, ``multiple`` or ``agent``.
        pattern: Topic for ``single`` mode, used verbatim.
        topics: Topic list for ``multiple`` mode.
        agent_ids: Agent ids for ``agent`` mode.

    Returns:
        A non-empty set of topics.

    Raises:
        InvalidConfiguration: If the mode is unknown or its field is empty.
    """
    try:
        mode = SubscriptionMode(mode)
    except ValueError:
        raise InvalidConfiguration(f"Unknown subscription mode: {mode!r}") from None

    if mode is SubscriptionMode.SINGLE:
        if not pattern or not pattern.strip():
            raise InvalidConfiguration("Subscription mode 'single' requires a topic pattern")
        return {pattern}

    if mode is SubscriptionMode.MULTIPLE:
        resolved = set(_clean(topics))
        if not resolved:
            raise InvalidConfiguration("Subscription mode 'multiple' requires at least one topic")
        return resolved

    ids = _clean(agent_ids)
    if not ids:
        raise InvalidConfiguration("Subscription mode 'agent' requires at least one agent id")
    return {agent_topic(agent_id) for agent_id in ids}


def topic_matches(pattern: str, topic: str) -> bool:
    """Whether ``topic`` falls under ``pattern``.

    Segments are separated by ``:``. A ``*`` segment matches one segment, and
    a trailing ``*`` (including a ``prefix*`` segment) matches the rest.
    """
    if pattern == topic:
        return True
    if WILDCARD not in pattern:
        return False

    p_parts = pattern.split(":")
    t_parts = topic.split(":")
    for i, part in enumerate(p_parts):
        last = i == len(p_parts) - 1
        if i >= len(t_parts):
            return False
        if part == WILDCARD:
            if last:
                return True
            continue
        if last and part.endswith(WILDCARD):
            return ":".join(t_parts[i:]).startswith(part[:-1])
        if part != t_parts[i]:
            return False
    return len(p_parts) == len(t_parts)
