"""Tests for topic resolution and local topic matching."""

from __future__ import annotations

import pytest

from lerty_runtime.errors import InvalidConfiguration
from lerty_runtime.topics import (
    SubscriptionMode,
    SubscriptionSpec,
    agent_topic,
    resolve_topics,
    topic_matches,
)


# ============================================================
#  Resolution
# ============================================================


def test_single_mode_uses_pattern_verbatim() -> None:
    """Single mode keeps the pattern as-is, wildcards included."""
    assert resolve_topics("single", pattern="agent_chat:*") == {"agent_chat:*"}


def test_multiple_mode_dedupes_and_strips() -> None:
    """Multiple mode drops blanks and duplicates."""
    topics = resolve_topics(
        SubscriptionMode.MULTIPLE,
        topics=["room:a", " room:b ", "room:a", "", "  "],
    )
    assert topics == {"room:a", "room:b"}


def test_agent_mode_derives_chat_topics() -> None:
    """Agent mode maps each id to its chat topic."""
    assert resolve_topics("agent", agent_ids=["42", "7", "42"]) == {
        "agent_chat:agent_42",
        "agent_chat:agent_7",
    }
    assert agent_topic("42") == "agent_chat:agent_42"


@pytest.mark.parametrize(
    "mode,kwargs",
    [
        ("single", {}),
        ("single", {"pattern": "   "}),
        ("multiple", {"topics": []}),
        ("multiple", {"topics": ["", " "]}),
        ("agent", {"agent_ids": []}),
        ("agent", {"pattern": "agent_chat:agent_1"}),
    ],
)
def test_missing_fields_are_invalid(mode: str, kwargs: dict) -> None:
    """Each mode requires its own field to be non-empty."""
    with pytest.raises(InvalidConfiguration):
        resolve_topics(mode, **kwargs)


def test_unknown_mode_is_invalid() -> None:
    """Unknown modes are rejected."""
    with pytest.raises(InvalidConfiguration, match="broadcast"):
        resolve_topics("broadcast", pattern="x")


def test_invalid_configuration_is_a_value_error() -> None:
    """Callers catching ValueError still see configuration problems."""
    with pytest.raises(ValueError):
        resolve_topics("multiple")


def test_spec_resolve_with_aliases() -> None:
    """SubscriptionSpec accepts camelCase input and resolves."""
    spec = SubscriptionSpec.model_validate({"mode": "agent", "agentIds": ["9"]})
    assert spec.resolve() == {"agent_chat:agent_9"}


# ============================================================
#  Matching
# ============================================================


@pytest.mark.parametrize(
    "pattern,topic,expected",
    [
        ("room:lobby", "room:lobby", True),
        ("room:lobby", "room:other", False),
        ("agent_chat:*", "agent_chat:agent_1", True),
        ("agent_chat:agent_*", "agent_chat:agent_42", True),
        ("agent_chat:agent_*", "agent_chat:user_42", False),
        ("a:*:c", "a:b:c", True),
        ("a:*:c", "a:b:d", False),
        ("a:*", "a", False),
        ("a:b", "a:b:c", False),
    ],
)
def test_topic_matches(pattern: str, topic: str, expected: bool) -> None:
    """Wildcards match a segment or, when trailing, the rest of the topic."""
    assert topic_matches(pattern, topic) is expected
