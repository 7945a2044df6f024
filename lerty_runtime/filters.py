"""Admission decisions for normalized messages."""

from __future__ import annotations

from lerty_runtime.types import CanonicalMessage, FilterPolicy


def admit(message: CanonicalMessage, policy: FilterPolicy) -> bool:
    """Whether ``message`` passes every condition in ``policy``.

    An empty ``event_types`` allows every type. Equality filters only apply
    when set. ``content_contains`` is a case-insensitive substring match and
    rejects messages without content.
    """
    if policy.event_types and message.event_type not in policy.event_types:
        return False
    if policy.user_id and policy.user_id != message.user_id:
        return False
    if policy.conversation_id and policy.conversation_id != message.conversation_id:
        return False
    if policy.agent_id and policy.agent_id != message.agent_id:
        return False
    if policy.content_contains:
        if not message.content:
            return False
        if policy.content_contains.casefold() not in message.content.casefold():
            return False
    return True
