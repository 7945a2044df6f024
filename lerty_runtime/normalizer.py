"""
Normalization of inbound payloads into :class:`CanonicalMessage`.

Channel pushes and webhook bodies name the same fields differently
(``conversation_id`` vs ``conversationId`` vs ``thread_id``). Each canonical
field has a fixed, ordered list of candidate keys; the first key present
with a non-empty value wins.
"""

from __future__ import annotations

import enum
import json
import logging
from typing import Any, Mapping

from lerty_runtime.types import CanonicalMessage, EventType, utc_now_iso

logger = logging.getLogger(__name__)


class Transport(str, enum.Enum):
    CHANNEL = "channel"
    WEBHOOK = "webhook"


# Candidate keys per canonical field, highest priority first.
FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "id": ("id", "message_id", "messageId"),
    "event_type": ("type", "event_type", "eventType"),
    "content": ("content", "text", "message"),
    "conversation_id": ("conversation_id", "conversationId", "thread_id", "threadId"),
    "user_id": ("user_id", "userId"),
    "agent_id": ("agent_id", "agentId"),
    "timestamp": ("timestamp", "inserted_at", "created_at", "createdAt"),
    "metadata": ("metadata",),
    "file_url": ("file_url", "fileUrl"),
    "file_name": ("file_name", "fileName"),
    "file_type": ("file_type", "fileType"),
    "response_webhook": ("response_webhook", "responseWebhook", "callback_url"),
}

_EMPTY = (None, "", {}, [])


def pick(payload: Mapping[str, Any], candidates: tuple[str, ...]) -> Any:
    """First non-empty value among ``candidates``, or ``None``."""
    for key in candidates:
        value = payload.get(key)
        if value not in _EMPTY:
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _event_type(value: Any) -> EventType:
    if value is None:
        return EventType.USER_MESSAGE
    try:
        return EventType(str(value))
    except ValueError:
        logger.debug("Unknown event type %r, treating as user_message", value)
        return EventType.USER_MESSAGE


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, Mapping) else {}
    return {}


def normalize(
    raw: Any,
    source: Transport = Transport.CHANNEL,
    *,
    agent_id: str | None = None,
) -> CanonicalMessage:
    """Map a raw payload onto a :class:`CanonicalMessage`.

    Never raises: anything that is not a mapping (or a JSON object string)
    normalizes to an empty ``user_message`` stamped with the current time.

    Args:
        raw: Decoded channel payload or webhook body.
        source: Transport the payload arrived on.
        agent_id: Agent the webhook was registered for; fills a missing
            agent id on webhook payloads.
    """
    payload = _as_mapping(raw)
    values = {name: pick(payload, keys) for name, keys in FIELD_CANDIDATES.items()}

    found_agent = _as_str(values["agent_id"])
    if found_agent is None and source is Transport.WEBHOOK:
        found_agent = agent_id

    metadata = values["metadata"]
    if not isinstance(metadata, Mapping):
        metadata = {}

    return CanonicalMessage(
        id=_as_str(values["id"]) or "",
        event_type=_event_type(values["event_type"]),
        content=_as_str(values["content"]) or "",
        conversation_id=_as_str(values["conversation_id"]) or "",
        user_id=_as_str(values["user_id"]),
        agent_id=found_agent,
        timestamp=_as_str(values["timestamp"]) or utc_now_iso(),
        metadata={str(k): v for k, v in metadata.items()},
        file_url=_as_str(values["file_url"]),
        file_name=_as_str(values["file_name"]),
        file_type=_as_str(values["file_type"]),
        response_webhook=_as_str(values["response_webhook"]),
    )
