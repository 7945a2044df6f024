"""
Per-connection subscription storage.

A :class:`SubscriptionRegistry` belongs to exactly one
:class:`~lerty_runtime.connection.ChannelConnection`, which is the only
code that adds or removes entries. Public subscribe/unsubscribe calls go
through the connection.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

from pydantic import BaseModel, Field

from lerty_runtime.errors import DuplicateSubscription
from lerty_runtime.normalizer import Transport, normalize
from lerty_runtime.topics import topic_matches
from lerty_runtime.types import CanonicalMessage

logger = logging.getLogger(__name__)

# Type alias for inbound message callbacks
MessageHandler = Callable[[CanonicalMessage], Coroutine[Any, Any, None] | None]


class TopicSubscription(BaseModel):
    """An acknowledged join on one topic."""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    topic: str
    join_ref: str
    callback: MessageHandler
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SubscriptionRegistry:
    """Topic -> subscription mapping with at most one entry per topic."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, TopicSubscription] = {}

    def __contains__(self, topic: object) -> bool:
        return topic in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)

    def add(self, subscription: TopicSubscription) -> None:
        if subscription.topic in self._subscriptions:
            raise DuplicateSubscription(subscription.topic)
        self._subscriptions[subscription.topic] = subscription

    def remove(self, topic: str) -> TopicSubscription | None:
        return self._subscriptions.pop(topic, None)

    def get(self, topic: str) -> TopicSubscription | None:
        return self._subscriptions.get(topic)

    def topics(self) -> set[str]:
        return set(self._subscriptions)

    def clear(self) -> list[TopicSubscription]:
        dropped = list(self._subscriptions.values())
        self._subscriptions.clear()
        return dropped

    def lookup(self, topic: str) -> TopicSubscription | None:
        """Subscription for a concrete topic, falling back to wildcard patterns."""
        sub = self._subscriptions.get(topic)
        if sub is not None:
            return sub
        for pattern, candidate in self._subscriptions.items():
            if topic_matches(pattern, topic):
                return candidate
        return None

    async def route(self, topic: str, payload: dict[str, Any]) -> bool:
        """Normalize a pushed payload and hand it to the topic's callback.

        Handler errors are logged and swallowed so one bad message never
        stops delivery of the next.

        Returns:
            ``True`` if a subscription took the message.
        """
        sub = self.lookup(topic)
        if sub is None:
            logger.debug("Dropping push for unsubscribed topic %s", topic)
            return False

        message = normalize(payload, Transport.CHANNEL)
        try:
            result = sub.callback(message)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error in message handler for topic %s", topic)
        return True
