"""Exception types raised by the Lerty runtime."""

from __future__ import annotations


class LertyError(Exception):
    """Base class for all Lerty runtime errors."""


class InvalidConfiguration(LertyError, ValueError):
    """A subscription mode or parameter set cannot be resolved."""


class ChannelConnectionError(LertyError, ConnectionError):
    """The channel transport could not be opened or was lost."""


class ChannelTimeout(ChannelConnectionError, TimeoutError):
    """A connect, join or push was not acknowledged in time."""


class NotConnected(LertyError):
    """The operation needs a connected channel."""


class DuplicateSubscription(LertyError):
    """The topic already has an active subscription on this connection."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"Already subscribed to topic: {topic}")
        self.topic = topic


class SubscriptionRejected(LertyError):
    """The backend refused to join a topic."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"Failed to subscribe to topic {topic}: {reason}")
        self.topic = topic
        self.reason = reason


class NotSubscribed(LertyError):
    """A push was attempted on a topic without a subscription."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"Not subscribed to topic: {topic}")
        self.topic = topic


class PushRejected(LertyError):
    """The backend answered a push with an error reply."""


class Unauthorized(LertyError):
    """An inbound webhook carried a missing or wrong shared secret."""


class AttachmentError(LertyError):
    """A message attachment could not be fetched or failed validation."""


class TriggerActivationError(LertyError):
    """The trigger could not establish, or permanently lost, its channel."""
