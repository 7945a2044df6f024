"""
Lerty runtime for Python.

Connects workflow automation to Lerty agents over a persistent channel
connection, with an HTTP webhook transport as fallback. Inbound events are
normalized into :class:`CanonicalMessage` records, filtered by a
:class:`FilterPolicy` and handed to your emission callback.

Example::

    from lerty_runtime import Credentials, FilterPolicy, LertyTrigger, SubscriptionSpec

    async def emit(message, attachment):
        print(message.event_type, message.content)

    trigger = LertyTrigger(
        Credentials.from_env(),
        emit,
        subscription=SubscriptionSpec(mode="agent", agent_ids=["42"]),
        policy=FilterPolicy(event_types=["user_message"], content_contains="invoice"),
    )
    await trigger.run()
"""

from lerty_runtime.connection import ChannelConnection
from lerty_runtime.dispatcher import Dispatcher
from lerty_runtime.errors import (
    AttachmentError,
    ChannelConnectionError,
    ChannelTimeout,
    DuplicateSubscription,
    InvalidConfiguration,
    LertyError,
    NotConnected,
    NotSubscribed,
    PushRejected,
    SubscriptionRejected,
    TriggerActivationError,
    Unauthorized,
)
from lerty_runtime.filters import admit
from lerty_runtime.http import LertyHttp
from lerty_runtime.normalizer import Transport, normalize
from lerty_runtime.records import (
    FileRecordStore,
    MemoryRecordStore,
    SubscriptionRecord,
)
from lerty_runtime.registry import TopicSubscription
from lerty_runtime.topics import (
    SubscriptionMode,
    SubscriptionSpec,
    agent_topic,
    resolve_topics,
    topic_matches,
)
from lerty_runtime.trigger import LertyTrigger, TransportMode
from lerty_runtime.types import (
    Agent,
    AttachmentPolicy,
    CanonicalMessage,
    ConnectionConfig,
    ConnectionState,
    ConnectionStatus,
    Credentials,
    EventType,
    FileAttachment,
    FilterPolicy,
    OutboundMessage,
    WebhookResult,
)
from lerty_runtime.webhook import WebhookReceiver, create_webhook_app

__all__ = [
    # Client
    "LertyTrigger",
    "TransportMode",
    "ChannelConnection",
    "Dispatcher",
    "LertyHttp",
    "WebhookReceiver",
    "create_webhook_app",
    # Pipeline
    "admit",
    "normalize",
    "Transport",
    "resolve_topics",
    "agent_topic",
    "topic_matches",
    "SubscriptionMode",
    "SubscriptionSpec",
    "TopicSubscription",
    "SubscriptionRecord",
    "MemoryRecordStore",
    "FileRecordStore",
    # Types
    "Agent",
    "AttachmentPolicy",
    "CanonicalMessage",
    "ConnectionConfig",
    "ConnectionState",
    "ConnectionStatus",
    "Credentials",
    "EventType",
    "FileAttachment",
    "FilterPolicy",
    "OutboundMessage",
    "WebhookResult",
    # Errors
    "LertyError",
    "InvalidConfiguration",
    "ChannelConnectionError",
    "ChannelTimeout",
    "NotConnected",
    "DuplicateSubscription",
    "SubscriptionRejected",
    "NotSubscribed",
    "PushRejected",
    "Unauthorized",
    "AttachmentError",
    "TriggerActivationError",
]

__version__ = "0.1.0"
