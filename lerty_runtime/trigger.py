"""
Trigger supervisor.

A :class:`LertyTrigger` activates one workflow trigger: it opens the
channel connection, subscribes to the resolved topics and keeps them
subscribed across reconnects, and exposes a webhook receiver for the HTTP
fallback transport. Both paths feed the same :class:`Dispatcher`.

Usage::

    async def emit(message, attachment):
        await workflow.start(message.to_wire())

    trigger = LertyTrigger(
        Credentials.from_env(),
        emit,
        subscription=SubscriptionSpec(mode="agent", agent_ids=["42"]),
        policy=FilterPolicy(event_types=["user_message"]),
    )
    await trigger.run()
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any

from fastapi import FastAPI

from lerty_runtime.connection import ChannelConnection, ConnectFactory
from lerty_runtime.dispatcher import Dispatcher, Emitter
from lerty_runtime.errors import (
    ChannelConnectionError,
    ChannelTimeout,
    DuplicateSubscription,
    NotConnected,
    SubscriptionRejected,
    TriggerActivationError,
)
from lerty_runtime.http import LertyHttp
from lerty_runtime.records import MemoryRecordStore, RecordStore, SubscriptionRecord
from lerty_runtime.topics import SubscriptionMode, SubscriptionSpec
from lerty_runtime.types import (
    AttachmentPolicy,
    CanonicalMessage,
    ConnectionConfig,
    ConnectionState,
    ConnectionStatus,
    Credentials,
    FilterPolicy,
)
from lerty_runtime.webhook import WebhookReceiver, create_webhook_app

logger = logging.getLogger(__name__)


class TransportMode(str, enum.Enum):
    CHANNEL = "channel"
    WEBHOOK = "webhook"
    AUTO = "auto"


class LertyTrigger:
    """Supervises the channel and webhook paths of one trigger activation."""

    def __init__(
        self,
        credentials: Credentials,
        emit: Emitter,
        *,
        transport: TransportMode | str = TransportMode.AUTO,
        subscription: SubscriptionSpec | None = None,
        policy: FilterPolicy | None = None,
        attachments: AttachmentPolicy | None = None,
        connection_config: ConnectionConfig | None = None,
        secret: str | None = None,
        agent_id: str | None = None,
        record_store: RecordStore | None = None,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self._transport = TransportMode(transport)
        if subscription is None and agent_id:
            subscription = SubscriptionSpec(mode=SubscriptionMode.AGENT, agent_ids=[agent_id])
        self._subscription = subscription
        self._config = connection_config or ConnectionConfig.from_credentials(credentials)
        self._connect_factory = connect_factory
        self._store = record_store or MemoryRecordStore()

        self.http = LertyHttp.from_credentials(credentials)
        self.dispatcher = Dispatcher(emit, policy, attachments=attachments, http=self.http)
        self._receiver: WebhookReceiver | None = None
        if self._transport is not TransportMode.CHANNEL:
            self._receiver = WebhookReceiver(self.dispatcher, secret=secret, agent_id=agent_id)

        # State
        self._connection: ChannelConnection | None = None
        self._topics: set[str] = set()
        self._active = False
        self._channel_ready = False
        self._failure: TriggerActivationError | None = None
        self._done = asyncio.Event()
        self._resubscribe_task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def connection(self) -> ChannelConnection | None:
        """The channel connection, if the channel path is up."""
        return self._connection

    @property
    def topics(self) -> set[str]:
        return set(self._topics)

    @property
    def webhook(self) -> WebhookReceiver:
        if self._receiver is None:
            raise RuntimeError("Webhook transport is disabled for channel-only triggers")
        return self._receiver

    def webhook_app(self, path: str = "/webhook") -> FastAPI:
        return create_webhook_app(self.webhook, path=path)

    # ---- Lifecycle ----

    async def activate(self) -> list[SubscriptionRecord]:
        """Bring the trigger up and return the subscription records issued.

        Raises:
            InvalidConfiguration: If the subscription cannot be resolved to topics.
            TriggerActivationError: If the channel cannot be established in
                ``channel`` mode. In ``auto`` mode the trigger continues on the
                webhook path alone.
        """
        if self._active:
            return self._store.load()

        use_channel = self._transport is TransportMode.CHANNEL or (
            self._transport is TransportMode.AUTO and self._subscription is not None
        )
        topics = self._resolve_topics() if use_channel else set()

        self._failure = None
        self._done.clear()
        self.dispatcher.start()

        records: list[SubscriptionRecord] = []
        if use_channel:
            try:
                records = await self._activate_channel(topics)
            except TriggerActivationError as e:
                if self._transport is TransportMode.CHANNEL:
                    await self._teardown_channel([])
                    await self.dispatcher.stop()
                    raise
                logger.warning("Channel unavailable, continuing on webhook transport only: %s", e)
                await self._teardown_channel([])

        self._active = True
        logger.info(
            "Lerty trigger active (%s, %d topic(s))", self._transport.value, len(records)
        )
        return records

    async def deactivate(self, records: list[SubscriptionRecord] | None = None) -> None:
        """Tear the trigger down. Idempotent.

        Args:
            records: Subscriptions to release; defaults to the record store.
                Records whose topic is no longer subscribed are skipped.
        """
        if records is None:
            records = self._store.load()
        await self._teardown_channel(records)
        self._store.clear()
        await self.dispatcher.stop()
        if self._active:
            logger.info("Lerty trigger deactivated")
        self._active = False
        self._done.set()

    async def run(self) -> None:
        """Activate if needed and block until deactivated.

        Raises:
            TriggerActivationError: If the channel is lost for good.
        """
        if not self._active:
            await self.activate()
        try:
            await self._done.wait()
        finally:
            await self.deactivate()
        if self._failure is not None:
            raise self._failure

    async def close(self) -> None:
        await self.deactivate()
        await self.http.close()

    async def __aenter__(self) -> LertyTrigger:
        await self.activate()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ---- Channel path ----

    def _resolve_topics(self) -> set[str]:
        spec = self._subscription or SubscriptionSpec()
        return spec.resolve()

    async def _activate_channel(self, topics: set[str]) -> list[SubscriptionRecord]:
        conn = ChannelConnection(self._config, connect_factory=self._connect_factory)
        conn.on_state_change(self._on_state_change)
        self._connection = conn

        try:
            await conn.connect()
        except ChannelConnectionError as e:
            if conn.state.status is ConnectionStatus.DISCONNECTED:
                raise TriggerActivationError(f"Could not connect to Lerty channel: {e}") from e
            logger.warning("Initial channel connect failed, retrying: %s", e)
            try:
                await conn.connect()
            except ChannelConnectionError as retry_error:
                raise TriggerActivationError(
                    f"Could not connect to Lerty channel: {retry_error}"
                ) from retry_error

        self._topics = topics
        records = await self._subscribe_all()
        if not records:
            raise TriggerActivationError(f"No topic could be subscribed: {', '.join(sorted(topics))}")
        self._store.save(records)
        self._channel_ready = True
        return records

    async def _subscribe_all(self) -> list[SubscriptionRecord]:
        conn = self._connection
        records: list[SubscriptionRecord] = []
        if conn is None:
            return records
        for topic in sorted(self._topics):
            if conn.is_subscribed(topic):
                continue
            try:
                await conn.subscribe(topic, self._on_message)
            except (SubscriptionRejected, DuplicateSubscription, ChannelTimeout) as e:
                logger.error("Subscription to %s failed: %s", topic, e)
                continue
            except (NotConnected, ChannelConnectionError) as e:
                logger.warning("Connection dropped while subscribing: %s", e)
                break
            records.append(SubscriptionRecord(topic=topic))
        return records

    async def _resubscribe(self) -> None:
        records = await self._subscribe_all()
        if records:
            self._store.save(records)
        logger.info("Resubscribed to %d topic(s) after reconnect", len(records))

    def _on_message(self, message: CanonicalMessage) -> None:
        self.dispatcher.dispatch(message)

    def _on_state_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        if not self._channel_ready:
            return
        if current.status is ConnectionStatus.CONNECTED:
            self._resubscribe_task = asyncio.create_task(self._resubscribe())
        elif current.status is ConnectionStatus.DISCONNECTED:
            conn = self._connection
            if conn is None or conn.closed_by_user:
                return
            self._channel_ready = False
            if self._transport is TransportMode.AUTO:
                logger.warning("Lerty channel lost after %s, continuing on webhook transport", previous)
                return
            logger.error("Lerty channel permanently disconnected after %s", previous)
            self._failure = TriggerActivationError("Lerty channel permanently disconnected")
            self._done.set()

    async def _teardown_channel(self, records: list[SubscriptionRecord]) -> None:
        self._channel_ready = False
        task, self._resubscribe_task = self._resubscribe_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        conn, self._connection = self._connection, None
        if conn is None:
            if records:
                logger.info("No live channel; dropping %d stale subscription record(s)", len(records))
            return
        for record in records:
            if conn.is_subscribed(record.topic):
                await conn.unsubscribe(record.topic)
            else:
                logger.debug("Subscription %s for %s already gone", record.subscription_id, record.topic)
        await conn.disconnect()
