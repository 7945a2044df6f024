"""
Persistent channel connection to the Lerty backend.

One :class:`ChannelConnection` owns one websocket, its heartbeat, the
reconnect-with-backoff state machine and the topic subscriptions joined
over it::

    conn = ChannelConnection(ConnectionConfig.from_credentials(creds))
    await conn.connect()
    await conn.subscribe("agent_chat:agent_42", handle_message)
    ...
    await conn.disconnect()

State moves along ``disconnected -> connecting -> connected`` and, after a
failure, through ``reconnecting(n)``. The delay before attempt ``n`` is
``reconnect_delay * n``; once ``n`` exceeds ``max_reconnect_attempts`` the
connection stays ``disconnected``. Subscriptions do not survive a lost
connection: the registry is cleared and callers resubscribe once
``connected`` is reached again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import websockets

from lerty_runtime.errors import (
    ChannelConnectionError,
    ChannelTimeout,
    DuplicateSubscription,
    LertyError,
    NotConnected,
    NotSubscribed,
    PushRejected,
    SubscriptionRejected,
)
from lerty_runtime.protocol import (
    EVENT_CLOSE,
    EVENT_ERROR,
    EVENT_HEARTBEAT,
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_MESSAGE,
    PHOENIX_TOPIC,
    Frame,
    RefCounter,
    decode,
    encode,
    socket_url,
)
from lerty_runtime.registry import MessageHandler, SubscriptionRegistry, TopicSubscription
from lerty_runtime.types import ConnectionConfig, ConnectionState, ConnectionStatus

logger = logging.getLogger(__name__)

# Opens a websocket for a fully-built socket URL
ConnectFactory = Callable[[str], Awaitable[Any]]
# Receives (previous, current) on every state change
StateListener = Callable[[ConnectionState, ConnectionState], None]

_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset(
        {ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.CONNECTED: frozenset(
        {ConnectionStatus.RECONNECTING, ConnectionStatus.DISCONNECTED}
    ),
    ConnectionStatus.RECONNECTING: frozenset(
        {ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED}
    ),
}

# Consecutive unacknowledged heartbeats before the link is declared dead
MAX_MISSED_HEARTBEATS = 2


async def _open_websocket(url: str) -> Any:
    # Liveness is handled by channel heartbeats, not websocket pings.
    return await websockets.connect(url, ping_interval=None, open_timeout=None)


def _reason(response: Any) -> str:
    if isinstance(response, dict):
        reason = response.get("reason")
        if reason:
            return str(reason)
        return json.dumps(response) if response else "unknown error"
    return str(response) if response else "unknown error"


class ChannelConnection:
    """One websocket to the backend with heartbeat, reconnect and subscriptions."""

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self._config = config
        self._connect_factory = connect_factory or _open_websocket
        self._registry = SubscriptionRegistry()
        self._refs = RefCounter()

        # State
        self._state = ConnectionState()
        self._attempt = 0
        self._closing = False
        self._listeners: list[StateListener] = []
        self._changed = asyncio.Event()
        self._terminated = asyncio.Event()
        self._terminated.set()

        # Transport
        self._ws: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Frame]] = {}
        self._joining: set[str] = set()
        self._heartbeat_ref: str | None = None
        self._missed_heartbeats = 0

    # ---- Properties ----

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.status is ConnectionStatus.CONNECTED

    @property
    def closed_by_user(self) -> bool:
        """Whether the last shutdown came from :meth:`disconnect`."""
        return self._closing

    def on_state_change(self, listener: StateListener) -> None:
        """Register a callback for ``(previous, current)`` state changes."""
        self._listeners.append(listener)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt ``attempt`` (linear)."""
        return self._config.reconnect_delay * attempt

    async def wait_closed(self) -> ConnectionState:
        """Block until the connection is ``disconnected``."""
        await self._terminated.wait()
        return self._state

    # ---- Lifecycle ----

    async def connect(self) -> None:
        """Open the channel socket.

        Returns immediately when already connected. While a (re)connect is
        in flight, waits for its outcome instead of racing it.

        Raises:
            ChannelTimeout: If the handshake exceeds ``config.timeout``.
            ChannelConnectionError: If the handshake fails. With
                ``auto_reconnect`` the connection keeps retrying in the
                background from ``reconnecting(1)``.
        """
        status = self._state.status
        if status is ConnectionStatus.CONNECTED:
            return
        if status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING):
            settled = await self._wait_settled()
            if settled.status is ConnectionStatus.CONNECTED:
                return
            raise ChannelConnectionError("Channel connection could not be re-established")

        self._closing = False
        self._attempt = 0
        try:
            await self._open()
        except ChannelConnectionError:
            self._after_failure()
            raise

    async def disconnect(self) -> None:
        """Leave every topic, close the socket and stop reconnecting. Idempotent."""
        self._closing = True
        await self._cancel_reconnect()

        if self._ws is not None:
            for sub in self._registry.clear():
                await self._leave(sub)
        else:
            self._registry.clear()
        self._joining.clear()

        ws, self._ws = self._ws, None
        await self._stop_tasks()
        self._fail_pending(ChannelConnectionError("Connection closed"))
        if ws is not None:
            await self._close_transport(ws)

        if self._state.status is not ConnectionStatus.DISCONNECTED:
            self._transition(ConnectionStatus.DISCONNECTED)
            logger.info("Disconnected from Lerty channel")

    # ---- Subscriptions ----

    async def subscribe(self, topic: str, on_message: MessageHandler) -> TopicSubscription:
        """Join ``topic`` and route its messages to ``on_message``.

        Raises:
            NotConnected: If the connection is not ``connected``.
            DuplicateSubscription: If ``topic`` is already subscribed or joining.
            SubscriptionRejected: If the backend refuses the join.
            ChannelTimeout: If no join reply arrives within ``config.timeout``.
        """
        if not self.is_connected:
            raise NotConnected(f"Cannot subscribe to {topic}: channel is {self._state}")
        if topic in self._registry or topic in self._joining:
            raise DuplicateSubscription(topic)

        self._joining.add(topic)
        try:
            reply = await self._request(topic, EVENT_JOIN, {}, timeout=self._config.timeout)
        finally:
            self._joining.discard(topic)

        if reply.reply_status != "ok":
            raise SubscriptionRejected(topic, _reason(reply.reply_response))
        if not self.is_connected:
            raise NotConnected(f"Connection lost while joining {topic}")

        sub = TopicSubscription(
            topic=topic,
            join_ref=reply.join_ref or reply.ref or "",
            callback=on_message,
        )
        self._registry.add(sub)
        logger.info("Subscribed to %s", topic)
        return sub

    async def unsubscribe(self, topic: str) -> None:
        """Leave ``topic``. Unknown topics are ignored."""
        sub = self._registry.remove(topic)
        if sub is None:
            return
        await self._leave(sub)
        logger.info("Unsubscribed from %s", topic)

    def is_subscribed(self, topic: str) -> bool:
        return topic in self._registry

    def list_topics(self) -> set[str]:
        return self._registry.topics()

    async def push(
        self,
        topic: str,
        payload: dict[str, Any],
        event: str = EVENT_MESSAGE,
    ) -> Any:
        """Send ``payload`` on a subscribed topic and return the reply body.

        Raises:
            NotSubscribed: If ``topic`` has no subscription.
            PushRejected: If the backend answers with an error.
        """
        sub = self._registry.get(topic)
        if sub is None:
            raise NotSubscribed(topic)
        reply = await self._request(
            topic, event, payload, join_ref=sub.join_ref, timeout=self._config.timeout
        )
        if reply.reply_status != "ok":
            raise PushRejected(f"Failed to send message: {_reason(reply.reply_response)}")
        return reply.reply_response

    # ---- State machine ----

    def _transition(self, status: ConnectionStatus, attempt: int = 0) -> None:
        previous = self._state
        if status not in _TRANSITIONS[previous.status]:
            raise RuntimeError(f"Illegal channel state transition {previous} -> {status.value}")
        current = ConnectionState(status=status, attempt=attempt)
        self._state = current
        logger.debug("Channel state %s -> %s", previous, current)

        if status is ConnectionStatus.DISCONNECTED:
            self._terminated.set()
        else:
            self._terminated.clear()
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception:
                logger.exception("Error in connection state listener")

    async def _wait_settled(self) -> ConnectionState:
        while self._state.status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING):
            await self._changed.wait()
        return self._state

    async def _open(self) -> None:
        self._transition(ConnectionStatus.CONNECTING, self._attempt)
        url = socket_url(self._config.url, self._config.token)
        try:
            ws = await asyncio.wait_for(self._connect_factory(url), timeout=self._config.timeout)
        except asyncio.CancelledError:
            self._transition(ConnectionStatus.DISCONNECTED)
            raise
        except asyncio.TimeoutError as e:
            raise ChannelTimeout(
                f"Timed out connecting to {self._config.url} after {self._config.timeout}s"
            ) from e
        except Exception as e:
            raise ChannelConnectionError(f"WebSocket connection error: {e}") from e

        if self._closing or self._state.status is not ConnectionStatus.CONNECTING:
            await self._close_transport(ws)
            raise ChannelConnectionError("Connection closed during handshake")

        self._ws = ws
        self._attempt = 0
        self._heartbeat_ref = None
        self._missed_heartbeats = 0
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        self._transition(ConnectionStatus.CONNECTED)
        logger.info("Connected to Lerty channel at %s", self._config.url)

    def _after_failure(self) -> None:
        """Move to ``reconnecting(n)`` or, when out of attempts, ``disconnected``."""
        if self._state.status is ConnectionStatus.DISCONNECTED:
            return
        if self._closing or not self._config.auto_reconnect:
            self._transition(ConnectionStatus.DISCONNECTED)
            return

        self._attempt += 1
        if self._attempt > self._config.max_reconnect_attempts:
            logger.error(
                "Giving up on Lerty channel after %d reconnect attempts",
                self._config.max_reconnect_attempts,
            )
            self._transition(ConnectionStatus.DISCONNECTED)
            return

        self._transition(ConnectionStatus.RECONNECTING, self._attempt)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._state.status is ConnectionStatus.RECONNECTING and not self._closing:
            attempt = self._state.attempt
            delay = self.backoff_delay(attempt)
            logger.warning(
                "Channel reconnect attempt %d/%d in %.1fs",
                attempt, self._config.max_reconnect_attempts, delay,
            )
            await asyncio.sleep(delay)
            if self._state.status is not ConnectionStatus.RECONNECTING or self._closing:
                return
            try:
                await self._open()
            except ChannelConnectionError as e:
                logger.warning("Channel reconnect attempt %d failed: %s", attempt, e)
                self._after_failure()
                continue
            logger.info("Channel reconnected after %d attempt(s)", attempt)
            return

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _connection_lost(self, reason: str) -> None:
        if self._closing or self._state.status is not ConnectionStatus.CONNECTED:
            return
        logger.warning("Lerty channel connection lost: %s", reason)

        ws, self._ws = self._ws, None
        self._cancel_tasks()
        self._fail_pending(ChannelConnectionError(f"Connection lost: {reason}"))
        dropped = self._registry.clear()
        self._joining.clear()
        if dropped:
            logger.info(
                "Invalidated %d subscription(s): %s",
                len(dropped), ", ".join(sorted(s.topic for s in dropped)),
            )
        self._after_failure()

        if ws is not None:
            await self._close_transport(ws)

    # ---- Transport ----

    async def _request(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        *,
        join_ref: str | None = None,
        timeout: float,
    ) -> Frame:
        ws = self._ws
        if ws is None:
            raise NotConnected(f"Cannot send {event} on {topic}: channel is {self._state}")

        ref = self._refs.next()
        if event == EVENT_JOIN:
            join_ref = ref
        future: asyncio.Future[Frame] = asyncio.get_running_loop().create_future()
        self._pending[ref] = future

        async def exchange() -> Frame:
            try:
                frame = Frame(topic=topic, event=event, payload=payload, ref=ref, join_ref=join_ref)
                await ws.send(encode(frame))
            except Exception as e:
                raise ChannelConnectionError(f"Failed to send {event} on {topic}: {e}") from e
            return await future

        try:
            return await asyncio.wait_for(exchange(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ChannelTimeout(f"No reply to {event} on {topic} within {timeout}s") from None
        finally:
            self._pending.pop(ref, None)

    async def _leave(self, sub: TopicSubscription) -> None:
        try:
            await self._request(
                sub.topic, EVENT_LEAVE, {}, join_ref=sub.join_ref, timeout=self._config.leave_timeout
            )
        except LertyError as e:
            logger.warning("Leave for %s not acknowledged: %s", sub.topic, e)

    async def _read_loop(self, ws: Any) -> None:
        """Read frames until the socket closes, then report the loss."""
        try:
            async for raw in ws:
                try:
                    frame = decode(raw)
                except ValueError:
                    logger.debug("Ignoring malformed channel frame")
                    continue
                await self._handle_frame(frame)
            reason = "socket closed by server"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"socket error: {e}"

        if ws is self._ws:
            await self._connection_lost(reason)

    async def _handle_frame(self, frame: Frame) -> None:
        if frame.is_reply:
            if frame.topic == PHOENIX_TOPIC:
                if frame.ref == self._heartbeat_ref:
                    self._heartbeat_ref = None
                    self._missed_heartbeats = 0
                return
            future = self._pending.pop(frame.ref or "", None)
            if future is not None and not future.done():
                future.set_result(frame)
            return

        if frame.event in (EVENT_CLOSE, EVENT_ERROR):
            sub = self._registry.get(frame.topic)
            if sub is not None and frame.join_ref in (None, sub.join_ref):
                self._registry.remove(frame.topic)
                logger.warning("Channel %s closed by server (%s)", frame.topic, frame.event)
            return

        if frame.event == EVENT_MESSAGE:
            await self._registry.route(frame.topic, frame.payload)
            return

        logger.debug("Ignoring %s event on %s", frame.event, frame.topic)

    async def _heartbeat_loop(self, ws: Any) -> None:
        """Send heartbeats; two consecutive missed replies drop the connection."""
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            if self._heartbeat_ref is not None:
                self._missed_heartbeats += 1
                if self._missed_heartbeats >= MAX_MISSED_HEARTBEATS:
                    await self._connection_lost("heartbeat timeout")
                    return

            ref = self._refs.next()
            self._heartbeat_ref = ref
            try:
                await ws.send(encode(Frame(topic=PHOENIX_TOPIC, event=EVENT_HEARTBEAT, ref=ref)))
            except Exception as e:
                await self._connection_lost(f"heartbeat failed: {e}")
                return

    def _cancel_tasks(self) -> list[asyncio.Task[None]]:
        current = asyncio.current_task()
        cancelled = []
        for task in (self._reader_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._reader_task = None
        self._heartbeat_task = None
        return cancelled

    async def _stop_tasks(self) -> None:
        for task in self._cancel_tasks():
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _close_transport(self, ws: Any) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=self._config.leave_timeout)
        except Exception:
            logger.debug("Error while closing channel socket", exc_info=True)
