"""
Shared fixtures: an in-memory channel socket that answers like the Lerty
backend, and a factory that hands such sockets to a ChannelConnection.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

from lerty_runtime.types import ConnectionConfig, Credentials

_CLOSED = object()


class FakeSocket:
    """Scripted stand-in for a websocket speaking the channel protocol."""

    def __init__(
        self,
        *,
        join_replies: dict[str, tuple[str | None, Any]] | None = None,
        ack_heartbeats: bool = True,
        reply_leaves: bool = True,
        event_replies: dict[str, tuple[str, Any]] | None = None,
    ) -> None:
        self.sent: list[list[Any]] = []
        self.closed = False
        self.join_replies = join_replies or {}
        self.ack_heartbeats = ack_heartbeats
        self.reply_leaves = reply_leaves
        self.event_replies = event_replies or {}
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    # -- websocket surface --

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        frame = json.loads(raw)
        self.sent.append(frame)
        join_ref, ref, topic, event, _payload = frame

        if topic == "phoenix" and event == "heartbeat":
            if self.ack_heartbeats:
                self._reply(None, ref, topic, "ok", {})
        elif event == "phx_join":
            status, response = self.join_replies.get(topic, ("ok", {}))
            if status is not None:
                self._reply(join_ref, ref, topic, status, response)
        elif event == "phx_leave":
            if self.reply_leaves:
                self._reply(join_ref, ref, topic, "ok", {})
        else:
            status, response = self.event_replies.get(event, ("ok", {"echo": event}))
            self._reply(join_ref, ref, topic, status, response)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item

    # -- test controls --

    def feed(self, frame: list[Any]) -> None:
        self._incoming.put_nowait(json.dumps(frame))

    def feed_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def push(self, topic: str, payload: dict[str, Any], event: str = "message") -> None:
        self.feed([None, None, topic, event, payload])

    def drop(self) -> None:
        """Server-side close."""
        self._incoming.put_nowait(_CLOSED)

    def events(self, event: str) -> list[list[Any]]:
        return [f for f in self.sent if f[3] == event]

    def _reply(self, join_ref: Any, ref: Any, topic: str, status: str, response: Any) -> None:
        self.feed([join_ref, ref, topic, "phx_reply", {"status": status, "response": response}])


class SocketFactory:
    """Connect factory returning scripted outcomes, then fresh sockets."""

    def __init__(self, *outcomes: Any, fail: bool = False, make: Callable[[], FakeSocket] = FakeSocket) -> None:
        self._outcomes = list(outcomes)
        self._fail = fail
        self._make = make
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self._outcomes:
            outcome = self._outcomes.pop(0)
        elif self._fail:
            outcome = OSError("connection refused")
        else:
            outcome = self._make()
        if isinstance(outcome, BaseException):
            raise outcome
        self.sockets.append(outcome)
        return outcome


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def config() -> ConnectionConfig:
    return ConnectionConfig(
        url="wss://api.lerty.test/socket",
        token="tok_test",
        timeout=0.5,
        heartbeat_interval=5.0,
        reconnect_delay=0.01,
        max_reconnect_attempts=3,
        leave_timeout=0.1,
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(api_token="tok_test", base_url="https://api.lerty.test")
