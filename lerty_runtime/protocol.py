"""
Channel wire protocol.

The Lerty socket speaks the Phoenix channels v2 JSON format: every frame is
a five-element array ``[join_ref, ref, topic, event, payload]``.
"""

from __future__ import annotations

import itertools
import json
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, Field

PROTOCOL_VSN = "2.0.0"

PHOENIX_TOPIC = "phoenix"
EVENT_HEARTBEAT = "heartbeat"
EVENT_JOIN = "phx_join"
EVENT_LEAVE = "phx_leave"
EVENT_REPLY = "phx_reply"
EVENT_CLOSE = "phx_close"
EVENT_ERROR = "phx_error"
EVENT_MESSAGE = "message"


class Frame(BaseModel):
    model_config = {"frozen": True}

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | None = None
    join_ref: str | None = None

    @property
    def is_reply(self) -> bool:
        return self.event == EVENT_REPLY

    @property
    def reply_status(self) -> str | None:
        if not self.is_reply:
            return None
        return self.payload.get("status")

    @property
    def reply_response(self) -> Any:
        return self.payload.get("response", {})


def encode(frame: Frame) -> str:
    return json.dumps([frame.join_ref, frame.ref, frame.topic, frame.event, frame.payload])


def decode(raw: str | bytes) -> Frame:
    """Parse one frame.

    Raises:
        ValueError: If ``raw`` is not a five-element JSON array.
    """
    data = json.loads(raw)
    if not isinstance(data, list) or len(data) != 5:
        raise ValueError("Channel frame must be a five-element array")
    join_ref, ref, topic, event, payload = data
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return Frame(
        topic=str(topic),
        event=str(event),
        payload=payload,
        ref=None if ref is None else str(ref),
        join_ref=None if join_ref is None else str(join_ref),
    )


def socket_url(endpoint: str, token: str) -> str:
    """Websocket URL for a Phoenix socket endpoint with token auth."""
    base = endpoint.rstrip("/")
    if not base.endswith("/websocket"):
        base = f"{base}/websocket"
    return f"{base}?{urlencode({'token': token, 'vsn': PROTOCOL_VSN})}"


class RefCounter:
    """Monotonic message references, as strings."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def next(self) -> str:
        return str(next(self._counter))
