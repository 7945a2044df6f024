"""
Pydantic models for the Lerty runtime.

Configuration, canonical message records, filter policies and the HTTP
shapes exchanged with the Lerty backend. Python attributes are snake_case;
wire names are camelCase aliases.
"""

from __future__ import annotations

import enum
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ============================================================
#  Configuration
# ============================================================


DEFAULT_BASE_URL = "https://api.lerty.ai"


class Credentials(BaseModel):
    """Credentials for the Lerty API."""

    api_token: str = Field(alias="apiToken")
    base_url: str = Field(DEFAULT_BASE_URL, alias="baseUrl")
    ws_url: str | None = Field(None, alias="wsUrl")

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def socket_url(self) -> str:
        """Channel endpoint; derived from ``base_url`` when ``ws_url`` is unset."""
        if self.ws_url:
            return self.ws_url.rstrip("/")
        ws_base = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{ws_base}/socket"

    @classmethod
    def from_env(cls) -> Credentials:
        """Load credentials from ``LERTY_API_TOKEN``, ``LERTY_BASE_URL`` and ``LERTY_WS_URL``.

        Raises:
            KeyError: If ``LERTY_API_TOKEN`` is not set.
        """
        return cls(
            api_token=os.environ["LERTY_API_TOKEN"],
            base_url=os.getenv("LERTY_BASE_URL", DEFAULT_BASE_URL),
            ws_url=os.getenv("LERTY_WS_URL") or None,
        )


class ConnectionConfig(BaseModel):
    """Channel connection settings. Immutable once constructed.

    Durations are in seconds.
    """

    url: str
    token: str
    timeout: float = Field(10.0, gt=0)
    heartbeat_interval: float = Field(30.0, gt=0)
    reconnect_delay: float = Field(5.0, ge=0)
    max_reconnect_attempts: int = Field(10, ge=0)
    auto_reconnect: bool = True
    leave_timeout: float = Field(5.0, gt=0)

    model_config = {"frozen": True}

    @classmethod
    def from_credentials(cls, credentials: Credentials, **overrides: Any) -> ConnectionConfig:
        return cls(url=credentials.socket_url, token=credentials.api_token, **overrides)


class AttachmentPolicy(BaseModel):
    """Limits applied when fetching a message's file attachment."""

    enabled: bool = False
    max_size: int = Field(10 * 1024 * 1024, gt=0)
    allowed_types: tuple[str, ...] = (
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "text/plain",
        "text/csv",
        "application/pdf",
        "application/json",
        "application/xml",
        "application/zip",
        "application/x-zip-compressed",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )

    model_config = {"frozen": True}


# ============================================================
#  Connection
# ============================================================


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionState(BaseModel):
    """Snapshot of a channel connection's lifecycle state.

    ``attempt`` is only meaningful while ``status`` is ``RECONNECTING``.
    """

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0

    model_config = {"frozen": True}

    def __str__(self) -> str:
        if self.status is ConnectionStatus.RECONNECTING:
            return f"reconnecting({self.attempt})"
        return self.status.value


# ============================================================
#  Messages
# ============================================================


class EventType(str, enum.Enum):
    USER_MESSAGE = "user_message"
    AGENT_RESPONSE = "agent_response"
    TYPING = "typing"
    AGENT_STATUS = "agent_status"
    FILE_ATTACHMENT = "file_attachment"


class CanonicalMessage(BaseModel):
    """One inbound event, normalized across transports.

    Instances are frozen; filters and dispatch only ever read them.
    """

    id: str = ""
    event_type: EventType = Field(EventType.USER_MESSAGE, alias="type")
    content: str = ""
    conversation_id: str = Field("", alias="conversationId")
    user_id: str | None = Field(None, alias="userId")
    agent_id: str | None = Field(None, alias="agentId")
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: dict[str, Any] = Field(default_factory=dict)
    file_url: str | None = Field(None, alias="fileUrl")
    file_name: str | None = Field(None, alias="fileName")
    file_type: str | None = Field(None, alias="fileType")
    response_webhook: str | None = Field(None, alias="responseWebhook")

    model_config = {"populate_by_name": True, "frozen": True}

    def to_wire(self) -> dict[str, Any]:
        """camelCase dict without unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FilterPolicy(BaseModel):
    """Conditions a message must meet to reach the consumer. All are AND-ed."""

    event_types: frozenset[EventType] = Field(default_factory=frozenset, alias="eventTypes")
    user_id: str | None = Field(None, alias="userId")
    conversation_id: str | None = Field(None, alias="conversationId")
    agent_id: str | None = Field(None, alias="agentId")
    content_contains: str | None = Field(None, alias="contentContains")

    model_config = {"populate_by_name": True, "frozen": True}


class FileAttachment(BaseModel):
    """A file referenced by a message, optionally with its downloaded bytes."""

    url: str
    name: str
    type: str
    size: int | None = None
    data: bytes | None = Field(None, repr=False)


class OutboundMessage(BaseModel):
    """Body of ``POST /webhooks/agents/{agentId}/message``."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType = EventType.USER_MESSAGE
    content: str
    conversation_id: str = Field(
        default_factory=lambda: f"conversation_{int(time.time() * 1000)}",
        alias="conversationId",
    )
    user_id: str | None = Field(None, alias="userId")
    agent_id: str | None = Field(None, alias="agentId")
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: dict[str, Any] | None = None
    file_url: str | None = Field(None, alias="fileUrl")
    file_name: str | None = Field(None, alias="fileName")
    file_type: str | None = Field(None, alias="fileType")

    model_config = {"populate_by_name": True}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookResult(BaseModel):
    """Status code and JSON body answered to an inbound webhook request."""

    status_code: int = 200
    body: dict[str, Any] = Field(default_factory=lambda: {"received": True})


# ============================================================
#  Agent directory
# ============================================================


class Agent(BaseModel):
    """A Lerty agent as listed by the directory endpoint."""

    id: str
    name: str
    description: str | None = None
    status: str = "active"
    tenant_id: str | None = Field(None, alias="tenantId")
    organization_id: str | None = Field(None, alias="organizationId")
    metadata: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}
