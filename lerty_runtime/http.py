"""
HTTP client for the Lerty API.

Stateless request/response calls: agent directory lookups, outbound
messages, typing indicators, conversation replies and file downloads. Used
directly by workflows and as the fallback transport when no channel is
connected.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any
from urllib.parse import quote as url_quote, urlsplit

import httpx

from lerty_runtime.types import (
    Agent,
    CanonicalMessage,
    Credentials,
    EventType,
    OutboundMessage,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


class LertyHttp:
    """Thin wrapper around httpx for Lerty API requests."""

    def __init__(self, base_url: str, api_token: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_credentials(cls, credentials: Credentials, timeout: float = 30.0) -> LertyHttp:
        return cls(credentials.base_url, credentials.api_token, timeout=timeout)

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        _retries: int = 3,
        _attempt: int = 0,
    ) -> Any:
        """Make an authenticated JSON request.

        ``path`` is relative to ``base_url`` unless it is an absolute URL.
        Retries on 429 (rate limited) with exponential backoff: up to 3
        retries with 1s -> 2s -> 4s delays (jittered), honouring
        ``Retry-After`` when it is longer.

        Raises:
            httpx.HTTPStatusError: On any response status >= 400.
        """
        response = await self._client.request(method=method, url=path, json=body)

        if response.status_code == 429 and _retries > 0:
            retry_after = float(response.headers.get("retry-after", "0") or 0)
            delay = max(retry_after, min(2 ** _attempt, 30))
            delay *= 0.8 + random.random() * 0.4
            logger.info(
                "Rate limited (429), retrying in %.1fs (attempt %d/%d)",
                delay, _attempt + 1, _attempt + _retries,
            )
            await asyncio.sleep(delay)
            return await self.request(method, path, body, _retries - 1, _attempt + 1)

        # Don't use raise_for_status(): its message would carry the whole
        # response body. Extract a short error message instead.
        if response.status_code >= 400:
            try:
                err_data = response.json()
                err_msg = err_data.get("error", err_data.get("message", "Request failed"))
            except Exception:
                err_msg = "Request failed"
            raise httpx.HTTPStatusError(
                f"Lerty request failed ({response.status_code}): {err_msg}",
                request=response.request,
                response=response,
            )

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> LertyHttp:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ---- Agent directory ----

    async def get_agents(self) -> list[Agent]:
        data = await self.request("GET", "/api/v1/agents")
        return [Agent(**a) for a in data.get("agents") or []]

    async def get_agent(self, agent_id: str) -> Agent:
        data = await self.request("GET", f"/api/v1/agents/{url_quote(agent_id, safe='')}")
        return Agent(**data.get("agent", data))

    async def search_agents(self, query: str | None = None) -> list[Agent]:
        """Agents whose name contains ``query`` (case-insensitive); all when empty."""
        agents = await self.get_agents()
        if not query:
            return agents
        needle = query.lower()
        return [a for a in agents if needle in a.name.lower()]

    async def test_connection(self) -> bool:
        """Whether the credentials can list agents."""
        try:
            await self.get_agents()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Lerty connection test failed: %s", e)
            return False
        return True

    # ---- Messaging ----

    async def send_message(
        self,
        agent_id: str,
        message: OutboundMessage | dict[str, Any],
    ) -> dict[str, Any]:
        """Post a message to an agent's webhook endpoint.

        Returns:
            The stored message as returned by the backend.
        """
        body = message.to_wire() if isinstance(message, OutboundMessage) else message
        data = await self.request(
            "POST", f"/webhooks/agents/{url_quote(agent_id, safe='')}/message", body
        )
        return data.get("message", data)

    async def send_typing_indicator(
        self,
        agent_id: str,
        conversation_id: str,
        typing: bool = True,
        response_webhook: str | None = None,
    ) -> dict[str, Any]:
        """Show or clear the typing indicator in a conversation.

        When the triggering message carried a ``response_webhook``, the
        callback goes to that host instead of ``base_url``.
        """
        path = f"/api/agents/{url_quote(agent_id, safe='')}/callback"
        if response_webhook:
            parts = urlsplit(response_webhook)
            path = f"{parts.scheme}://{parts.netloc}{path}"
        return await self.request(
            "POST",
            path,
            {
                "data": {"typing": typing},
                "conversation_id": conversation_id,
                "callback_type": "typing",
            },
        )

    async def reply_to_conversation(
        self,
        agent_id: str,
        conversation_id: str,
        content: str,
        trigger_message: CanonicalMessage | None = None,
        organization_id: str = "",
    ) -> dict[str, Any]:
        """Answer a conversation opened by an inbound message.

        Posts to the message's ``response_webhook``; without one, falls back
        to sending an ``agent_response`` through the agent webhook.

        Raises:
            ValueError: If ``conversation_id`` is blank or an unrendered
                template expression.
        """
        if "{{" in conversation_id or "}}" in conversation_id:
            raise ValueError(
                f"Conversation ID contains unevaluated expression: {conversation_id}"
            )
        if not conversation_id.strip():
            raise ValueError("Conversation ID is required but was empty")

        response_webhook = trigger_message.response_webhook if trigger_message else None
        if not response_webhook:
            logger.warning(
                "No response_webhook on trigger message, falling back to agent webhook for %s",
                agent_id,
            )
            return await self.send_message(
                agent_id,
                OutboundMessage(
                    type=EventType.AGENT_RESPONSE,
                    content=content,
                    conversation_id=conversation_id,
                    agent_id=agent_id,
                ),
            )

        body = {
            "conversation_id": conversation_id,
            "content": content,
            "message_id": OutboundMessage(content=content).id,
            "timestamp": utc_now_iso(),
            "user_id": (trigger_message.user_id if trigger_message else None) or "",
            "organization_id": organization_id,
        }
        return await self.request("POST", response_webhook, body)

    # ---- Files ----

    async def download_file(self, file_url: str, max_size: int | None = None) -> bytes:
        """Download a file with the API token.

        Raises:
            httpx.HTTPStatusError: On an error status.
            ValueError: If the file is larger than ``max_size`` bytes.
        """
        async with self._client.stream("GET", file_url) as response:
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"File download failed ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            declared = response.headers.get("content-length")
            if max_size is not None and declared and declared.isdigit() and int(declared) > max_size:
                raise ValueError(f"File is {declared} bytes, limit is {max_size}")

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if max_size is not None and received > max_size:
                    raise ValueError(f"File exceeds limit of {max_size} bytes")
                chunks.append(chunk)
        return b"".join(chunks)
