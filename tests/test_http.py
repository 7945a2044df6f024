"""
Unit tests for the Lerty HTTP client.

Uses respx to mock the Lerty API, so no backend is required. Tests verify
that requests are serialised as the backend expects and that responses
and errors are decoded.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from lerty_runtime.http import LertyHttp
from lerty_runtime.types import CanonicalMessage, Credentials, EventType, OutboundMessage

BASE_URL = "https://api.lerty.test"
TOKEN = "tok_test"


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("lerty_runtime.http.asyncio.sleep", fake_sleep)
    return delays


# ============================================================
#  Request handling
# ============================================================


@pytest.mark.asyncio
async def test_request_sends_bearer_token() -> None:
    """Requests carry the API token and JSON accept header."""
    with respx.mock:
        route = respx.get(f"{BASE_URL}/api/v1/agents").mock(
            return_value=httpx.Response(200, json={"agents": []})
        )
        http = LertyHttp(BASE_URL + "/", TOKEN)
        data = await http.request("GET", "/api/v1/agents")
        await http.close()

        assert route.called
        request = route.calls.last.request
        assert request.headers["authorization"] == f"Bearer {TOKEN}"
        assert request.headers["accept"] == "application/json"
        assert data == {"agents": []}


@pytest.mark.asyncio
async def test_error_status_raises_short_message() -> None:
    """Error responses raise with the backend's error text only."""
    with respx.mock:
        respx.get(f"{BASE_URL}/api/v1/agents").mock(
            return_value=httpx.Response(403, json={"error": "Forbidden", "trace": "x" * 500})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            with pytest.raises(httpx.HTTPStatusError) as exc_info:
                await http.request("GET", "/api/v1/agents")

    assert str(exc_info.value) == "Lerty request failed (403): Forbidden"


@pytest.mark.asyncio
async def test_rate_limit_is_retried(no_sleep: list[float]) -> None:
    """429 responses are retried with growing delays."""
    with respx.mock:
        route = respx.get(f"{BASE_URL}/api/v1/agents").mock(
            side_effect=[
                httpx.Response(429),
                httpx.Response(429, headers={"Retry-After": "3"}),
                httpx.Response(200, json={"agents": []}),
            ]
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            data = await http.request("GET", "/api/v1/agents")

    assert data == {"agents": []}
    assert route.call_count == 3
    assert len(no_sleep) == 2
    assert 0.8 <= no_sleep[0] <= 1.2
    assert no_sleep[1] >= 3 * 0.8


@pytest.mark.asyncio
async def test_rate_limit_gives_up(no_sleep: list[float]) -> None:
    """After three retries the 429 is raised."""
    with respx.mock:
        route = respx.get(f"{BASE_URL}/api/v1/agents").mock(return_value=httpx.Response(429))
        async with LertyHttp(BASE_URL, TOKEN) as http:
            with pytest.raises(httpx.HTTPStatusError):
                await http.request("GET", "/api/v1/agents")

    assert route.call_count == 4


@pytest.mark.asyncio
async def test_empty_response_is_empty_dict() -> None:
    """204 and empty bodies decode to {}."""
    with respx.mock:
        respx.post(f"{BASE_URL}/noop").mock(return_value=httpx.Response(204))
        async with LertyHttp(BASE_URL, TOKEN) as http:
            assert await http.request("POST", "/noop", {}) == {}


# ============================================================
#  Agent directory
# ============================================================


@pytest.mark.asyncio
async def test_get_agents_and_search() -> None:
    """Agents are parsed and searchable by name."""
    agents = [
        {"id": "1", "name": "Support Bot", "tenantId": "t1"},
        {"id": "2", "name": "Sales", "status": "inactive"},
    ]
    with respx.mock:
        respx.get(f"{BASE_URL}/api/v1/agents").mock(
            return_value=httpx.Response(200, json={"agents": agents})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            listed = await http.get_agents()
            found = await http.search_agents("support")
            everything = await http.search_agents("")

    assert [a.id for a in listed] == ["1", "2"]
    assert listed[0].tenant_id == "t1"
    assert listed[1].status == "inactive"
    assert [a.name for a in found] == ["Support Bot"]
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_get_agent() -> None:
    """A single agent is unwrapped from the response."""
    with respx.mock:
        respx.get(f"{BASE_URL}/api/v1/agents/7").mock(
            return_value=httpx.Response(200, json={"agent": {"id": "7", "name": "Seven"}})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            agent = await http.get_agent("7")

    assert agent.name == "Seven"


@pytest.mark.asyncio
async def test_test_connection() -> None:
    """Connection test reports failures as False."""
    with respx.mock:
        respx.get(f"{BASE_URL}/api/v1/agents").mock(
            side_effect=[httpx.Response(200, json={"agents": []}), httpx.Response(401)]
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            assert await http.test_connection() is True
            assert await http.test_connection() is False


# ============================================================
#  Messaging
# ============================================================


@pytest.mark.asyncio
async def test_send_message() -> None:
    """Outbound messages are posted camelCase to the agent webhook."""
    with respx.mock:
        route = respx.post(f"{BASE_URL}/webhooks/agents/42/message").mock(
            return_value=httpx.Response(200, json={"message": {"id": "srv-1"}})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            result = await http.send_message(
                "42", OutboundMessage(content="hi", conversation_id="c1", user_id="u1")
            )

        body = json.loads(route.calls.last.request.content)

    assert result == {"id": "srv-1"}
    assert body["content"] == "hi"
    assert body["conversationId"] == "c1"
    assert body["userId"] == "u1"
    assert body["type"] == "user_message"
    assert "fileUrl" not in body


def test_outbound_message_defaults() -> None:
    """Outbound messages get an id and a generated conversation id."""
    msg = OutboundMessage(content="hi")
    assert msg.id
    assert msg.conversation_id.startswith("conversation_")


@pytest.mark.asyncio
async def test_typing_indicator_uses_response_webhook_host() -> None:
    """Typing callbacks go to the host of the response webhook."""
    with respx.mock:
        route = respx.post("https://edge.lerty.test/api/agents/42/callback").mock(
            return_value=httpx.Response(200, json={"ok": True})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            await http.send_typing_indicator(
                "42", "c1", typing=False, response_webhook="https://edge.lerty.test/hooks/reply?x=1"
            )

        body = json.loads(route.calls.last.request.content)

    assert body == {"data": {"typing": False}, "conversation_id": "c1", "callback_type": "typing"}


@pytest.mark.asyncio
async def test_typing_indicator_default_host() -> None:
    """Without a response webhook the API host is used."""
    with respx.mock:
        route = respx.post(f"{BASE_URL}/api/agents/42/callback").mock(
            return_value=httpx.Response(200, json={})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            await http.send_typing_indicator("42", "c1")

        assert route.called


@pytest.mark.asyncio
async def test_reply_to_conversation_via_response_webhook() -> None:
    """Replies post to the trigger message's response webhook."""
    trigger = CanonicalMessage(
        content="question", user_id="u1", response_webhook="https://edge.lerty.test/hooks/reply"
    )
    with respx.mock:
        route = respx.post("https://edge.lerty.test/hooks/reply").mock(
            return_value=httpx.Response(200, json={"success": True})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            result = await http.reply_to_conversation(
                "42", "c1", "answer", trigger_message=trigger, organization_id="org-1"
            )

        body = json.loads(route.calls.last.request.content)

    assert result == {"success": True}
    assert body["conversation_id"] == "c1"
    assert body["content"] == "answer"
    assert body["user_id"] == "u1"
    assert body["organization_id"] == "org-1"
    assert body["message_id"]


@pytest.mark.asyncio
async def test_reply_to_conversation_falls_back_to_agent_webhook() -> None:
    """Without a response webhook the reply is sent as an agent response."""
    with respx.mock:
        route = respx.post(f"{BASE_URL}/webhooks/agents/42/message").mock(
            return_value=httpx.Response(200, json={"id": "srv-2"})
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            result = await http.reply_to_conversation("42", "c1", "answer")

        body = json.loads(route.calls.last.request.content)

    assert result == {"id": "srv-2"}
    assert body["type"] == EventType.AGENT_RESPONSE.value
    assert body["conversationId"] == "c1"
    assert body["agentId"] == "42"


@pytest.mark.asyncio
@pytest.mark.parametrize("conversation_id", ["", "   ", "{{ $json.conversationId }}"])
async def test_reply_rejects_bad_conversation_id(conversation_id: str) -> None:
    """Blank or unrendered conversation ids are refused before any request."""
    async with LertyHttp(BASE_URL, TOKEN) as http:
        with pytest.raises(ValueError):
            await http.reply_to_conversation("42", conversation_id, "answer")


# ============================================================
#  Files
# ============================================================


@pytest.mark.asyncio
async def test_download_file() -> None:
    """Files are downloaded with the API token."""
    with respx.mock:
        route = respx.get("https://files.lerty.test/a.txt").mock(
            return_value=httpx.Response(200, content=b"hello")
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            data = await http.download_file("https://files.lerty.test/a.txt", max_size=10)

        assert route.calls.last.request.headers["authorization"] == f"Bearer {TOKEN}"

    assert data == b"hello"


@pytest.mark.asyncio
async def test_download_file_too_large() -> None:
    """Files above the limit are refused."""
    with respx.mock:
        respx.get("https://files.lerty.test/big.bin").mock(
            return_value=httpx.Response(200, content=b"x" * 100)
        )
        async with LertyHttp(BASE_URL, TOKEN) as http:
            with pytest.raises(ValueError, match="100"):
                await http.download_file("https://files.lerty.test/big.bin", max_size=10)


# ============================================================
#  Credentials
# ============================================================


def test_credentials_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Credentials load from the environment and derive the socket URL."""
    monkeypatch.setenv("LERTY_API_TOKEN", TOKEN)
    monkeypatch.setenv("LERTY_BASE_URL", "https://api.lerty.test/")
    monkeypatch.delenv("LERTY_WS_URL", raising=False)

    creds = Credentials.from_env()

    assert creds.base_url == BASE_URL
    assert creds.socket_url == "wss://api.lerty.test/socket"


def test_credentials_explicit_ws_url() -> None:
    """An explicit websocket URL wins over the derived one."""
    creds = Credentials(api_token=TOKEN, ws_url="wss://rt.lerty.test/socket/")
    assert creds.socket_url == "wss://rt.lerty.test/socket"
    assert creds.base_url == "https://api.lerty.ai"
