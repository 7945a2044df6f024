"""
Inbound webhook transport.

:class:`WebhookReceiver` turns one HTTP request into exactly one
:class:`WebhookResult`; :func:`create_webhook_app` exposes it as a FastAPI
application::

    receiver = WebhookReceiver(dispatcher, secret="s3cret", agent_id="42")
    app = create_webhook_app(receiver)
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lerty_runtime.dispatcher import Dispatcher
from lerty_runtime.errors import Unauthorized
from lerty_runtime.normalizer import Transport, normalize
from lerty_runtime.types import WebhookResult

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-lerty-signature", "authorization")


class WebhookReceiver:
    """Authenticates, normalizes and dispatches webhook requests."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        secret: str | None = None,
        agent_id: str | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._secret = secret or None
        self._agent_id = agent_id

    def verify(self, headers: Mapping[str, str]) -> None:
        """Check the shared secret, if one is configured.

        Raises:
            Unauthorized: If the secret header is missing or differs.
        """
        if self._secret is None:
            return
        lowered = {k.lower(): v for k, v in headers.items()}
        received = next((lowered[h] for h in SIGNATURE_HEADERS if lowered.get(h)), "")
        if not hmac.compare_digest(received.encode(), self._secret.encode()):
            raise Unauthorized("Webhook secret mismatch")

    async def handle(self, body: Any, headers: Mapping[str, str]) -> WebhookResult:
        try:
            self.verify(headers)
        except Unauthorized:
            logger.warning("Rejected webhook request with a bad secret")
            return WebhookResult(status_code=401, body={"error": "Unauthorized"})

        try:
            message = normalize(body, Transport.WEBHOOK, agent_id=self._agent_id)
            return await self._dispatcher.respond(message)
        except Exception:
            logger.exception("Failed to handle webhook request")
            return WebhookResult(status_code=500, body={"error": "Internal error"})


def create_webhook_app(receiver: WebhookReceiver, path: str = "/webhook") -> FastAPI:
    """FastAPI app with ``POST {path}`` for webhooks and ``GET /health``."""
    app = FastAPI(title="Lerty Webhook Receiver", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(path)
    async def receive(request: Request) -> JSONResponse:
        raw = await request.body()
        try:
            body = json.loads(raw) if raw else {}
        except ValueError:
            logger.debug("Webhook body is not JSON, normalizing defaults")
            body = {}
        result = await receiver.handle(body, request.headers)
        return JSONResponse(status_code=result.status_code, content=result.body)

    return app
