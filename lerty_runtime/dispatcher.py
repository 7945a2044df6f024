"""
Delivery of admitted messages to the workflow emission point.

Two entry points share one filter policy:

- :meth:`Dispatcher.dispatch` for the channel path. Admitted messages are
  queued and emitted one by one, in arrival order, by a single worker task;
  the caller never waits on the emission point.
- :meth:`Dispatcher.respond` for the webhook path, where the caller is an
  HTTP request waiting for its status code.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from lerty_runtime.errors import AttachmentError
from lerty_runtime.files import fetch_attachment
from lerty_runtime.filters import admit
from lerty_runtime.types import (
    AttachmentPolicy,
    CanonicalMessage,
    FileAttachment,
    FilterPolicy,
    WebhookResult,
)

if TYPE_CHECKING:
    from lerty_runtime.http import LertyHttp

logger = logging.getLogger(__name__)

# Emission point: receives the message and, when fetched, its attachment
Emitter = Callable[[CanonicalMessage, FileAttachment | None], Coroutine[Any, Any, None] | None]

_STOP = object()


class Dispatcher:
    """Filters messages and forwards admitted ones to ``emit``."""

    def __init__(
        self,
        emit: Emitter,
        policy: FilterPolicy | None = None,
        *,
        attachments: AttachmentPolicy | None = None,
        http: LertyHttp | None = None,
    ) -> None:
        self._emit = emit
        self._policy = policy or FilterPolicy()
        self._attachments = attachments or AttachmentPolicy()
        self._http = http
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def policy(self) -> FilterPolicy:
        return self._policy

    def admits(self, message: CanonicalMessage) -> bool:
        return admit(message, self._policy)

    # ---- Channel path ----

    def start(self) -> None:
        """Start the emission worker. Safe to call twice."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    def dispatch(self, message: CanonicalMessage) -> bool:
        """Queue ``message`` for emission if the policy admits it.

        Returns:
            Whether the message was admitted.
        """
        if not self.admits(message):
            logger.debug("Filtered %s message %s", message.event_type.value, message.id)
            return False
        self.start()
        self._queue.put_nowait(message)
        return True

    async def drain(self) -> None:
        """Wait until every queued message has been emitted."""
        await self._queue.join()

    async def stop(self) -> None:
        """Emit what is already queued, then stop the worker."""
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        self._queue.put_nowait(_STOP)
        await worker

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._deliver(item)
            except Exception:
                logger.exception("Emission failed for message %s", getattr(item, "id", "?"))
            finally:
                self._queue.task_done()

    # ---- Webhook path ----

    async def respond(self, message: CanonicalMessage) -> WebhookResult:
        """Filter and emit ``message`` inline, producing the HTTP answer.

        Filtered messages still get ``200`` so the sender does not retry.
        Emission errors propagate to the caller.
        """
        if not self.admits(message):
            return WebhookResult(body={"received": True, "filtered": True})
        await self._deliver(message)
        return WebhookResult(body={"received": True})

    # ---- Shared ----

    async def _deliver(self, message: CanonicalMessage) -> None:
        attachment = await self._enrich(message)
        result = self._emit(message, attachment)
        if asyncio.iscoroutine(result):
            await result

    async def _enrich(self, message: CanonicalMessage) -> FileAttachment | None:
        if not self._attachments.enabled or not message.file_url or self._http is None:
            return None
        try:
            return await fetch_attachment(self._http, message, self._attachments)
        except AttachmentError as e:
            logger.warning("Forwarding message %s without attachment: %s", message.id, e)
            return None
