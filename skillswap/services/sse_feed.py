"""SSE change feed transport.

Each subscription is one long-lived ``GET {realtime_url}/changes`` stream
(``text/event-stream``) consumed by a background task.  The table name and
the subscription filter travel as query parameters in PostgREST syntax, so
the server narrows the stream; rows are re-checked locally with the same
``Filter`` before dispatch.

A dropped or refused stream is logged and reopened after
``feed_reconnect_delay``.  Events emitted while disconnected are lost;
consumers recover with ``SynchronizedCollection.resync()``.
"""
from __future__ import annotations

import asyncio
import logging

import httpx

from skillswap.config import settings
from skillswap.services.change_feed import EventHandler, routes_to
from skillswap.services.query import Filter
from skillswap.services.sse_parser import parse_change_line

logger = logging.getLogger(__name__)


class SSEChangeFeed:
    """
    Realtime transport backed by one SSE stream per subscription.

    Args:
        base_url: Realtime endpoint (defaults to ``settings.realtime_url``).
        api_key: Project API key sent as ``apikey``.
        access_token: Signed-in user's JWT; falls back to the API key.
        reconnect_delay: Seconds to wait before reopening a dropped stream.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
        reconnect_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.realtime_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.store_anon_key
        self.reconnect_delay = (
            settings.feed_reconnect_delay if reconnect_delay is None else reconnect_delay
        )
        self._access_token = access_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "text/event-stream"}
            if self.api_key:
                headers["apikey"] = self.api_key
            bearer = self._access_token or self.api_key
            if bearer:
                headers["Authorization"] = f"Bearer {bearer}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                # Streams stay open indefinitely; only bound the connect phase.
                timeout=httpx.Timeout(connect=5.0, read=None, write=10.0, pool=5.0),
                transport=self._transport,
            )
        return self._client

    # ------------------------------------------------------------------
    # ChangeFeedTransport
    # ------------------------------------------------------------------

    def open(self, subscription_id: str, resource: str, filter: Filter, on_event: EventHandler) -> None:
        task = asyncio.create_task(
            self._consume(subscription_id, resource, filter, on_event),
            name=f"sse-feed:{subscription_id}",
        )
        self._tasks[subscription_id] = task

    def close(self, subscription_id: str) -> None:
        task = self._tasks.pop(subscription_id, None)
        if task is not None:
            task.cancel()

    async def aclose(self) -> None:
        """Cancel every stream and close the HTTP client."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def active_streams(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Stream loop
    # ------------------------------------------------------------------

    async def _consume(
        self,
        subscription_id: str,
        resource: str,
        filter: Filter,
        on_event: EventHandler,
    ) -> None:
        params = [("table", resource), *filter.to_params()]
        while True:
            try:
                async with self.client.stream("GET", "/changes", params=params) as resp:
                    if resp.status_code != 200:
                        body = await resp.aread()
                        logger.warning(
                            f"⚠️ Change feed {subscription_id} refused "
                            f"(HTTP {resp.status_code}): {body.decode(errors='replace')[:200]}"
                        )
                    else:
                        logger.info(f"✅ Change feed {subscription_id} connected")
                        async for line in resp.aiter_lines():
                            event = parse_change_line(line, resource)
                            if event is None or event.resource != resource:
                                continue
                            if not routes_to(filter, event):
                                continue
                            try:
                                on_event(event)
                            except Exception:
                                logger.exception(
                                    f"❌ Change handler {subscription_id} failed on {event.kind.value}"
                                )
                        logger.warning(f"⚠️ Change feed {subscription_id} ended by server")
            except httpx.HTTPError as exc:
                logger.warning(f"⚠️ Change feed {subscription_id} dropped: {exc}")
            await asyncio.sleep(self.reconnect_delay)
            logger.info(f"Reconnecting change feed {subscription_id}")
