"""
client.py — How the state store reaches the heatmap backend.

Two seams, both swappable:

  HeatmapApi        snapshot fetches. HttpHeatmapApi talks to
                    GET /api/v1/heatmap over httpx; pass an ASGITransport
                    to run against the app in-process.
  RealtimeChannel   subscribe / unsubscribe and inbound wire messages.
                    WebSocketChannel speaks the stream protocol over
                    WS /api/v1/heatmap/stream (httpx-ws) and reports a
                    dropped socket through on_lost. EngineChannel attaches
                    directly to a HeatmapEngine's subscription manager and
                    forwards every delivered event as the same camelCase
                    dict the WebSocket sends.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Awaitable, Callable, Protocol

import httpx
from httpx_ws import AsyncWebSocketSession, WebSocketDisconnect, WebSocketNetworkError, aconnect_ws

from civicpulse.models.common import RegionBounds
from civicpulse.models.heatmap import HeatmapApiResponse, HeatmapSnapshot
from civicpulse.models.realtime import HeatmapFilters, RealtimeSubscription, SubscribeRequest, UpdateEvent
from civicpulse.services.engine import HeatmapEngine
from civicpulse.services.subscriptions import to_wire

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]
LostHandler = Callable[[], Awaitable[None]]

STREAM_PATH = "/api/v1/heatmap/stream"
CONTROL_REPLIES = {"subscription_confirmed", "unsubscribed", "subscription_error"}


class HeatmapApiError(Exception):
    """The backend answered, but with success=false or an error status."""


class RealtimeChannelError(Exception):
    """The stream rejected a subscribe or unsubscribe request."""


class HeatmapApi(Protocol):
    async def fetch_snapshot(
        self,
        bounds: RegionBounds | None = None,
        filters: HeatmapFilters | None = None,
    ) -> HeatmapSnapshot: ...


class RealtimeChannel(Protocol):
    async def connect(self, on_message: MessageHandler, on_lost: LostHandler | None = None) -> None: ...

    async def subscribe(self, region_id: str, bounds: RegionBounds, filters: HeatmapFilters | None = None) -> str: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...

    async def close(self) -> None: ...


def snapshot_params(bounds: RegionBounds | None, filters: HeatmapFilters | None) -> dict:
    params: dict = {}
    if bounds is not None:
        params["bbox"] = ",".join(str(v) for v in (*bounds.southwest, *bounds.northeast))
    if filters is not None:
        if filters.categories:
            params["category"] = filters.categories
        if filters.min_value is not None:
            params["minValue"] = filters.min_value
        if filters.max_value is not None:
            params["maxValue"] = filters.max_value
    return params


class HttpHeatmapApi:
    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def fetch_snapshot(
        self,
        bounds: RegionBounds | None = None,
        filters: HeatmapFilters | None = None,
    ) -> HeatmapSnapshot:
        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=self._timeout) as client:
            response = await client.get("/api/v1/heatmap", params=snapshot_params(bounds, filters))
        if response.status_code >= 400:
            raise HeatmapApiError(f"heatmap request failed with HTTP {response.status_code}")
        body = HeatmapApiResponse.model_validate(response.json())
        if not body.success or body.data is None:
            raise HeatmapApiError(body.error or "heatmap request failed")
        return body.data


class EngineChannel:
    """In-process realtime channel bound to a HeatmapEngine. It cannot drop, so on_lost never fires."""

    def __init__(self, engine: HeatmapEngine):
        self.engine = engine
        self._on_message: MessageHandler | None = None
        self._owned: set[str] = set()

    async def connect(self, on_message: MessageHandler, on_lost: LostHandler | None = None) -> None:
        self._on_message = on_message

    async def _deliver(self, subscription: RealtimeSubscription, event: UpdateEvent) -> None:
        if self._on_message is not None:
            await self._on_message(to_wire(event).model_dump(mode="json", by_alias=True))

    async def subscribe(self, region_id: str, bounds: RegionBounds, filters: HeatmapFilters | None = None) -> str:
        if self._on_message is None:
            raise ConnectionError("channel is not connected")
        subscription_id = self.engine.subscribe(region_id, bounds, filters, self._deliver)
        self._owned.add(subscription_id)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self.engine.unsubscribe(subscription_id)
        self._owned.discard(subscription_id)

    async def close(self) -> None:
        for subscription_id in list(self._owned):
            await self.unsubscribe(subscription_id)
        self._on_message = None


class WebSocketChannel:
    """
    Realtime channel over WS /api/v1/heatmap/stream (httpx-ws).

    One runner task owns the socket for its whole life: it opens the
    connection, reads frames until the socket closes, and then reports the
    loss through on_lost unless close() was called. Control replies
    (subscription_confirmed, unsubscribed, subscription_error) arrive in
    request order, so pending requests are resolved first in, first out.

    With heartbeat_seconds set, a {"type": "ping"} goes out every interval;
    a ping still unanswered at the next tick drops the connection.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        heartbeat_seconds: float | None = 30.0,
        connect_timeout: float = 10.0,
        reply_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.heartbeat_seconds = heartbeat_seconds
        self.connect_timeout = connect_timeout
        self.reply_timeout = reply_timeout
        self._transport = transport
        self._ws: AsyncWebSocketSession | None = None
        self._runner: asyncio.Task | None = None
        self._closing = False
        self._awaiting_pong = False
        self._replies: deque[asyncio.Future] = deque()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, on_message: MessageHandler, on_lost: LostHandler | None = None) -> None:
        if self._runner is not None and not self._runner.done():
            await self._stop()
        self._closing = False
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(ready, on_message, on_lost))
        try:
            await asyncio.wait_for(ready, self.connect_timeout)
        except BaseException:
            await self._stop()
            raise

    async def close(self) -> None:
        await self._stop()

    async def _stop(self) -> None:
        self._closing = True
        runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    # ── Requests ──────────────────────────────────────────────────────────────

    async def subscribe(self, region_id: str, bounds: RegionBounds, filters: HeatmapFilters | None = None) -> str:
        frame = SubscribeRequest(region_id=region_id, bounds=bounds, filters=filters)
        reply = await self._request({"type": "subscribe", **frame.model_dump(mode="json", by_alias=True)})
        if reply.get("type") != "subscription_confirmed":
            raise RealtimeChannelError(reply.get("error") or f"subscribe to {region_id!r} rejected")
        return reply["subscriptionId"]

    async def unsubscribe(self, subscription_id: str) -> None:
        if self._ws is None:
            # the server drops every subscription of a closed socket
            logger.debug("Unsubscribe of %s skipped: stream is offline", subscription_id)
            return
        reply = await self._request({"type": "unsubscribe", "subscriptionId": subscription_id})
        if reply.get("type") != "unsubscribed":
            raise RealtimeChannelError(reply.get("error") or f"unsubscribe of {subscription_id!r} rejected")

    async def _request(self, frame: dict) -> dict:
        ws = self._ws
        if ws is None:
            raise ConnectionError("channel is not connected")
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        self._replies.append(reply)
        await ws.send_json(frame)
        # a late reply after a timeout still pops this future, keeping the queue aligned
        return await asyncio.wait_for(reply, self.reply_timeout)

    def _resolve(self, message: dict) -> None:
        while self._replies:
            reply = self._replies.popleft()
            if not reply.done():
                reply.set_result(message)
                return
        logger.warning("Unexpected %s from stream", message.get("type"))

    def _fail_pending(self, exc: Exception) -> None:
        while self._replies:
            reply = self._replies.popleft()
            if not reply.done():
                reply.set_exception(exc)

    # ── Socket lifetime ───────────────────────────────────────────────────────

    async def _run(self, ready: asyncio.Future, on_message: MessageHandler, on_lost: LostHandler | None) -> None:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport) as client:
                async with aconnect_ws(STREAM_PATH, client, keepalive_ping_interval_seconds=None) as ws:
                    self._ws = ws
                    self._awaiting_pong = False
                    if not ready.done():
                        ready.set_result(None)
                    logger.info("Realtime stream connected to %s", self.base_url)
                    await self._pump(ws, on_message)
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
                return
            logger.warning("Realtime stream failed: %s", exc)
        finally:
            self._ws = None
            self._fail_pending(ConnectionError("realtime stream closed"))

        if self._closing:
            return
        logger.warning("Realtime stream to %s dropped", self.base_url)
        if on_lost is not None:
            await on_lost()

    async def _pump(self, ws: AsyncWebSocketSession, on_message: MessageHandler) -> None:
        tasks = {asyncio.create_task(self._receive_loop(ws, on_message))}
        if self.heartbeat_seconds:
            tasks.add(asyncio.create_task(self._heartbeat(ws)))
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _receive_loop(self, ws: AsyncWebSocketSession, on_message: MessageHandler) -> None:
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring stream frame that is not valid JSON")
                    continue
                if not isinstance(message, dict):
                    logger.warning("Ignoring non-object stream frame")
                    continue
                kind = message.get("type")
                if kind == "pong":
                    self._awaiting_pong = False
                elif kind in CONTROL_REPLIES:
                    self._resolve(message)
                elif kind == "error":
                    logger.warning("Stream reported an error: %s", message.get("error"))
                else:
                    await on_message(message)
        except (WebSocketDisconnect, WebSocketNetworkError) as exc:
            logger.info("Realtime stream closed: %s", exc)

    async def _heartbeat(self, ws: AsyncWebSocketSession) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            if self._awaiting_pong:
                logger.warning("No pong within %.1fs, dropping realtime stream", self.heartbeat_seconds)
                return
            self._awaiting_pong = True
            await ws.send_json({"type": "ping"})
