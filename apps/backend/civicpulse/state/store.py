"""
store.py — HeatmapStore: state holder plus effect handlers.

Effects (snapshot fetches, realtime subscribe / unsubscribe, reconnects)
run here and report back only by dispatching actions; the state itself is
replaced wholesale by reducer.reduce().

Reconnects
──────────
When the realtime channel drops, attempt n (0-based) is queued on the core
TaskScheduler after min(2000 · 2ⁿ, 30000) ms, up to max_reconnect_attempts.
A successful reconnect resubscribes every active region; each gets a new
subscription id and the old one is marked inactive, so late events for the
old id are ignored.

A channel that notices its socket dropped calls back into the store, which
starts the same schedule. Regions subscribed while a reconnect is pending
are queued and subscribed once the channel is back.

Usage
─────
    store = HeatmapStore(
        HttpHeatmapApi("http://localhost:8000"),
        WebSocketChannel("http://localhost:8000"),
    )
    await store.fetch_data(bounds)
    await store.connect()
    sub_id = await store.subscribe_to_region("centre", bounds)
    csv_text = store.export_data("csv")
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from pydantic import TypeAdapter, ValidationError

from civicpulse.core.scheduler import TaskScheduler
from civicpulse.models.common import RegionBounds
from civicpulse.models.realtime import EVENT_TYPES, HeatmapFilters, UpdateEvent
from civicpulse.state import actions as a
from civicpulse.state.client import HeatmapApi, RealtimeChannel
from civicpulse.state.export import export_snapshot
from civicpulse.state.reducer import HeatmapState, reduce

logger = logging.getLogger(__name__)

RECONNECT_TASK = "realtime-reconnect"
RECONNECT_BASE_MS = 2_000
RECONNECT_CAP_MS = 30_000

_event_adapter: TypeAdapter[UpdateEvent] = TypeAdapter(UpdateEvent)

Listener = Callable[[HeatmapState, a.Action], None]


def reconnect_delay_ms(attempt: int, base_ms: int = RECONNECT_BASE_MS, cap_ms: int = RECONNECT_CAP_MS) -> int:
    return min(base_ms * 2 ** attempt, cap_ms)


def decode_message(message: dict | str | bytes) -> UpdateEvent | None:
    """Wire message → UpdateEvent. Control replies and unknown types yield None."""
    if isinstance(message, (str, bytes)):
        message = json.loads(message)
    if not isinstance(message, dict):
        raise ValueError("realtime message must be a JSON object")
    event_type = EVENT_TYPES.get(message.get("type", ""))
    if event_type is None:
        return None
    return _event_adapter.validate_python({
        "type": event_type,
        "timestamp": message.get("timestamp"),
        "subscriptionId": message.get("subscriptionId"),
        "regionId": message.get("regionId"),
        "priority": message.get("priority", "normal"),
        "data": message.get("data", {}),
    })


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class HeatmapStore:
    def __init__(
        self,
        api: HeatmapApi,
        channel: RealtimeChannel | None = None,
        *,
        scheduler: TaskScheduler | None = None,
        clock: Callable[[], datetime] = _utc_now,
        max_reconnect_attempts: int = 5,
        initial_state: HeatmapState | None = None,
    ):
        self.api = api
        self.channel = channel
        self.scheduler = scheduler or TaskScheduler()
        self.max_reconnect_attempts = max_reconnect_attempts
        self._clock = clock
        self._state = initial_state or HeatmapState()
        self._listeners: list[Listener] = []
        self._offline: list[tuple[str, RegionBounds, HeatmapFilters | None]] = []

    @property
    def state(self) -> HeatmapState:
        return self._state

    def dispatch(self, action: a.Action) -> HeatmapState:
        self._state = reduce(self._state, action)
        for listener in list(self._listeners):
            try:
                listener(self._state, action)
            except Exception as exc:
                logger.warning("State listener failed on %s: %s", type(action).__name__, exc)
        return self._state

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def notify(self, level: str, message: str) -> None:
        self.dispatch(a.AddNotification(id=uuid.uuid4().hex, level=level, message=message, created_at=self._clock()))

    # ── Snapshot ──────────────────────────────────────────────────────────────

    async def fetch_data(self, bounds: RegionBounds | None = None, filters: HeatmapFilters | None = None) -> None:
        self.dispatch(a.FetchStarted(bounds=bounds))
        await self._load(bounds or self._state.viewport.bounds, filters)

    async def refresh_data(self) -> None:
        self.dispatch(a.RefreshStarted())
        await self._load(self._state.viewport.bounds, None)

    async def _load(self, bounds: RegionBounds | None, filters: HeatmapFilters | None) -> None:
        try:
            snapshot = await self.api.fetch_snapshot(bounds, filters)
        except Exception as exc:
            logger.warning("Heatmap fetch failed: %s", exc)
            self.dispatch(a.FetchFailed(error=str(exc) or type(exc).__name__))
            return
        self.dispatch(a.FetchSucceeded(data=snapshot, received_at=self._clock()))

    # ── Realtime ──────────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        if self.channel is None:
            return False
        self.dispatch(a.ConnectionStatusChanged(status="connecting"))
        try:
            await self.channel.connect(self._on_message, self._on_channel_lost)
        except Exception as exc:
            logger.warning("Realtime connect failed: %s", exc)
            await self.on_connection_lost()
            return False
        self.dispatch(a.ConnectionStatusChanged(status="connected"))
        return True

    async def disconnect(self) -> None:
        self.scheduler.cancel_named(RECONNECT_TASK)
        self._offline.clear()
        if self.channel is None:
            return
        self.dispatch(a.ConnectionStatusChanged(status="disconnecting"))
        try:
            await self.channel.close()
        finally:
            self.dispatch(a.ConnectionStatusChanged(status="disconnected"))

    async def _on_channel_lost(self) -> None:
        if self._state.realtime.status in ("disconnecting", "disconnected"):
            return
        logger.warning("Realtime channel dropped while %s", self._state.realtime.status)
        await self.on_connection_lost()

    async def on_connection_lost(self) -> None:
        attempt = self._state.realtime.reconnect_attempts
        if attempt >= self.max_reconnect_attempts:
            logger.warning("Realtime connection lost, giving up after %d attempts", attempt)
            self.dispatch(a.ConnectionStatusChanged(status="error"))
            self.notify("error", "Live updates unavailable")
            return
        delay = reconnect_delay_ms(attempt)
        self.dispatch(a.ConnectionStatusChanged(status="reconnecting", reconnect_attempts=attempt + 1))
        if not self.scheduler.has_pending(RECONNECT_TASK):
            self.scheduler.call_later(delay / 1000, self._reconnect, name=RECONNECT_TASK)
        logger.info("Realtime reconnect %d scheduled in %d ms", attempt + 1, delay)

    async def _reconnect(self) -> None:
        previous = self._state.realtime.active()
        if not await self.connect():
            return
        for subscription in previous:
            self.dispatch(a.Unsubscribed(subscription_id=subscription.id))
            await self.subscribe_to_region(subscription.region_id, subscription.bounds, subscription.filters)
        queued, self._offline = self._offline, []
        for region_id, bounds, filters in queued:
            await self.subscribe_to_region(region_id, bounds, filters)

    async def subscribe_to_region(
        self,
        region_id: str,
        bounds: RegionBounds,
        filters: HeatmapFilters | None = None,
    ) -> str | None:
        if self.channel is None:
            return None
        if self._state.realtime.status == "reconnecting":
            self._offline.append((region_id, bounds, filters))
            logger.info("Subscribe to region %r queued until the channel reconnects", region_id)
            return None
        try:
            subscription_id = await self.channel.subscribe(region_id, bounds, filters)
        except Exception as exc:
            logger.warning("Subscribe to region %r failed: %s", region_id, exc)
            self.notify("error", f"Could not subscribe to {region_id}")
            return None
        self.dispatch(a.Subscribed(subscription_id=subscription_id, region_id=region_id, bounds=bounds, filters=filters))
        return subscription_id

    async def unsubscribe_from_region(self, region_id: str) -> list[str]:
        """Deactivate every active subscription for the region, then tell the server."""
        targets = [s.id for s in self._state.realtime.active() if s.region_id == region_id]
        self._offline = [q for q in self._offline if q[0] != region_id]
        for subscription_id in targets:
            self.dispatch(a.Unsubscribed(subscription_id=subscription_id))
        if self.channel is not None:
            for subscription_id in targets:
                try:
                    await self.channel.unsubscribe(subscription_id)
                except Exception as exc:
                    logger.warning("Server-side unsubscribe of %s failed: %s", subscription_id, exc)
        return targets

    async def _on_message(self, message: dict) -> None:
        self.handle_message(message)

    def handle_message(self, message: dict | str | bytes) -> bool:
        """Decode one inbound wire message and dispatch it. Returns True if it became an action."""
        try:
            event = decode_message(message)
        except (ValueError, ValidationError) as exc:
            logger.warning("Ignoring malformed realtime message: %s", exc)
            return False
        if event is None:
            return False
        self.dispatch(a.RealtimeUpdateReceived(event=event))
        return True

    # ── Export ────────────────────────────────────────────────────────────────

    def export_data(self, fmt: str = "json") -> str:
        if self._state.data is None:
            raise ValueError("no heatmap snapshot loaded")
        return export_snapshot(self._state.data, fmt)
