"""
subscriptions.py — Registry of realtime viewport subscriptions and event routing.

A subscription is a client's interest in one bounded region, optionally
narrowed by filters. The engine hands every UpdateEvent to on_update(),
which decides who is notified:

  - only active subscriptions are considered
  - an event naming a subscription id goes to that subscription only
  - otherwise an event with an affected area goes to every subscription
    whose bounds intersect it; without an area the region id must match
  - data_update points are narrowed to the subscriber's bounds and filters,
    and an update left empty for that subscriber is not sent

unsubscribe() only flips is_active. An event still in flight for that id
is dropped silently. Drops are keyed by subscription id: a region that was
resubscribed under a new id does not receive events addressed to the old
one. Inactive entries are removed by prune() once past the retention window.
"""

import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from civicpulse.models.common import RegionBounds
from civicpulse.models.realtime import (
    WIRE_TYPES,
    DataUpdate,
    DataUpdateEvent,
    HeatmapFilters,
    RealtimeSubscription,
    UpdateEvent,
    WireMessage,
)

logger = logging.getLogger(__name__)

SubscriptionCallback = Callable[[RealtimeSubscription, UpdateEvent], Awaitable[None]]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_subscription_id(now_ms: int) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"sub_{now_ms}_{suffix}"


def to_wire(event: UpdateEvent) -> WireMessage:
    """UpdateEvent → outbound wire message (data_update is sent as heatmap_update)."""
    return WireMessage(
        type=WIRE_TYPES[event.type],
        timestamp=event.timestamp,
        region_id=event.region_id,
        subscription_id=event.subscription_id,
        priority=event.priority,
        data=event.data.model_dump(mode="json", by_alias=True),
    )


class SubscriptionManager:
    def __init__(
        self,
        *,
        retention_seconds: float = 600.0,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.retention = timedelta(seconds=retention_seconds)
        self._clock_ms = clock_ms
        self._subscriptions: dict[str, RealtimeSubscription] = {}
        self._callbacks: dict[str, SubscriptionCallback] = {}
        self._deactivated_at: dict[str, datetime] = {}
        self.dropped_events = 0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock_ms() / 1000, tz=timezone.utc)

    # ── Registry ──────────────────────────────────────────────────────────────

    def subscribe(
        self,
        region_id: str,
        bounds: RegionBounds,
        filters: HeatmapFilters | None = None,
        callback: SubscriptionCallback | None = None,
    ) -> str:
        subscription_id = new_subscription_id(self._clock_ms())
        while subscription_id in self._subscriptions:
            subscription_id = new_subscription_id(self._clock_ms())
        self._subscriptions[subscription_id] = RealtimeSubscription(
            id=subscription_id,
            region_id=region_id,
            bounds=bounds,
            filters=filters,
            created_at=self._now(),
        )
        if callback is not None:
            self._callbacks[subscription_id] = callback
        logger.info("Subscribed %s to region %r", subscription_id, region_id)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Deactivate; returns False for unknown or already inactive ids."""
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None or not subscription.is_active:
            return False
        self._subscriptions[subscription_id] = subscription.model_copy(update={"is_active": False})
        self._callbacks.pop(subscription_id, None)
        self._deactivated_at[subscription_id] = self._now()
        logger.info("Unsubscribed %s (region %r)", subscription_id, subscription.region_id)
        return True

    def get(self, subscription_id: str) -> RealtimeSubscription | None:
        return self._subscriptions.get(subscription_id)

    def active(self) -> list[RealtimeSubscription]:
        return [s for s in self._subscriptions.values() if s.is_active]

    def prune(self) -> int:
        """Forget inactive subscriptions deactivated longer ago than the retention window."""
        cutoff = self._now() - self.retention
        expired = [sid for sid, at in self._deactivated_at.items() if at <= cutoff]
        for subscription_id in expired:
            self._subscriptions.pop(subscription_id, None)
            self._deactivated_at.pop(subscription_id, None)
        if expired:
            logger.debug("Pruned %d inactive subscription(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._subscriptions)

    # ── Routing ───────────────────────────────────────────────────────────────

    def route(self, event: UpdateEvent) -> list[tuple[RealtimeSubscription, UpdateEvent]]:
        """Resolve recipients and the per-subscriber event each one receives."""
        if event.subscription_id is not None:
            target = self._subscriptions.get(event.subscription_id)
            if target is None or not target.is_active:
                self.dropped_events += 1
                logger.debug("Dropped %s for inactive subscription %s", event.type, event.subscription_id)
                return []
            candidates = [target]
        elif event.affected_area is not None:
            candidates = [s for s in self.active() if s.bounds.intersects(event.affected_area)]
        elif event.region_id is not None:
            candidates = [s for s in self.active() if s.region_id == event.region_id]
        else:
            candidates = self.active()

        deliveries = []
        for subscription in candidates:
            tailored = self._tailor(subscription, event)
            if tailored is not None:
                deliveries.append((subscription, tailored))
        return deliveries

    def _tailor(self, subscription: RealtimeSubscription, event: UpdateEvent) -> UpdateEvent | None:
        update = {"subscription_id": subscription.id, "region_id": subscription.region_id}
        if isinstance(event, DataUpdateEvent):
            filters = subscription.filters
            points = [
                p for p in event.data.updated_points
                if subscription.bounds.contains(p.location) and (filters is None or filters.matches(p))
            ]
            if not points and not event.data.removed_point_ids:
                return None
            update["data"] = DataUpdate(updated_points=points, removed_point_ids=event.data.removed_point_ids)
        return event.model_copy(update=update)

    def _live(self, subscription_id: str) -> RealtimeSubscription | None:
        current = self._subscriptions.get(subscription_id)
        return current if current is not None and current.is_active else None

    async def on_update(self, event: UpdateEvent) -> list[str]:
        """Route and deliver; returns the ids that were notified.

        Callbacks may unsubscribe anyone, so each target is re-checked
        before its callback runs and again before it is marked delivered.
        """
        delivered = []
        for subscription, tailored in self.route(event):
            if self._live(subscription.id) is None:
                continue
            callback = self._callbacks.get(subscription.id)
            if callback is not None:
                try:
                    await callback(subscription, tailored)
                except Exception as exc:
                    logger.warning("Delivery to %s failed: %s", subscription.id, exc)
                    continue
            current = self._live(subscription.id)
            if current is None:
                continue
            self._subscriptions[subscription.id] = current.model_copy(update={"last_update": tailored.timestamp})
            delivered.append(subscription.id)
        return delivered
