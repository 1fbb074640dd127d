"""
reducer.py — HeatmapState and the pure reduce(state, action) transition.

reduce() never performs I/O, never reads a clock and never mutates its
input: each handler returns a new state built with model_copy(update=...).
Unknown actions return the state unchanged.

Realtime reconciliation rules
─────────────────────────────
A RealtimeUpdateReceived is ignored (state returned as-is) when:
  - it names a subscription that is not active in state
  - no snapshot has been loaded yet
  - it is older than the loaded snapshot
Point upserts are last-writer-wins on the point timestamp.
"""

import math
from datetime import datetime
from typing import Callable, Literal

from pydantic import ConfigDict, Field

from civicpulse.models.common import CamelModel, Coordinate, RegionBounds
from civicpulse.models.heatmap import (
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapConfig,
    HeatmapDataPoint,
    HeatmapSnapshot,
    VisualizationConfig,
)
from civicpulse.models.realtime import (
    AnomalyAlertEvent,
    ClusterUpdateEvent,
    ConnectionStatus,
    DataUpdateEvent,
    HeatmapFilters,
    PredictionUpdateEvent,
    SystemStatusEvent,
)
from civicpulse.state import actions as a

MAX_NOTIFICATIONS = 50
ALERT_URGENCIES = {"immediate", "urgent"}


# ── State ─────────────────────────────────────────────────────────────────────

class _FrozenModel(CamelModel):
    model_config = ConfigDict(frozen=True)


class Viewport(_FrozenModel):
    bounds: RegionBounds | None = None
    center: Coordinate = VisualizationConfig().center
    zoom:   float = VisualizationConfig().zoom


class SubscriptionState(_FrozenModel):
    id:        str
    region_id: str
    bounds:    RegionBounds
    filters:   HeatmapFilters | None = None
    is_active: bool = True


class RealtimeState(_FrozenModel):
    status:             ConnectionStatus = "disconnected"
    subscriptions:      dict[str, SubscriptionState] = Field(default_factory=dict)
    last_update:        datetime | None = None
    update_count:       int = 0
    reconnect_attempts: int = 0

    @property
    def connected(self) -> bool:
        return self.status == "connected"

    def active(self) -> list[SubscriptionState]:
        return [s for s in self.subscriptions.values() if s.is_active]


class Notification(_FrozenModel):
    id:         str
    level:      Literal["info", "success", "warning", "error"] = "info"
    message:    str
    created_at: datetime


class PerformanceMetrics(_FrozenModel):
    render_time_ms: float = 0.0
    query_time_ms:  float = 0.0
    data_size:      int = 0


class HeatmapState(_FrozenModel):
    data:             HeatmapSnapshot | None = None
    config:           HeatmapConfig = Field(default_factory=HeatmapConfig)
    visualization:    VisualizationConfig = Field(default_factory=VisualizationConfig)
    loading:          bool = False
    error:            str | None = None
    last_updated:     datetime | None = None
    selected_point:   HeatmapDataPoint | None = None
    selected_cluster: HeatmapCluster | None = None
    selected_anomaly: HeatmapAnomaly | None = None
    viewport:         Viewport = Field(default_factory=Viewport)
    realtime:         RealtimeState = Field(default_factory=RealtimeState)
    notifications:    list[Notification] = Field(default_factory=list)
    performance:      PerformanceMetrics = Field(default_factory=PerformanceMetrics)


# ── Dispatch table ────────────────────────────────────────────────────────────

_HANDLERS: dict[type, Callable[[HeatmapState, object], HeatmapState]] = {}


def _handles(action_type: type):
    def register(fn):
        _HANDLERS[action_type] = fn
        return fn
    return register


def reduce(state: HeatmapState, action: a.Action) -> HeatmapState:
    handler = _HANDLERS.get(type(action))
    if handler is None:
        return state
    return handler(state, action)


# ── Data ──────────────────────────────────────────────────────────────────────

@_handles(a.FetchStarted)
def _fetch_started(state: HeatmapState, action: a.FetchStarted) -> HeatmapState:
    update = {"loading": True, "error": None}
    if action.bounds is not None:
        update["viewport"] = state.viewport.model_copy(update={"bounds": action.bounds})
    return state.model_copy(update=update)


@_handles(a.RefreshStarted)
def _refresh_started(state: HeatmapState, action: a.RefreshStarted) -> HeatmapState:
    return state.model_copy(update={"loading": True, "error": None})


@_handles(a.FetchSucceeded)
def _fetch_succeeded(state: HeatmapState, action: a.FetchSucceeded) -> HeatmapState:
    data = action.data
    point_ids = {p.id for p in data.data_points}
    cluster_ids = {c.id for c in data.clusters}
    anomaly_ids = {an.id for an in data.anomalies}
    return state.model_copy(update={
        "data": data,
        "loading": False,
        "error": None,
        "last_updated": action.received_at,
        "selected_point": state.selected_point if state.selected_point and state.selected_point.id in point_ids else None,
        "selected_cluster": state.selected_cluster if state.selected_cluster and state.selected_cluster.id in cluster_ids else None,
        "selected_anomaly": state.selected_anomaly if state.selected_anomaly and state.selected_anomaly.id in anomaly_ids else None,
        "performance": state.performance.model_copy(update={
            "query_time_ms": data.metadata.performance.query_time_ms,
            "data_size": len(data.data_points),
        }),
    })


@_handles(a.FetchFailed)
def _fetch_failed(state: HeatmapState, action: a.FetchFailed) -> HeatmapState:
    return state.model_copy(update={"loading": False, "error": action.error})


# ── Selection ─────────────────────────────────────────────────────────────────

@_handles(a.SelectPoint)
def _select_point(state: HeatmapState, action: a.SelectPoint) -> HeatmapState:
    if action.point is None:
        return state.model_copy(update={"selected_point": None})
    return state.model_copy(update={"selected_point": action.point, "selected_cluster": None, "selected_anomaly": None})


@_handles(a.SelectCluster)
def _select_cluster(state: HeatmapState, action: a.SelectCluster) -> HeatmapState:
    if action.cluster is None:
        return state.model_copy(update={"selected_cluster": None})
    return state.model_copy(update={"selected_cluster": action.cluster, "selected_point": None, "selected_anomaly": None})


@_handles(a.SelectAnomaly)
def _select_anomaly(state: HeatmapState, action: a.SelectAnomaly) -> HeatmapState:
    if action.anomaly is None:
        return state.model_copy(update={"selected_anomaly": None})
    return state.model_copy(update={"selected_anomaly": action.anomaly, "selected_point": None, "selected_cluster": None})


@_handles(a.ClearSelection)
def _clear_selection(state: HeatmapState, action: a.ClearSelection) -> HeatmapState:
    return state.model_copy(update={"selected_point": None, "selected_cluster": None, "selected_anomaly": None})


# ── Realtime ──────────────────────────────────────────────────────────────────

@_handles(a.Subscribed)
def _subscribed(state: HeatmapState, action: a.Subscribed) -> HeatmapState:
    subscription = SubscriptionState(
        id=action.subscription_id,
        region_id=action.region_id,
        bounds=action.bounds,
        filters=action.filters,
    )
    subscriptions = {**state.realtime.subscriptions, subscription.id: subscription}
    return state.model_copy(update={"realtime": state.realtime.model_copy(update={"subscriptions": subscriptions})})


@_handles(a.Unsubscribed)
def _unsubscribed(state: HeatmapState, action: a.Unsubscribed) -> HeatmapState:
    current = state.realtime.subscriptions.get(action.subscription_id)
    if current is None or not current.is_active:
        return state
    subscriptions = {
        **state.realtime.subscriptions,
        current.id: current.model_copy(update={"is_active": False}),
    }
    return state.model_copy(update={"realtime": state.realtime.model_copy(update={"subscriptions": subscriptions})})


@_handles(a.ConnectionStatusChanged)
def _connection_status(state: HeatmapState, action: a.ConnectionStatusChanged) -> HeatmapState:
    update = {"status": action.status}
    if action.reconnect_attempts is not None:
        update["reconnect_attempts"] = action.reconnect_attempts
    elif action.status == "connected":
        update["reconnect_attempts"] = 0
    return state.model_copy(update={"realtime": state.realtime.model_copy(update=update)})


@_handles(a.RealtimeUpdateReceived)
def _realtime_update(state: HeatmapState, action: a.RealtimeUpdateReceived) -> HeatmapState:
    event = action.event
    subscription = None
    if event.subscription_id is not None:
        subscription = state.realtime.subscriptions.get(event.subscription_id)
        if subscription is None or not subscription.is_active:
            return state
    if state.data is None or event.timestamp < state.data.metadata.timestamp:
        return state

    update: dict = {}
    data = state.data
    if isinstance(event, DataUpdateEvent):
        data, update = _apply_points(state, data, event)
    elif isinstance(event, ClusterUpdateEvent):
        data, update = _apply_clusters(state, data, event)
    elif isinstance(event, AnomalyAlertEvent):
        anomalies = {an.id: an for an in data.anomalies}
        anomalies[event.data.anomaly.id] = event.data.anomaly
        data = data.model_copy(update={"anomalies": list(anomalies.values())})
        if event.data.urgency in ALERT_URGENCIES:
            update["notifications"] = _push_notification(state.notifications, Notification(
                id=f"n_{event.data.anomaly.id}",
                level="warning",
                message=(
                    f"{event.data.anomaly.severity.capitalize()} {event.data.anomaly.anomaly_type} "
                    f"detected ({event.data.urgency})"
                ),
                created_at=event.timestamp,
            ))
    elif isinstance(event, PredictionUpdateEvent):
        keep = [
            p for p in data.predictions
            if subscription is not None and not subscription.bounds.contains(p.location)
        ]
        data = data.model_copy(update={"predictions": keep + list(event.data.predictions)})
    elif isinstance(event, SystemStatusEvent):
        update["notifications"] = _push_notification(state.notifications, Notification(
            id=f"status_{int(event.timestamp.timestamp() * 1000)}",
            level="info" if event.data.status == "ok" else "warning",
            message=event.data.message or event.data.status,
            created_at=event.timestamp,
        ))

    data = data.model_copy(update={
        "metadata": data.metadata.model_copy(update={"total_count": len(data.data_points)}),
    })
    realtime = state.realtime.model_copy(update={
        "last_update": event.timestamp,
        "update_count": state.realtime.update_count + 1,
    })
    return state.model_copy(update={**update, "data": data, "realtime": realtime})


def _apply_points(state: HeatmapState, data: HeatmapSnapshot, event: DataUpdateEvent):
    points = {p.id: p for p in data.data_points}
    for point in event.data.updated_points:
        existing = points.get(point.id)
        if existing is None or point.timestamp >= existing.timestamp:
            points[point.id] = point
    removed = set(event.data.removed_point_ids)
    for point_id in removed:
        points.pop(point_id, None)

    update = {}
    if state.selected_point is not None and state.selected_point.id in removed:
        update["selected_point"] = None
    return data.model_copy(update={"data_points": list(points.values())}), update


def _apply_clusters(state: HeatmapState, data: HeatmapSnapshot, event: ClusterUpdateEvent):
    clusters = {c.id: c for c in data.clusters}
    for cluster in (*event.data.added, *event.data.updated):
        clusters[cluster.id] = cluster
    removed = set(event.data.removed_ids)
    for cluster_id in removed:
        clusters.pop(cluster_id, None)

    update = {}
    if state.selected_cluster is not None and state.selected_cluster.id in removed:
        update["selected_cluster"] = None
    return data.model_copy(update={"clusters": list(clusters.values())}), update


def _push_notification(notifications: list[Notification], notification: Notification) -> list[Notification]:
    kept = [n for n in notifications if n.id != notification.id]
    return (kept + [notification])[-MAX_NOTIFICATIONS:]


# ── Viewport ──────────────────────────────────────────────────────────────────

def zoom_for_bounds(bounds: RegionBounds) -> float:
    span = max(bounds.northeast[0] - bounds.southwest[0], (bounds.northeast[1] - bounds.southwest[1]) * 2, 1e-6)
    return round(min(max(math.log2(360.0 / span), 0.0), 22.0), 2)


@_handles(a.SetCenter)
def _set_center(state: HeatmapState, action: a.SetCenter) -> HeatmapState:
    return state.model_copy(update={"viewport": state.viewport.model_copy(update={"center": action.center})})


@_handles(a.SetZoom)
def _set_zoom(state: HeatmapState, action: a.SetZoom) -> HeatmapState:
    zoom = min(max(action.zoom, 0.0), 22.0)
    return state.model_copy(update={"viewport": state.viewport.model_copy(update={"zoom": zoom})})


@_handles(a.SetBounds)
def _set_bounds(state: HeatmapState, action: a.SetBounds) -> HeatmapState:
    viewport = state.viewport.model_copy(update={"bounds": action.bounds, "center": action.bounds.center})
    return state.model_copy(update={"viewport": viewport})


@_handles(a.FitBounds)
def _fit_bounds(state: HeatmapState, action: a.FitBounds) -> HeatmapState:
    viewport = state.viewport.model_copy(update={
        "bounds": action.bounds,
        "center": action.bounds.center,
        "zoom": zoom_for_bounds(action.bounds),
    })
    return state.model_copy(update={"viewport": viewport})


# ── Config ────────────────────────────────────────────────────────────────────

def _merge(model, changes: dict):
    """Validate `changes` on top of `model`; keys the model does not know are dropped."""
    merged = model.model_dump()
    aliases = {f.alias: name for name, f in type(model).model_fields.items() if f.alias}
    for key, value in changes.items():
        name = aliases.get(key, key)
        if name in type(model).model_fields:
            merged[name] = value
    return type(model).model_validate(merged)


@_handles(a.UpdateConfig)
def _update_config(state: HeatmapState, action: a.UpdateConfig) -> HeatmapState:
    return state.model_copy(update={"config": _merge(state.config, action.changes)})


@_handles(a.UpdateVisualization)
def _update_visualization(state: HeatmapState, action: a.UpdateVisualization) -> HeatmapState:
    return state.model_copy(update={"visualization": _merge(state.visualization, action.changes)})


# ── Notifications / misc ──────────────────────────────────────────────────────

@_handles(a.AddNotification)
def _add_notification(state: HeatmapState, action: a.AddNotification) -> HeatmapState:
    notification = Notification(id=action.id, level=action.level, message=action.message, created_at=action.created_at)
    return state.model_copy(update={"notifications": _push_notification(state.notifications, notification)})


@_handles(a.DismissNotification)
def _dismiss_notification(state: HeatmapState, action: a.DismissNotification) -> HeatmapState:
    return state.model_copy(update={"notifications": [n for n in state.notifications if n.id != action.id]})


@_handles(a.ClearError)
def _clear_error(state: HeatmapState, action: a.ClearError) -> HeatmapState:
    return state.model_copy(update={"error": None})


@_handles(a.Reset)
def _reset(state: HeatmapState, action: a.Reset) -> HeatmapState:
    return HeatmapState()


@_handles(a.PerformanceRecorded)
def _performance(state: HeatmapState, action: a.PerformanceRecorded) -> HeatmapState:
    update = {"render_time_ms": action.render_time_ms}
    if action.data_size is not None:
        update["data_size"] = action.data_size
    return state.model_copy(update={"performance": state.performance.model_copy(update=update)})
