"""
actions.py — The action set of the heatmap state store.

Actions are plain immutable records. Everything that changes HeatmapState
is one of these, passed through reducer.reduce(); effect handlers in
store.py only ever dispatch them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from civicpulse.models.common import Coordinate, RegionBounds
from civicpulse.models.heatmap import HeatmapAnomaly, HeatmapCluster, HeatmapDataPoint, HeatmapSnapshot
from civicpulse.models.realtime import ConnectionStatus, HeatmapFilters, UpdateEvent


# ── Data ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FetchStarted:
    bounds: RegionBounds | None = None


@dataclass(frozen=True)
class RefreshStarted:
    pass


@dataclass(frozen=True)
class FetchSucceeded:
    data:        HeatmapSnapshot
    received_at: datetime


@dataclass(frozen=True)
class FetchFailed:
    error: str


# ── Selection ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SelectPoint:
    point: HeatmapDataPoint | None


@dataclass(frozen=True)
class SelectCluster:
    cluster: HeatmapCluster | None


@dataclass(frozen=True)
class SelectAnomaly:
    anomaly: HeatmapAnomaly | None


@dataclass(frozen=True)
class ClearSelection:
    pass


# ── Realtime ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Subscribed:
    subscription_id: str
    region_id:       str
    bounds:          RegionBounds
    filters:         HeatmapFilters | None = None


@dataclass(frozen=True)
class Unsubscribed:
    subscription_id: str


@dataclass(frozen=True)
class RealtimeUpdateReceived:
    event: UpdateEvent


@dataclass(frozen=True)
class ConnectionStatusChanged:
    status:             ConnectionStatus
    reconnect_attempts: int | None = None


# ── Viewport ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SetCenter:
    center: Coordinate


@dataclass(frozen=True)
class SetZoom:
    zoom: float


@dataclass(frozen=True)
class SetBounds:
    bounds: RegionBounds


@dataclass(frozen=True)
class FitBounds:
    bounds: RegionBounds


# ── Config ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UpdateConfig:
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateVisualization:
    changes: dict[str, Any] = field(default_factory=dict)


# ── Notifications / misc ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AddNotification:
    id:         str
    level:      str
    message:    str
    created_at: datetime


@dataclass(frozen=True)
class DismissNotification:
    id: str


@dataclass(frozen=True)
class ClearError:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class PerformanceRecorded:
    render_time_ms: float
    data_size:      int | None = None


Action = Union[
    FetchStarted, RefreshStarted, FetchSucceeded, FetchFailed,
    SelectPoint, SelectCluster, SelectAnomaly, ClearSelection,
    Subscribed, Unsubscribed, RealtimeUpdateReceived, ConnectionStatusChanged,
    SetCenter, SetZoom, SetBounds, FitBounds,
    UpdateConfig, UpdateVisualization,
    AddNotification, DismissNotification, ClearError, Reset, PerformanceRecorded,
]
