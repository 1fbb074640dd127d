"""
realtime.py — Subscriptions, update events and the WebSocket wire format.

Internally the engine publishes typed UpdateEvents (a discriminated union
on `type`). On the wire they become WireMessages, where `data_update`
is renamed to `heatmap_update`:

  {
    "type": "heatmap_update" | "cluster_update" | "anomaly_alert"
          | "prediction_update" | "system_status",
    "timestamp": "2026-10-19T12:00:00Z",
    "regionId": "london-centre",
    "subscriptionId": "sub_1760875200000_k3j9x2",
    "priority": "normal",
    "data": {...}
  }

Client → server messages on the stream:
  {"type": "subscribe", "regionId": "...", "bounds": {...}, "filters": {...}}
  {"type": "unsubscribe", "subscriptionId": "..."}
  {"type": "ping"}
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field

from civicpulse.models.common import CamelModel, RegionBounds
from civicpulse.models.heatmap import (
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    IntensityLevel,
)
from civicpulse.models.prediction import HotspotPrediction

Priority = Literal["low", "normal", "high", "critical"]
ConnectionStatus = Literal[
    "disconnected", "connecting", "connected", "disconnecting", "reconnecting", "error"
]
ChangeType = Literal["risk_increase", "risk_decrease", "size_change", "new_formation", "dissolution"]
Urgency = Literal["immediate", "urgent", "standard", "informational"]


class TimeRange(CamelModel):
    start: datetime
    end:   datetime


class HeatmapFilters(CamelModel):
    categories:       list[str] | None = None
    intensity_levels: list[IntensityLevel] | None = None
    min_value:        float | None = None
    max_value:        float | None = None
    time_range:       TimeRange | None = None

    def matches(self, point: HeatmapDataPoint) -> bool:
        if self.categories is not None and point.category not in self.categories:
            return False
        if self.intensity_levels is not None and point.intensity_level not in self.intensity_levels:
            return False
        if self.min_value is not None and point.value < self.min_value:
            return False
        if self.max_value is not None and point.value > self.max_value:
            return False
        if self.time_range is not None and not (
            self.time_range.start <= point.timestamp <= self.time_range.end
        ):
            return False
        return True


class RealtimeSubscription(CamelModel):
    id:          str
    region_id:   str
    bounds:      RegionBounds
    filters:     HeatmapFilters | None = None
    created_at:  datetime
    last_update: datetime | None = None
    is_active:   bool = True


# ── Update payloads ───────────────────────────────────────────────────────────

class DataUpdate(CamelModel):
    updated_points:    list[HeatmapDataPoint] = Field(default_factory=list)
    removed_point_ids: list[str] = Field(default_factory=list)


class ClusterChange(CamelModel):
    cluster_id:  str
    change_type: ChangeType
    magnitude:   float = 0.0
    description: str = ""


class ClusterUpdate(CamelModel):
    added:       list[HeatmapCluster] = Field(default_factory=list)
    updated:     list[HeatmapCluster] = Field(default_factory=list)
    removed_ids: list[str] = Field(default_factory=list)
    changes:     list[ClusterChange] = Field(default_factory=list)


class AnomalyAlert(CamelModel):
    anomaly: HeatmapAnomaly
    urgency: Urgency


class PredictionUpdate(CamelModel):
    """Replacement prediction set for one region."""

    predictions: list[HotspotPrediction] = Field(default_factory=list)


class SystemStatus(CamelModel):
    status:  str
    message: str = ""


# ── Update events ─────────────────────────────────────────────────────────────

class _EventBase(CamelModel):
    subscription_id: str | None = None
    region_id:       str | None = None
    timestamp:       datetime
    affected_area:   RegionBounds | None = None
    priority:        Priority = "normal"


class DataUpdateEvent(_EventBase):
    type: Literal["data_update"] = "data_update"
    data: DataUpdate


class ClusterUpdateEvent(_EventBase):
    type: Literal["cluster_update"] = "cluster_update"
    data: ClusterUpdate


class AnomalyAlertEvent(_EventBase):
    type: Literal["anomaly_alert"] = "anomaly_alert"
    data: AnomalyAlert


class PredictionUpdateEvent(_EventBase):
    type: Literal["prediction_update"] = "prediction_update"
    data: PredictionUpdate


class SystemStatusEvent(_EventBase):
    type: Literal["system_status"] = "system_status"
    data: SystemStatus


UpdateEvent = Annotated[
    Union[DataUpdateEvent, ClusterUpdateEvent, AnomalyAlertEvent, PredictionUpdateEvent, SystemStatusEvent],
    Field(discriminator="type"),
]


# ── Wire format ───────────────────────────────────────────────────────────────

WIRE_TYPES: dict[str, str] = {
    "data_update":       "heatmap_update",
    "cluster_update":    "cluster_update",
    "anomaly_alert":     "anomaly_alert",
    "prediction_update": "prediction_update",
    "system_status":     "system_status",
}
EVENT_TYPES: dict[str, str] = {wire: event for event, wire in WIRE_TYPES.items()}


class WireMessage(CamelModel):
    type:            Literal["heatmap_update", "cluster_update", "anomaly_alert", "prediction_update", "system_status"]
    timestamp:       datetime
    region_id:       str | None = None
    subscription_id: str | None = None
    priority:        Priority = "normal"
    data:            dict[str, Any] = Field(default_factory=dict)


class SubscribeRequest(CamelModel):
    region_id: str = Field(min_length=1, max_length=128)
    bounds:    RegionBounds
    filters:   HeatmapFilters | None = None
