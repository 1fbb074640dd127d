"""
heatmap.py — Pydantic models for the heatmap snapshot and its aggregates.

Data points, clusters and anomalies are derived views: the engine rebuilds
them from the current point set, and clients either replace them wholesale
(snapshot fetch) or patch them from realtime update events.

Snapshot response (GET /api/v1/heatmap):
  {
    "success": true,
    "data": {
      "dataPoints":  [...],
      "clusters":    [...],
      "predictions": [...],
      "anomalies":   [...],
      "metadata": {
        "totalCount": 412,
        "bounds": {"southwest": [...], "northeast": [...]},
        "resolution": 8,
        "timestamp": "2026-10-19T12:00:00Z",
        "cacheInfo":   {"cached": false, "predictionEntries": 37},
        "performance": {"queryTimeMs": 3.1, "pointCount": 412}
      }
    }
  }
"""

from datetime import datetime
from typing import Literal

from pydantic import Field

from civicpulse.models.common import CamelModel, Coordinate, RegionBounds
from civicpulse.models.prediction import HotspotPrediction

IntensityLevel = Literal["low", "medium", "high", "critical"]
Severity = Literal["low", "medium", "high", "critical"]


class HeatmapDataPoint(CamelModel):
    id:              str
    location:        Coordinate
    h3_index:        str
    value:           float
    intensity:       float = Field(ge=0, le=1)    # value / 100, clamped
    intensity_level: IntensityLevel
    risk_score:      float = Field(ge=0, le=1)
    category:        str = "general"
    timestamp:       datetime
    freshness:       float = Field(default=1.0, ge=0, le=1)   # 1 = just reported


class HeatmapCluster(CamelModel):
    id:            str
    centroid:      Coordinate
    radius_m:      float
    density:       float                 # points per km²
    point_ids:     list[str]
    point_count:   int
    average_value: float
    risk_level:    Severity
    trend:         Literal["growing", "declining", "stable"] = "stable"
    change_rate:   float = 0.0


class HeatmapAnomaly(CamelModel):
    id:               str
    point_id:         str
    location:         Coordinate
    anomaly_type:     Literal["spike", "drop"]
    severity:         Severity
    deviation_score:  float               # |z|
    expected_value:   float
    actual_value:     float
    confidence:       float = Field(ge=0, le=1)
    potential_causes: list[str] = Field(default_factory=list)
    detected_at:      datetime


class CacheInfo(CamelModel):
    cached:             bool = False
    prediction_entries: int = 0
    last_cycle_at:      datetime | None = None


class PerformanceInfo(CamelModel):
    query_time_ms: float = 0.0
    point_count:   int = 0


class HeatmapMetadata(CamelModel):
    total_count: int
    bounds:      RegionBounds | None = None
    resolution:  int
    timestamp:   datetime
    cache_info:  CacheInfo = Field(default_factory=CacheInfo)
    performance: PerformanceInfo = Field(default_factory=PerformanceInfo)


class HeatmapSnapshot(CamelModel):
    data_points: list[HeatmapDataPoint] = Field(default_factory=list)
    clusters:    list[HeatmapCluster] = Field(default_factory=list)
    predictions: list[HotspotPrediction] = Field(default_factory=list)
    anomalies:   list[HeatmapAnomaly] = Field(default_factory=list)
    metadata:    HeatmapMetadata


class HeatmapApiResponse(CamelModel):
    success: bool = True
    data:    HeatmapSnapshot | None = None
    error:   str | None = None


class HeatmapConfig(CamelModel):
    """Client-side data config. Unknown keys are ignored."""

    resolution:        int = Field(default=8, ge=0, le=15)
    show_clusters:     bool = True
    show_predictions:  bool = True
    show_anomalies:    bool = True
    realtime_enabled:  bool = True
    update_interval_ms: int = Field(default=30_000, gt=0)
    max_points:        int = Field(default=10_000, gt=0)


class VisualizationConfig(CamelModel):
    center:        Coordinate = (77.5946, 12.9716)
    zoom:          float = Field(default=12, ge=0, le=22)
    pitch:         float = 0
    bearing:       float = 0
    color_scheme:  Literal["heat", "viridis", "plasma", "risk"] = "heat"
    opacity:       float = Field(default=0.8, ge=0, le=1)
    radius_pixels: int = 30
