"""
export.py — Serialise a heatmap snapshot as JSON, CSV or GeoJSON.

Pure functions: no I/O beyond building the returned string. Used by the
state store's export_data() and by GET /api/v1/heatmap/export.

  json     the snapshot exactly as the API returns it (camelCase)
  csv      one row per data point
  geojson  FeatureCollection of points, cluster centroids and anomalies;
           properties.featureType tells them apart
"""

import csv
import io
import json
from typing import Literal

from civicpulse.models.heatmap import HeatmapSnapshot

ExportFormat = Literal["json", "csv", "geojson"]

MEDIA_TYPES: dict[str, str] = {
    "json":    "application/json",
    "csv":     "text/csv",
    "geojson": "application/geo+json",
}

CSV_COLUMNS = [
    "id", "longitude", "latitude", "h3Index", "value", "intensity",
    "intensityLevel", "riskScore", "category", "timestamp", "freshness",
]


def export_snapshot(snapshot: HeatmapSnapshot, fmt: str) -> str:
    if fmt == "json":
        return snapshot.model_dump_json(by_alias=True, indent=2)
    if fmt == "csv":
        return to_csv(snapshot)
    if fmt == "geojson":
        return json.dumps(to_geojson(snapshot), indent=2)
    raise ValueError(f"unsupported export format: {fmt!r} (expected one of {', '.join(MEDIA_TYPES)})")


def to_csv(snapshot: HeatmapSnapshot) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for p in snapshot.data_points:
        writer.writerow([
            p.id, p.location[0], p.location[1], p.h3_index, p.value, round(p.intensity, 4),
            p.intensity_level, round(p.risk_score, 4), p.category, p.timestamp.isoformat(),
            round(p.freshness, 4),
        ])
    return buffer.getvalue()


def _feature(coordinates, properties: dict) -> dict:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": list(coordinates)},
        "properties": properties,
    }


def to_geojson(snapshot: HeatmapSnapshot) -> dict:
    features = []
    for p in snapshot.data_points:
        props = p.model_dump(mode="json", by_alias=True, exclude={"location"})
        features.append(_feature(p.location, {"featureType": "point", **props}))
    for c in snapshot.clusters:
        props = c.model_dump(mode="json", by_alias=True, exclude={"centroid", "point_ids"})
        features.append(_feature(c.centroid, {"featureType": "cluster", **props}))
    for an in snapshot.anomalies:
        props = an.model_dump(mode="json", by_alias=True, exclude={"location"})
        features.append(_feature(an.location, {"featureType": "anomaly", **props}))
    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": snapshot.metadata.model_dump(mode="json", by_alias=True),
    }
