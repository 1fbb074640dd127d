"""
test_export.py — JSON, CSV and GeoJSON renderings of a heatmap snapshot.
"""

import csv
import io
import json
from datetime import datetime, timezone

import pytest

from conftest import NOW_MS
from civicpulse.models.heatmap import HeatmapMetadata, HeatmapSnapshot
from civicpulse.services.aggregator import build_data_point, cluster_points, detect_anomalies
from civicpulse.state.export import CSV_COLUMNS, export_snapshot, to_geojson

NOW = datetime.fromtimestamp(NOW_MS / 1000, tz=timezone.utc)


@pytest.fixture()
def snapshot(make_observation):
    points = [
        build_data_point(make_observation(value=50, dlat=i * 0.001), point_id=f"p{i}", now=NOW)
        for i in range(10)
    ]
    points.append(build_data_point(make_observation(value=100), point_id="spike", now=NOW))
    return HeatmapSnapshot(
        data_points=points,
        clusters=cluster_points(points, now=NOW),
        anomalies=detect_anomalies(points, now=NOW),
        metadata=HeatmapMetadata(total_count=len(points), resolution=8, timestamp=NOW),
    )


def test_json_is_camel_case(snapshot):
    body = json.loads(export_snapshot(snapshot, "json"))
    assert len(body["dataPoints"]) == 11
    assert body["metadata"]["totalCount"] == 11
    assert "h3Index" in body["dataPoints"][0]


def test_csv_rows(snapshot):
    rows = list(csv.reader(io.StringIO(export_snapshot(snapshot, "csv"))))
    assert rows[0] == CSV_COLUMNS
    assert len(rows) == 12
    first = dict(zip(CSV_COLUMNS, rows[1]))
    assert first["id"] == "p0"
    assert float(first["longitude"]) == snapshot.data_points[0].location[0]
    assert first["intensityLevel"] == "medium"


def test_csv_empty_snapshot_has_header_only():
    empty = HeatmapSnapshot(metadata=HeatmapMetadata(total_count=0, resolution=8, timestamp=NOW))
    assert export_snapshot(empty, "csv") == ",".join(CSV_COLUMNS) + "\n"


def test_geojson_feature_types(snapshot):
    collection = to_geojson(snapshot)
    assert collection["type"] == "FeatureCollection"
    kinds = [f["properties"]["featureType"] for f in collection["features"]]
    assert kinds.count("point") == 11
    assert kinds.count("cluster") == len(snapshot.clusters)
    assert kinds.count("anomaly") == 1

    spike = next(f for f in collection["features"] if f["properties"].get("id") == "spike")
    assert spike["geometry"] == {"type": "Point", "coordinates": list(snapshot.data_points[-1].location)}
    assert "location" not in spike["properties"]


def test_geojson_string_round_trips(snapshot):
    assert json.loads(export_snapshot(snapshot, "geojson")) == to_geojson(snapshot)


def test_unknown_format():
    empty = HeatmapSnapshot(metadata=HeatmapMetadata(total_count=0, resolution=8, timestamp=NOW))
    with pytest.raises(ValueError, match="unsupported export format"):
        export_snapshot(empty, "xlsx")
