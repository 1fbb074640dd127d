"""
test_heatmap.py — Tests for GET /api/v1/heatmap, GET /api/v1/heatmap/export,
and the WebSocket stream.

REST tests go through the shared async `client` fixture. The stream tests
use Starlette's TestClient, which drives the app on its own event loop, so
they get an engine of their own and ingest through the HTTP route.
"""

import csv
import io
import json

import pytest
from fastapi.testclient import TestClient

from conftest import CENTRE, NOW_MS, no_network

BBOX = f"{CENTRE[0] - 0.2},{CENTRE[1] - 0.2},{CENTRE[0] + 0.2},{CENTRE[1] + 0.2}"
BOUNDS = {
    "southwest": [CENTRE[0] - 0.2, CENTRE[1] - 0.2],
    "northeast": [CENTRE[0] + 0.2, CENTRE[1] + 0.2],
}


def observation_json(value=50, dlat=0.0, category="pothole"):
    return {
        "timestamp": NOW_MS,
        "location": [CENTRE[0], CENTRE[1] + dlat],
        "value": value,
        "category": category,
    }


# ── REST tests ────────────────────────────────────────────────────────────────

class TestHeatmapSnapshot:
    async def test_get_heatmap_returns_200(self, client):
        r = await client.get("/api/v1/heatmap")
        assert r.status_code == 200

    async def test_response_has_required_keys(self, client):
        body = (await client.get("/api/v1/heatmap")).json()
        assert body["success"] is True
        for key in ("dataPoints", "clusters", "predictions", "anomalies", "metadata"):
            assert key in body["data"]

    async def test_metadata_fields(self, client, engine, make_observation):
        await engine.ingest(make_observation())
        metadata = (await client.get("/api/v1/heatmap")).json()["data"]["metadata"]
        assert metadata["totalCount"] == 1
        assert metadata["resolution"] == 8
        for field in ("timestamp", "bounds", "cacheInfo", "performance"):
            assert field in metadata

    async def test_data_point_has_required_fields(self, client, engine, make_observation):
        await engine.ingest(make_observation(value=80))
        point = (await client.get("/api/v1/heatmap")).json()["data"]["dataPoints"][0]
        for field in ("id", "location", "h3Index", "value", "intensity", "intensityLevel", "riskScore", "freshness"):
            assert field in point
        assert point["intensityLevel"] == "critical"

    async def test_bbox_narrows_points(self, client, engine, make_observation):
        await engine.ingest(make_observation())
        await engine.ingest(make_observation(dlat=2.0))
        data = (await client.get(f"/api/v1/heatmap?bbox={BBOX}")).json()["data"]
        assert data["metadata"]["totalCount"] == 1
        assert data["metadata"]["bounds"]["southwest"] == BOUNDS["southwest"]

    @pytest.mark.parametrize("bbox", ["1,2,3", "a,b,c,d", "10,10,0,0"])
    async def test_bad_bbox_rejected(self, client, bbox):
        r = await client.get(f"/api/v1/heatmap?bbox={bbox}")
        assert r.status_code == 400

    async def test_category_filter(self, client, engine, make_observation):
        await engine.ingest(make_observation(category="pothole"))
        await engine.ingest(make_observation(category="waste", dlat=0.001))
        points = (await client.get("/api/v1/heatmap?category=waste")).json()["data"]["dataPoints"]
        assert [p["category"] for p in points] == ["waste"]

    async def test_value_filters(self, client, engine, make_observation):
        await engine.ingest(make_observation(value=10))
        await engine.ingest(make_observation(value=60, dlat=0.001))
        await engine.ingest(make_observation(value=95, dlat=0.002))
        points = (await client.get("/api/v1/heatmap?minValue=20&maxValue=90")).json()["data"]["dataPoints"]
        assert [p["value"] for p in points] == [60]

    async def test_invalid_hours_rejected(self, client):
        r = await client.get("/api/v1/heatmap?hours=0")
        assert r.status_code == 422

    async def test_hours_over_max_rejected(self, client):
        r = await client.get("/api/v1/heatmap?hours=9999")
        assert r.status_code == 422


class TestHeatmapExport:
    async def test_json_export(self, client, engine, make_observation):
        await engine.ingest(make_observation())
        r = await client.get("/api/v1/heatmap/export")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("application/json")
        assert r.headers["content-disposition"] == 'attachment; filename="heatmap.json"'
        assert len(r.json()["dataPoints"]) == 1

    async def test_csv_export(self, client, engine, make_observation):
        await engine.ingest(make_observation())
        r = await client.get("/api/v1/heatmap/export?format=csv")
        assert r.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(r.text)))
        assert rows[0][:3] == ["id", "longitude", "latitude"]
        assert len(rows) == 2

    async def test_geojson_export(self, client, engine, make_observation):
        await engine.ingest(make_observation())
        r = await client.get(f"/api/v1/heatmap/export?format=geojson&bbox={BBOX}")
        body = r.json()
        assert body["type"] == "FeatureCollection"
        assert {f["properties"]["featureType"] for f in body["features"]} == {"point", "cluster"}

    async def test_unknown_format_rejected(self, client):
        r = await client.get("/api/v1/heatmap/export?format=xlsx")
        assert r.status_code == 400
        assert "xlsx" in r.json()["detail"]


# ── WebSocket tests ───────────────────────────────────────────────────────────

@pytest.fixture()
def ws_client(mock_db):  # noqa: ARG001
    from civicpulse.core.rate_limit import limiter
    from civicpulse.core.scheduler import ManualClock, TaskScheduler
    from civicpulse.main import app
    from civicpulse.services.context_provider import ContextProvider
    from civicpulse.services.engine import HeatmapEngine

    clock = ManualClock(start=NOW_MS / 1000)
    engine = HeatmapEngine(
        scheduler=TaskScheduler(clock=clock),
        context=ContextProvider(mock_mode=True),
        network_factory=no_network,
        clock_ms=lambda: int(clock() * 1000),
    )
    limiter.reset()
    original = app.state.engine
    app.state.engine = engine
    # One portal for every request and socket, so the stream and the
    # ingest route share an event loop. The lifespan starts and stops `engine`.
    try:
        with TestClient(app) as tc:
            yield tc, engine
    finally:
        app.state.engine = original


def subscribe(ws, region_id="centre", **extra):
    ws.send_text(json.dumps({"type": "subscribe", "regionId": region_id, "bounds": BOUNDS, **extra}))
    return ws.receive_json()


class TestHeatmapStream:
    def test_subscribe_is_confirmed(self, ws_client):
        client, engine = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            reply = subscribe(ws)
            assert reply["type"] == "subscription_confirmed"
            assert reply["regionId"] == "centre"
            assert reply["subscriptionId"].startswith("sub_")
            assert engine.subscriptions.get(reply["subscriptionId"]).is_active

    def test_ping_pong(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json() == {"type": "pong"}

    def test_bad_json_keeps_socket_open(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            ws.send_text("{not json")
            assert ws.receive_json()["type"] == "error"
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json()["type"] == "pong"

    def test_unknown_message_type(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            ws.send_text(json.dumps({"type": "dance"}))
            assert "dance" in ws.receive_json()["error"]

    def test_invalid_subscribe_rejected(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            ws.send_text(json.dumps({"type": "subscribe", "regionId": "centre"}))
            assert ws.receive_json()["type"] == "subscription_error"

    def test_unsubscribe(self, ws_client):
        client, engine = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            sid = subscribe(ws)["subscriptionId"]
            ws.send_text(json.dumps({"type": "unsubscribe", "subscriptionId": sid}))
            assert ws.receive_json() == {"type": "unsubscribed", "subscriptionId": sid}
            assert engine.subscriptions.get(sid).is_active is False

            ws.send_text(json.dumps({"type": "unsubscribe", "subscriptionId": sid}))
            assert ws.receive_json()["type"] == "subscription_error"

    def test_disconnect_cancels_subscriptions(self, ws_client):
        client, engine = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            sid = subscribe(ws)["subscriptionId"]
        assert engine.subscriptions.get(sid).is_active is False

    def test_ingest_pushes_heatmap_update(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            sid = subscribe(ws)["subscriptionId"]
            r = client.post("/api/v1/observations", json=observation_json(value=70))
            assert r.status_code == 201

            update = ws.receive_json()
            assert update["type"] == "heatmap_update"
            assert update["subscriptionId"] == sid
            assert update["regionId"] == "centre"
            assert update["data"]["updatedPoints"][0]["id"] == r.json()["pointId"]
            assert ws.receive_json()["type"] == "cluster_update"

    def test_filters_apply_to_pushed_updates(self, ws_client):
        client, _ = ws_client
        with client.websocket_connect("/api/v1/heatmap/stream") as ws:
            subscribe(ws, filters={"categories": ["waste"]})
            client.post("/api/v1/observations", json=observation_json(category="pothole"))
            # The pothole point is filtered out, so the first message is its cluster update.
            assert ws.receive_json()["type"] == "cluster_update"
            client.post("/api/v1/observations", json=observation_json(category="waste", dlat=0.001))
            update = ws.receive_json()
            assert update["type"] == "heatmap_update"
            assert [p["category"] for p in update["data"]["updatedPoints"]] == ["waste"]
