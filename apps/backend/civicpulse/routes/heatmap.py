"""
heatmap.py — Heatmap snapshot, export and realtime stream routes.

─────────────────────────────────────────────────────────────────────────────
Routes:
  GET  /api/v1/heatmap          — snapshot: data points + clusters + predictions + anomalies
  GET  /api/v1/heatmap/export   — the same snapshot as json | csv | geojson
  WS   /api/v1/heatmap/stream   — realtime updates for subscribed regions

HOW THE DATA FLOWS
──────────────────
1. A client loads GET /api/v1/heatmap for its viewport (?bbox=minLon,minLat,maxLon,maxLat).
2. It opens the WebSocket and sends one subscribe message per viewport region.
3. Every POST /api/v1/observations recomputes points, clusters and anomalies
   in the engine, which routes heatmap_update / cluster_update /
   anomaly_alert messages to the subscriptions whose bounds intersect.
4. The periodic prediction cycle sends prediction_update to each subscription.

STREAM PROTOCOL
───────────────
  client → {"type": "subscribe", "regionId": "centre",
            "bounds": {"southwest": [77.55, 12.93], "northeast": [77.65, 13.01]},
            "filters": {"categories": ["pothole"]}}
  server ← {"type": "subscription_confirmed", "subscriptionId": "sub_…", "regionId": "centre"}

  client → {"type": "unsubscribe", "subscriptionId": "sub_…"}
  server ← {"type": "unsubscribed", "subscriptionId": "sub_…"}

  client → {"type": "ping"}
  server ← {"type": "pong"}

  Invalid requests get {"type": "subscription_error" | "error", "error": "..."}.
  Subscriptions opened on a socket are cancelled when it disconnects.

TESTING YOUR CHANGES
─────────────────────
  pytest apps/backend/tests/test_heatmap.py -v

  curl "http://localhost:8000/api/v1/heatmap?bbox=77.5,12.9,77.7,13.1"
  curl "http://localhost:8000/api/v1/heatmap/export?format=geojson"
  wscat -c ws://localhost:8000/api/v1/heatmap/stream
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import ValidationError

from civicpulse.models.common import RegionBounds
from civicpulse.models.heatmap import HeatmapApiResponse
from civicpulse.models.realtime import HeatmapFilters, RealtimeSubscription, SubscribeRequest, TimeRange, UpdateEvent
from civicpulse.services.engine import HeatmapEngine, get_engine
from civicpulse.services.subscriptions import to_wire
from civicpulse.state.export import MEDIA_TYPES, export_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/heatmap", tags=["heatmap"])


def parse_bbox(bbox: Optional[str]) -> RegionBounds | None:
    if not bbox:
        return None
    try:
        min_lon, min_lat, max_lon, max_lat = (float(v) for v in bbox.split(","))
        return RegionBounds(southwest=(min_lon, min_lat), northeast=(max_lon, max_lat))
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail="bbox must be minLon,minLat,maxLon,maxLat with min <= max",
        ) from exc


def snapshot_filters(
    category: Optional[list[str]] = Query(default=None, description="Only these categories (repeatable)"),
    min_value: Optional[float] = Query(default=None, alias="minValue", ge=0, le=100),
    max_value: Optional[float] = Query(default=None, alias="maxValue", ge=0, le=100),
    hours: Optional[int] = Query(default=None, ge=1, le=168, description="Lookback window in hours"),
) -> HeatmapFilters | None:
    time_range = None
    if hours is not None:
        now = datetime.now(tz=timezone.utc)
        time_range = TimeRange(start=now - timedelta(hours=hours), end=now)
    if category is None and min_value is None and max_value is None and time_range is None:
        return None
    return HeatmapFilters(categories=category, min_value=min_value, max_value=max_value, time_range=time_range)


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("", response_model=HeatmapApiResponse)
async def get_heatmap(
    bbox: Optional[str] = Query(default=None, description="minLon,minLat,maxLon,maxLat (omit for everything)"),
    filters: HeatmapFilters | None = Depends(snapshot_filters),
    engine: HeatmapEngine = Depends(get_engine),
):
    """
    Return the heatmap snapshot for a viewport.

    Clusters, anomalies and predictions are filtered by location only;
    the category / value / hours filters narrow the data points.
    """
    snapshot = engine.snapshot(parse_bbox(bbox), filters)
    return HeatmapApiResponse(success=True, data=snapshot)


@router.get("/export")
async def export_heatmap(
    format: str = Query(default="json", description="json | csv | geojson"),
    bbox: Optional[str] = Query(default=None),
    filters: HeatmapFilters | None = Depends(snapshot_filters),
    engine: HeatmapEngine = Depends(get_engine),
):
    if format not in MEDIA_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported export format '{format}'. Use json, csv or geojson.")
    content = export_snapshot(engine.snapshot(parse_bbox(bbox), filters), format)
    return Response(
        content=content,
        media_type=MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="heatmap.{format}"'},
    )


# ── WebSocket stream ──────────────────────────────────────────────────────────

@router.websocket("/stream")
async def heatmap_stream(websocket: WebSocket, engine: HeatmapEngine = Depends(get_engine)):
    await websocket.accept()
    owned: set[str] = set()

    async def deliver(subscription: RealtimeSubscription, event: UpdateEvent) -> None:
        await websocket.send_json(to_wire(event).model_dump(mode="json", by_alias=True))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "error": "message is not valid JSON"})
                continue
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "subscribe":
                try:
                    request = SubscribeRequest.model_validate(message)
                except ValidationError as exc:
                    await websocket.send_json({"type": "subscription_error", "error": str(exc.errors()[0]["msg"])})
                    continue
                subscription_id = engine.subscribe(request.region_id, request.bounds, request.filters, deliver)
                owned.add(subscription_id)
                await websocket.send_json({
                    "type": "subscription_confirmed",
                    "subscriptionId": subscription_id,
                    "regionId": request.region_id,
                })

            elif kind == "unsubscribe":
                subscription_id = message.get("subscriptionId")
                if subscription_id in owned and engine.unsubscribe(subscription_id):
                    owned.discard(subscription_id)
                    await websocket.send_json({"type": "unsubscribed", "subscriptionId": subscription_id})
                else:
                    await websocket.send_json({
                        "type": "subscription_error",
                        "error": f"unknown subscription {subscription_id!r}",
                    })

            elif kind == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "error": f"unknown message type {kind!r}"})

    except WebSocketDisconnect:
        # Client closed the tab or navigated away. Normal, not an error.
        logger.info("Heatmap stream client disconnected (%d subscription(s))", len(owned))
    except Exception as exc:
        logger.warning("Heatmap stream error: %s", exc)
    finally:
        for subscription_id in owned:
            engine.unsubscribe(subscription_id)
