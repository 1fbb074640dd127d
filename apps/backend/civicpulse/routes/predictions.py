"""
predictions.py — Hotspot prediction endpoints.

Routes:
  POST /api/v1/predictions        — predict explicit locations now
  GET  /api/v1/predictions        — cached predictions (?bbox=…&timeframe=…)
  POST /api/v1/predictions/cycle  — run the periodic prediction cycle immediately
  POST /api/v1/predictions/region — predict on the H3 sampling grid of ?bbox=…

Predictions never fail as a whole: a location whose context or model call
fails is left out of the response, and a missing learned model means the
statistical fallback answers (accuracy capped at 0.9).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from civicpulse.core.config import settings
from civicpulse.models.prediction import HotspotPrediction, PredictionRequest, Timeframe
from civicpulse.routes.heatmap import parse_bbox
from civicpulse.services.engine import HeatmapEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/predictions", tags=["predictions"])


@router.post("", response_model=list[HotspotPrediction])
async def generate_predictions(payload: PredictionRequest, engine: HeatmapEngine = Depends(get_engine)):
    return await engine.hotspots.generate_predictions(payload.locations, payload.timeframe)


@router.get("", response_model=list[HotspotPrediction])
async def cached_predictions(
    bbox: Optional[str] = Query(default=None, description="minLon,minLat,maxLon,maxLat"),
    timeframe: Optional[Timeframe] = Query(default=None),
    engine: HeatmapEngine = Depends(get_engine),
):
    return engine.hotspots.get_cached_predictions(parse_bbox(bbox), timeframe)


@router.post("/cycle", response_model=list[HotspotPrediction])
async def run_cycle(
    timeframe: Timeframe = Query(default="next-hour"),
    engine: HeatmapEngine = Depends(get_engine),
):
    return await engine.run_prediction_cycle(timeframe)


@router.post("/region", response_model=list[HotspotPrediction])
async def predict_region(
    bbox: str = Query(..., description="minLon,minLat,maxLon,maxLat"),
    timeframe: Timeframe = Query(default="next-hour"),
    max_locations: int = Query(default=settings.prediction_grid_max_cells, alias="maxLocations", ge=1, le=500),
    engine: HeatmapEngine = Depends(get_engine),
):
    return await engine.hotspots.predict_region(parse_bbox(bbox), timeframe, max_locations)
