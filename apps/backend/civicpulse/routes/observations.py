"""
observations.py — Observation ingestion endpoints.

Routes:
  POST /api/v1/observations        — ingest one geotagged report (rate limited)
  POST /api/v1/observations/batch  — ingest up to 1000 reports in order (rate limited)
  GET  /api/v1/observations/stats  — buffer / point / cluster counters

Each accepted observation is appended to the training store (every 100th
insertion queues a retrain), becomes a heatmap data point, and triggers the
realtime updates for subscriptions covering its location. It is written to
MongoDB when the database is reachable; a failed write is logged and the
observation is still accepted.
"""

import logging

from fastapi import APIRouter, Depends, Request

from civicpulse.core.config import settings
from civicpulse.core.database import get_db
from civicpulse.core.rate_limit import limiter
from civicpulse.models.observation import (
    BatchIngestResponse,
    IngestResponse,
    Observation,
    ObservationBatch,
    ObservationStats,
)
from civicpulse.services.engine import HeatmapEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/observations", tags=["observations"])


@router.post("", response_model=IngestResponse, status_code=201)
@limiter.limit(settings.ingest_rate_limit)
async def ingest_observation(
    request: Request,
    payload: Observation,
    engine: HeatmapEngine = Depends(get_engine),
    db=Depends(get_db),
):
    point = await engine.ingest(payload, db)
    return IngestResponse(
        point_id=point.id,
        h3_index=point.h3_index,
        intensity_level=point.intensity_level,
        buffered_records=len(engine.store),
    )


@router.post("/batch", response_model=BatchIngestResponse, status_code=201)
@limiter.limit(settings.ingest_rate_limit)
async def ingest_batch(
    request: Request,
    payload: ObservationBatch,
    engine: HeatmapEngine = Depends(get_engine),
    db=Depends(get_db),
):
    for observation in payload.observations:
        await engine.ingest(observation, db)
    logger.info("Batch ingest: %d observation(s)", len(payload.observations))
    return BatchIngestResponse(accepted=len(payload.observations), buffered_records=len(engine.store))


@router.get("/stats", response_model=ObservationStats)
async def observation_stats(engine: HeatmapEngine = Depends(get_engine)):
    return engine.stats()
