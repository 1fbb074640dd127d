"""
Health check endpoint.

Used by:
  - Docker HEALTHCHECK instruction
  - Load balancers / orchestrators
  - The map client, to tell "API down" from "live updates degraded"

Returns status + DB connectivity + predictor state. The API is healthy
(HTTP 200) even when MongoDB is unreachable or the learned model is
unavailable; both degrade, neither is fatal.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from civicpulse.core import database as db_module
from civicpulse.core.config import settings
from civicpulse.services.engine import HeatmapEngine, get_engine

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    environment: str
    model: str  # predictor state, e.g. "ready_fallback"
    buffered_records: int


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(engine: HeatmapEngine = Depends(get_engine)) -> HealthResponse:
    db_status = "disconnected"
    try:
        # Access via module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    return HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        environment=settings.environment,
        model=engine.predictor.state.value,
        buffered_records=len(engine.store),
    )
