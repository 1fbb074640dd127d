"""
model.py — Predictor status, manual training, model configuration and
model export / import.

Routes:
  GET   /api/v1/model/status  — state machine state, active model, last training report
  POST  /api/v1/model/train   — train now (no-op while training or below 100 records)
  GET   /api/v1/model/config  — current ModelConfig
  PATCH /api/v1/model/config  — merge config changes; unknown keys are ignored,
                                unknown feature names are rejected (400)
  GET   /api/v1/model/export  — ModelArchive: fallback tables, plus the learned
                                network (base64 .keras) and scaler once trained
  POST  /api/v1/model/import  — replace the models with an exported archive; an
                                archive that cannot be restored is rejected (400)
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from civicpulse.ml.learned_model import ModelArchiveError, ModelNotReadyError
from civicpulse.models.common import CamelModel
from civicpulse.models.observation import ModelConfig
from civicpulse.models.prediction import ModelArchive, ModelStatus
from civicpulse.services.engine import HeatmapEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/model", tags=["model"])


class TrainResponse(CamelModel):
    trained: bool
    reason:  str | None = None
    status:  ModelStatus


@router.get("/status", response_model=ModelStatus)
async def model_status(engine: HeatmapEngine = Depends(get_engine)):
    return engine.predictor.status()


@router.post("/train", response_model=TrainResponse)
async def train_model(engine: HeatmapEngine = Depends(get_engine)):
    """Insufficient data or a run already in flight is reported, not raised."""
    reason = None
    if engine.predictor.is_training:
        reason = "training already in progress"
    elif not engine.store.has_enough_data():
        reason = f"need at least {engine.store.min_records} observations, have {len(engine.store)}"
    trained = await engine.predictor.train()
    return TrainResponse(trained=trained, reason=None if trained else reason, status=engine.predictor.status())


@router.get("/config", response_model=ModelConfig)
async def get_model_config(engine: HeatmapEngine = Depends(get_engine)):
    return engine.predictor.config


@router.patch("/config", response_model=ModelConfig)
async def update_model_config(
    changes: dict[str, Any] = Body(...),
    engine: HeatmapEngine = Depends(get_engine),
):
    try:
        return engine.update_model_config(changes)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc.errors()[0]["msg"])) from exc


@router.get("/export", response_model=ModelArchive)
async def export_model(engine: HeatmapEngine = Depends(get_engine)):
    try:
        return await engine.predictor.export_model()
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/import", response_model=ModelStatus)
async def import_model(archive: ModelArchive, engine: HeatmapEngine = Depends(get_engine)):
    try:
        await engine.predictor.import_model(archive)
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc.errors()[0]["msg"])) from exc
    except ModelArchiveError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Model archive from %s imported", archive.exported_at.isoformat())
    return engine.predictor.status()
