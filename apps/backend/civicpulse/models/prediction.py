"""
prediction.py — Pydantic models for hotspot predictions, model status and model archives.
"""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import Base64Bytes, Field

from civicpulse.models.common import CamelModel, Coordinate

Timeframe = Literal["next-hour", "next-day", "next-week"]
ModelKind = Literal["learned", "fallback"]

TIMEFRAME_OFFSETS_MS: dict[str, int] = {
    "next-hour": 60 * 60 * 1000,
    "next-day":  24 * 60 * 60 * 1000,
    "next-week": 7 * 24 * 60 * 60 * 1000,
}


class PredictionFactor(CamelModel):
    name:   str
    weight: float
    value:  float
    impact: Literal["positive", "negative", "neutral"]


class HotspotPrediction(CamelModel):
    location:        Coordinate
    confidence:      float = Field(ge=0, le=1)
    predicted_value: float = Field(ge=0, le=100)
    timeframe:       Timeframe
    factors:         list[PredictionFactor] = Field(default_factory=list)
    accuracy:        float = Field(ge=0, le=1)
    trend:           Literal["increasing", "decreasing", "stable"] = "stable"
    model_kind:      ModelKind = "fallback"
    target_time:     datetime
    generated_at:    datetime


class PredictionRequest(CamelModel):
    locations: list[Coordinate] = Field(min_length=1, max_length=500)
    timeframe: Timeframe = "next-hour"


class TrainingReport(CamelModel):
    """Outcome of one train() run. Validation loss is informational only."""

    samples:         int
    train_samples:   int = 0
    val_samples:     int = 0
    epochs:          int = 0
    train_loss:      float | None = None
    val_loss:        float | None = None
    learned:         bool = False
    duration_ms:     float = 0.0
    completed_at:    datetime


class ModelStatus(CamelModel):
    state:             Literal["uninitialized", "ready_learned", "ready_fallback", "training"]
    active_model:      ModelKind | None = None
    learned_available: bool = False
    is_training:       bool = False
    training_runs:     int = 0
    live_resources:    int = 0
    buffered_records:  int = 0
    retrain_pending:   bool = False
    last_training:     TrainingReport | None = None


# ── Model archive ─────────────────────────────────────────────────────────────

Hour = Annotated[int, Field(ge=0, le=23)]
Weekday = Annotated[int, Field(ge=0, le=6)]


class FallbackArchive(CamelModel):
    hourly:  dict[Hour, float] = Field(default_factory=dict)
    daily:   dict[Weekday, float] = Field(default_factory=dict)
    samples: int = Field(default=0, ge=0)


class LearnedArchive(CamelModel):
    network:      Base64Bytes          # Keras .keras archive
    scaler_min:   list[float]
    scaler_range: list[float]


class ModelArchive(CamelModel):
    """Everything needed to rebuild the active models: GET /model/export, POST /model/import."""

    format_version: Literal[1] = 1
    exported_at:    datetime
    features:       list[str] = Field(min_length=1)
    fallback:       FallbackArchive = Field(default_factory=FallbackArchive)
    learned:        LearnedArchive | None = None
