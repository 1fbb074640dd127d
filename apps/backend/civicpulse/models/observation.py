"""
observation.py — Pydantic models for ingested observations and model config.

An Observation is one geotagged civic-issue report. Its optional context
blocks are explicit types (Weather, EventInfo, Demographics) so the feature
pipeline matches on presence instead of probing untyped dicts.

Observations are frozen: once appended to the training store they are
never mutated.

Wire shape (POST /api/v1/observations):
  {
    "timestamp": 1760862000000,            ← epoch milliseconds
    "location": [-0.1278, 51.5074],        ← [lon, lat]
    "value": 63.0,                         ← civic activity level, 0–100 nominal
    "category": "pothole",
    "weather": {"temperature": 14.2, "precipitation": 0.4},
    "events": [{"type": "festival", "distance": 800, "capacity": 2500, "duration": 240}],
    "demographics": {"population": 12000, "density": 5400}
  }
"""

from typing import Literal

from pydantic import ConfigDict, Field, field_validator

from civicpulse.models.common import CamelModel, Coordinate

DEFAULT_FEATURES: list[str] = [
    "hour_of_day",
    "day_of_week",
    "month",
    "temperature",
    "precipitation",
    "population_density",
    "distance_to_events",
    "historical_avg",
    "recent_trend",
]


class _FrozenModel(CamelModel):
    model_config = ConfigDict(frozen=True)


class Weather(_FrozenModel):
    temperature:   float = 20.0    # °C
    humidity:      float = 50.0    # %
    precipitation: float = 0.0     # mm
    wind_speed:    float = 0.0     # m/s
    visibility:    float = 10.0    # km


class EventInfo(_FrozenModel):
    type:     Literal["festival", "meeting", "construction", "emergency", "sports"] = "meeting"
    distance: float = Field(ge=0)          # metres from the location
    capacity: float = Field(default=0, ge=0)
    duration: float = Field(default=60, ge=0)   # minutes


class Demographics(_FrozenModel):
    population: float = 0.0
    density:    float = 100.0          # people per km²
    age_groups: dict[str, float] = Field(default_factory=dict)
    income:     float = 0.0
    education:  float = 0.0


class HistoricalPattern(_FrozenModel):
    hour_of_day:  int = Field(ge=0, le=23)
    day_of_week:  int = Field(ge=0, le=6)     # Sunday = 0
    day_of_month: int = Field(ge=1, le=31)
    month:        int = Field(ge=1, le=12)
    season:       Literal["spring", "summer", "fall", "winter"]
    is_holiday:   bool = False
    is_weekend:   bool = False


class Observation(_FrozenModel):
    timestamp:    int                       # epoch milliseconds (UTC)
    location:     Coordinate                # (lon, lat)
    value:        float
    category:     str = "general"
    weather:      Weather | None = None
    events:       tuple[EventInfo, ...] = ()
    demographics: Demographics | None = None
    historical:   HistoricalPattern | None = None

    @field_validator("location")
    @classmethod
    def _valid_location(cls, v: Coordinate) -> Coordinate:
        lon, lat = v
        if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
            raise ValueError(f"location out of range: {v}")
        return v


class ModelConfig(CamelModel):
    """
    Process-wide model configuration. Unknown keys are ignored (pydantic
    default) so richer external configs can be passed through unchanged.
    """

    model_type:               Literal["neural-network", "random-forest", "linear-regression", "lstm", "ensemble"] = "neural-network"
    features:                 list[str] = Field(default_factory=lambda: list(DEFAULT_FEATURES))
    target_variable:          str = "civic_activity_level"
    time_window_hours:        int = 24
    prediction_horizon_hours: int = 4
    update_frequency_ms:      int = Field(default=300_000, gt=0)
    accuracy_threshold:       float = Field(default=0.75, ge=0, le=1)

    @field_validator("features")
    @classmethod
    def _known_features(cls, v: list[str]) -> list[str]:
        unknown = [name for name in v if name not in DEFAULT_FEATURES]
        if unknown:
            raise ValueError(f"unknown feature(s): {', '.join(unknown)}")
        if not v:
            raise ValueError("at least one feature is required")
        if len(set(v)) != len(v):
            raise ValueError("feature names must be unique")
        return v


class ObservationBatch(CamelModel):
    observations: list[Observation] = Field(min_length=1, max_length=1_000)


class IngestResponse(CamelModel):
    ok:               bool = True
    point_id:         str
    h3_index:         str
    intensity_level:  str
    buffered_records: int


class BatchIngestResponse(CamelModel):
    ok:               bool = True
    accepted:         int
    buffered_records: int


class ObservationStats(CamelModel):
    total_ingested:       int
    buffered_records:     int
    points:               int
    clusters:             int
    anomalies:            int
    active_subscriptions: int
    prediction_cycles:    int
