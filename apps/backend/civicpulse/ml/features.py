"""
features.py — Observation → fixed-length feature vector.

Every feature is a named function of (observation, historical pattern,
history index). The vector is built in the order of ModelConfig.features,
so its length always equals the configured feature count and the slot
order is identical between train() and predict().

Normalisation divisors
──────────────────────
  hour_of_day          hour / 24
  day_of_week          day (Sunday = 0) / 7
  month                month (1–12) / 12
  temperature          °C / 40                    default 20 °C
  precipitation        mm / 100                   default 0 mm
  population_density   log10(density + 1) / 5     default 100 / km²
  distance_to_events   Σ distanceFactor·capacityFactor, clamped [0, 1]
  historical_avg       mean value (±2 h, same weekday) / 100, 0.5 if none
  recent_trend         (mean 2nd half − mean 1st half of last 7 days) / 100

All timestamps are interpreted in UTC.
"""

import math
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

import numpy as np

from civicpulse.models.observation import (
    DEFAULT_FEATURES,
    EventInfo,
    HistoricalPattern,
    Observation,
)

WEEK_MS = 7 * 24 * 60 * 60 * 1000

DEFAULT_TEMPERATURE = 20.0
DEFAULT_PRECIPITATION = 0.0
DEFAULT_DENSITY = 100.0

EVENT_INFLUENCE_RADIUS_M = 5_000.0
EVENT_CAPACITY_SCALE = 1_000.0
HISTORICAL_HOUR_WINDOW = 2
NEUTRAL_HISTORICAL_AVG = 0.5

_HOLIDAYS = {(1, 1), (12, 25)}   # (month, day)


# ── Calendar ──────────────────────────────────────────────────────────────────

def to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def season_for(month: int) -> str:
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


def infer_historical_pattern(timestamp_ms: int) -> HistoricalPattern:
    dt = to_datetime(timestamp_ms)
    day_of_week = (dt.weekday() + 1) % 7   # Python Monday=0 → Sunday=0
    return HistoricalPattern(
        hour_of_day=dt.hour,
        day_of_week=day_of_week,
        day_of_month=dt.day,
        month=dt.month,
        season=season_for(dt.month),
        is_holiday=(dt.month, dt.day) in _HOLIDAYS,
        is_weekend=day_of_week in (0, 6),
    )


def pattern_for(observation: Observation) -> HistoricalPattern:
    return observation.historical or infer_historical_pattern(observation.timestamp)


def hour_and_weekday(observation: Observation) -> tuple[int, int]:
    """(hour_of_day, day_of_week) without building a HistoricalPattern."""
    if observation.historical is not None:
        return observation.historical.hour_of_day, observation.historical.day_of_week
    dt = to_datetime(observation.timestamp)
    return dt.hour, (dt.weekday() + 1) % 7


# ── Context features ──────────────────────────────────────────────────────────

def calculate_event_proximity(events: Iterable[EventInfo]) -> float:
    """Summed influence of nearby events, clamped to [0, 1]."""
    total = 0.0
    for event in events:
        distance_factor = max(0.0, 1.0 - event.distance / EVENT_INFLUENCE_RADIUS_M)
        capacity_factor = min(event.capacity / EVENT_CAPACITY_SCALE, 1.0)
        total += distance_factor * capacity_factor
    return min(max(total, 0.0), 1.0)


def temperature_of(observation: Observation) -> float:
    return observation.weather.temperature if observation.weather else DEFAULT_TEMPERATURE


def precipitation_of(observation: Observation) -> float:
    return observation.weather.precipitation if observation.weather else DEFAULT_PRECIPITATION


def density_of(observation: Observation) -> float:
    return observation.demographics.density if observation.demographics else DEFAULT_DENSITY


# ── History ───────────────────────────────────────────────────────────────────

class HistoryIndex:
    """
    Aggregates over one training-store snapshot.

    Keeps per-(weekday, hour) sums and counts so historical_average() is
    O(1) per lookup, and the recent trend, which only depends on the
    snapshot and `now_ms`, is computed once.
    """

    def __init__(self, records: Sequence[Observation], now_ms: int):
        self.now_ms = now_ms
        self.size = len(records)
        self._sums = [[0.0] * 24 for _ in range(7)]
        self._counts = [[0] * 24 for _ in range(7)]
        for record in records:
            hour, weekday = hour_and_weekday(record)
            self._sums[weekday][hour] += record.value
            self._counts[weekday][hour] += 1
        self.recent_trend = _recent_trend(records, now_ms)

    @classmethod
    def empty(cls, now_ms: int) -> "HistoryIndex":
        return cls((), now_ms)

    def historical_average(self, pattern: HistoricalPattern) -> float:
        lo = max(0, pattern.hour_of_day - HISTORICAL_HOUR_WINDOW)
        hi = min(23, pattern.hour_of_day + HISTORICAL_HOUR_WINDOW)
        sums = self._sums[pattern.day_of_week]
        counts = self._counts[pattern.day_of_week]
        total = sum(sums[lo:hi + 1])
        count = sum(counts[lo:hi + 1])
        if count == 0:
            return NEUTRAL_HISTORICAL_AVG
        return min(max(total / count / 100.0, 0.0), 1.0)


def _recent_trend(records: Sequence[Observation], now_ms: int) -> float:
    recent = sorted(
        (r for r in records if now_ms - r.timestamp < WEEK_MS),
        key=lambda r: r.timestamp,
    )
    if len(recent) < 2:
        return 0.0
    half = len(recent) // 2
    first = sum(r.value for r in recent[:half]) / half
    second = sum(r.value for r in recent[half:]) / (len(recent) - half)
    return (second - first) / 100.0


# ── Extraction ────────────────────────────────────────────────────────────────

FeatureFn = Callable[[Observation, HistoricalPattern, HistoryIndex], float]

FEATURE_FUNCTIONS: dict[str, FeatureFn] = {
    "hour_of_day":        lambda o, p, h: p.hour_of_day / 24,
    "day_of_week":        lambda o, p, h: p.day_of_week / 7,
    "month":              lambda o, p, h: p.month / 12,
    "temperature":        lambda o, p, h: temperature_of(o) / 40,
    "precipitation":      lambda o, p, h: precipitation_of(o) / 100,
    "population_density": lambda o, p, h: math.log10(max(density_of(o), 0.0) + 1) / 5,
    "distance_to_events": lambda o, p, h: calculate_event_proximity(o.events),
    "historical_avg":     lambda o, p, h: h.historical_average(p),
    "recent_trend":       lambda o, p, h: h.recent_trend,
}


class FeatureExtractor:
    def __init__(self, feature_names: Sequence[str] = DEFAULT_FEATURES):
        unknown = [name for name in feature_names if name not in FEATURE_FUNCTIONS]
        if unknown:
            raise ValueError(f"unknown feature(s): {', '.join(unknown)}")
        self.feature_names = tuple(feature_names)
        self._fns = [FEATURE_FUNCTIONS[name] for name in self.feature_names]

    def __len__(self) -> int:
        return len(self._fns)

    def extract(self, observation: Observation, history: HistoryIndex) -> list[float]:
        pattern = pattern_for(observation)
        return [float(fn(observation, pattern, history)) for fn in self._fns]

    def matrix(self, records: Sequence[Observation], history: HistoryIndex) -> np.ndarray:
        """(n_records, n_features) float32 matrix."""
        out = np.empty((len(records), len(self._fns)), dtype=np.float32)
        for i, record in enumerate(records):
            out[i] = self.extract(record, history)
        return out


def extract_features(
    observation: Observation,
    history: HistoryIndex | None = None,
    feature_names: Sequence[str] = DEFAULT_FEATURES,
) -> list[float]:
    """Convenience wrapper: one vector with a throwaway extractor."""
    if history is None:
        history = HistoryIndex.empty(observation.timestamp)
    return FeatureExtractor(feature_names).extract(observation, history)
