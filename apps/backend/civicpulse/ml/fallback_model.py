"""
fallback_model.py — Deterministic statistical predictor.

Trained tables are the mean observed value per hour-of-day and per
day-of-week over the whole buffer (no split). Prediction blends them
0.6 / 0.4 and applies fixed context multipliers:

  precipitation > 5 mm            × 0.7
  temperature < 5 °C or > 35 °C   × 0.8
  nearby events                   × (1 + proximity · 0.5)

then clamps to [0, 100]. Confidence is a constant 0.6.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Sequence

from civicpulse.ml.features import (
    calculate_event_proximity,
    hour_and_weekday,
    precipitation_of,
    temperature_of,
)
from civicpulse.models.observation import Observation

DEFAULT_AVERAGE = 50.0
HOURLY_WEIGHT = 0.6
DAILY_WEIGHT = 0.4
FALLBACK_CONFIDENCE = 0.6

RAIN_THRESHOLD_MM = 5.0
RAIN_FACTOR = 0.7
COLD_LIMIT_C = 5.0
HOT_LIMIT_C = 35.0
EXTREME_TEMPERATURE_FACTOR = 0.8
EVENT_BOOST = 0.5


@dataclass(frozen=True)
class FallbackTables:
    hourly:  dict[int, float] = field(default_factory=dict)   # hour 0–23 → mean value
    daily:   dict[int, float] = field(default_factory=dict)   # weekday 0–6 → mean value
    samples: int = 0

    @classmethod
    def from_records(cls, records: Sequence[Observation]) -> "FallbackTables":
        hour_sums: dict[int, float] = defaultdict(float)
        hour_counts: dict[int, int] = defaultdict(int)
        day_sums: dict[int, float] = defaultdict(float)
        day_counts: dict[int, int] = defaultdict(int)
        for record in records:
            hour, weekday = hour_and_weekday(record)
            hour_sums[hour] += record.value
            hour_counts[hour] += 1
            day_sums[weekday] += record.value
            day_counts[weekday] += 1
        return cls(
            hourly={h: hour_sums[h] / hour_counts[h] for h in hour_counts},
            daily={d: day_sums[d] / day_counts[d] for d in day_counts},
            samples=len(records),
        )


class FallbackModel:
    kind = "fallback"

    def __init__(self, tables: FallbackTables | None = None):
        self.tables = tables or FallbackTables()

    def acquire_lease(self) -> None:
        pass

    def release_lease(self) -> None:
        pass

    def predict(self, context: Observation) -> tuple[float, float]:
        hour, weekday = hour_and_weekday(context)
        hourly = self.tables.hourly.get(hour, DEFAULT_AVERAGE)
        daily = self.tables.daily.get(weekday, DEFAULT_AVERAGE)
        value = HOURLY_WEIGHT * hourly + DAILY_WEIGHT * daily

        if precipitation_of(context) > RAIN_THRESHOLD_MM:
            value *= RAIN_FACTOR
        temperature = temperature_of(context)
        if temperature < COLD_LIMIT_C or temperature > HOT_LIMIT_C:
            value *= EXTREME_TEMPERATURE_FACTOR
        value *= 1 + calculate_event_proximity(context.events) * EVENT_BOOST

        return min(max(value, 0.0), 100.0), FALLBACK_CONFIDENCE
