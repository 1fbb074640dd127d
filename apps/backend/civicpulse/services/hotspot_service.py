"""
hotspot_service.py — Hotspot predictions for one or many locations.

For every location the service:
  1. targets now + timeframe (next-hour / next-day / next-week)
  2. gathers weather, events and demographics (each with a timeout + default)
  3. runs the active model
  4. attributes the result to four fixed-weight factors
  5. derives the trend from recent activity and a claimed accuracy from
     how much history exists within 1 km

A batch leases one model for its whole duration, so every prediction in
a cycle comes from the same model even if a retrain lands mid-cycle.
One location failing (bad context, model error) is logged and skipped.

predict_region() samples the centres of the H3 cells covering a box
(coarsened until the sample fits) and predicts them as one batch.

Results are cached per H3 cell + timeframe. A new prediction for a cell
replaces the old one; the cache is bounded with oldest-first eviction.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable

from civicpulse.ml.features import HistoryIndex, calculate_event_proximity, infer_historical_pattern
from civicpulse.ml.predictor import ActiveModel, ModelPredictor
from civicpulse.ml.training_store import TrainingDataStore
from civicpulse.models.common import Coordinate, RegionBounds
from civicpulse.models.observation import Observation
from civicpulse.models.prediction import (
    TIMEFRAME_OFFSETS_MS,
    HotspotPrediction,
    PredictionFactor,
    Timeframe,
)
from civicpulse.services.context_provider import ContextProvider
from civicpulse.services.geo import cell_for, sample_grid

logger = logging.getLogger(__name__)

ACCURACY_RADIUS_M = 1_000.0
ACCURACY_SAMPLE_SCALE = 100.0
FALLBACK_ACCURACY_CAP = 0.9
LEARNED_ACCURACY_CAP = 0.95
LEARNED_ACCURACY_BONUS = 0.1
TREND_THRESHOLD = 0.1

# name → weight; weights sum to 0.9
FACTOR_WEIGHTS = {
    "Time of Day":        0.30,
    "Weather":            0.20,
    "Nearby Events":      0.25,
    "Population Density": 0.15,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ── Pure helpers ──────────────────────────────────────────────────────────────

def calculate_factors(context: Observation) -> list[PredictionFactor]:
    hour = infer_historical_pattern(context.timestamp).hour_of_day
    factors = [
        PredictionFactor(
            name="Time of Day",
            weight=FACTOR_WEIGHTS["Time of Day"],
            value=hour,
            impact="positive" if 9 <= hour <= 17 else "negative",
        )
    ]
    if context.weather is not None:
        factors.append(PredictionFactor(
            name="Weather",
            weight=FACTOR_WEIGHTS["Weather"],
            value=context.weather.temperature,
            impact="positive" if context.weather.precipitation < 1 else "negative",
        ))
    proximity = calculate_event_proximity(context.events)
    factors.append(PredictionFactor(
        name="Nearby Events",
        weight=FACTOR_WEIGHTS["Nearby Events"],
        value=proximity,
        impact="positive" if proximity > 0.3 else "neutral",
    ))
    if context.demographics is not None:
        factors.append(PredictionFactor(
            name="Population Density",
            weight=FACTOR_WEIGHTS["Population Density"],
            value=context.demographics.density,
            impact="positive" if context.demographics.density > 200 else "neutral",
        ))
    return factors


def classify_trend(recent_trend: float) -> str:
    if recent_trend > TREND_THRESHOLD:
        return "increasing"
    if recent_trend < -TREND_THRESHOLD:
        return "decreasing"
    return "stable"


def claimed_accuracy(nearby_count: int, model_kind: str) -> float:
    base = min(nearby_count / ACCURACY_SAMPLE_SCALE, FALLBACK_ACCURACY_CAP)
    if model_kind == "learned":
        return min(base + LEARNED_ACCURACY_BONUS, LEARNED_ACCURACY_CAP)
    return max(0.0, base)


# ── Service ───────────────────────────────────────────────────────────────────

class HotspotPredictionService:
    def __init__(
        self,
        predictor: ModelPredictor,
        store: TrainingDataStore,
        context: ContextProvider,
        *,
        cache_size: int = 2_000,
        resolution: int = 8,
        clock_ms=_now_ms,
    ):
        self.predictor = predictor
        self.store = store
        self.context = context
        self.cache_size = cache_size
        self.resolution = resolution
        self._clock_ms = clock_ms
        self._cache: OrderedDict[str, HotspotPrediction] = OrderedDict()
        self.last_cycle_at: datetime | None = None
        self.cycles = 0

    async def generate_predictions(
        self,
        locations: Iterable[Coordinate],
        timeframe: Timeframe = "next-hour",
    ) -> list[HotspotPrediction]:
        """Predict every location with one leased model; sorted by confidence, best first."""
        locations = list(locations)
        now_ms = self._clock_ms()
        history = self.store.history(now_ms)

        with self.predictor.active_model() as model:
            results = await asyncio.gather(*(
                self._predict_location(model, location, timeframe, now_ms, history)
                for location in locations
            ))

        predictions = [p for p in results if p is not None]
        predictions.sort(key=lambda p: p.confidence, reverse=True)
        for prediction in predictions:
            self._remember(prediction)
        self.last_cycle_at = _utc(now_ms)
        self.cycles += 1
        logger.info(
            "Prediction batch: %d/%d locations (%s, %s model)",
            len(predictions), len(locations), timeframe, model.kind,
        )
        return predictions

    async def predict_region(
        self,
        bounds: RegionBounds,
        timeframe: Timeframe = "next-hour",
        max_locations: int = 64,
    ) -> list[HotspotPrediction]:
        """Predict on the H3 sampling grid covering `bounds`."""
        locations = sample_grid(bounds, self.resolution, max_locations)
        logger.debug("Region grid: %d sample locations", len(locations))
        return await self.generate_predictions(locations, timeframe)

    async def predict_single_location(
        self,
        location: Coordinate,
        timeframe: Timeframe = "next-hour",
    ) -> HotspotPrediction | None:
        now_ms = self._clock_ms()
        with self.predictor.active_model() as model:
            prediction = await self._predict_location(model, location, timeframe, now_ms, self.store.history(now_ms))
        if prediction is not None:
            self._remember(prediction)
        return prediction

    async def _predict_location(
        self,
        model: ActiveModel,
        location: Coordinate,
        timeframe: Timeframe,
        now_ms: int,
        history: HistoryIndex,
    ) -> HotspotPrediction | None:
        try:
            target_ms = now_ms + TIMEFRAME_OFFSETS_MS[timeframe]
            gathered = await self.context.gather(location, target_ms)
            context = Observation(
                timestamp=target_ms,
                location=location,
                value=0.0,
                weather=gathered.weather,
                events=gathered.events,
                demographics=gathered.demographics,
            )
            result = await self.predictor.predict_with(model, context, history)
            return HotspotPrediction(
                location=location,
                confidence=result.confidence,
                predicted_value=result.value,
                timeframe=timeframe,
                factors=calculate_factors(context),
                accuracy=claimed_accuracy(self.store.count_within(location, ACCURACY_RADIUS_M), result.model_kind),
                trend=classify_trend(history.recent_trend),
                model_kind=result.model_kind,
                target_time=_utc(target_ms),
                generated_at=_utc(now_ms),
            )
        except Exception as exc:
            logger.warning("Prediction failed for location %s (%s): %s", location, timeframe, exc)
            return None

    # ── Cache ─────────────────────────────────────────────────────────────────

    def _key(self, location: Coordinate, timeframe: str) -> str:
        return f"{cell_for(location, self.resolution)}:{timeframe}"

    def _remember(self, prediction: HotspotPrediction) -> None:
        key = self._key(prediction.location, prediction.timeframe)
        self._cache.pop(key, None)
        self._cache[key] = prediction
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def get_cached_predictions(
        self,
        bounds: RegionBounds | None = None,
        timeframe: Timeframe | None = None,
    ) -> list[HotspotPrediction]:
        predictions = [
            p for p in self._cache.values()
            if (bounds is None or bounds.contains(p.location))
            and (timeframe is None or p.timeframe == timeframe)
        ]
        return sorted(predictions, key=lambda p: p.confidence, reverse=True)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size_used(self) -> int:
        return len(self._cache)
