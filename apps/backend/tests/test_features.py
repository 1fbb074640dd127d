"""
test_features.py — Feature vector layout, normalisation and history aggregates.

NOW_MS is Sunday 2025-10-19 12:00 UTC, so an observation at NOW has
hour 12, day_of_week 0 (Sunday) and month 10.
"""

import math

import pytest

from conftest import NOW_MS
from civicpulse.ml.features import (
    FeatureExtractor,
    HistoryIndex,
    calculate_event_proximity,
    extract_features,
    infer_historical_pattern,
)
from civicpulse.models.observation import (
    DEFAULT_FEATURES,
    Demographics,
    EventInfo,
    HistoricalPattern,
    Weather,
)


class TestHistoricalPattern:
    def test_inferred_fields(self):
        pattern = infer_historical_pattern(NOW_MS)
        assert pattern.hour_of_day == 12
        assert pattern.day_of_week == 0
        assert pattern.day_of_month == 19
        assert pattern.month == 10
        assert pattern.season == "fall"
        assert pattern.is_weekend is True
        assert pattern.is_holiday is False

    def test_christmas_is_holiday(self):
        christmas = 1_766_664_000_000   # 2025-12-25 12:00 UTC
        pattern = infer_historical_pattern(christmas)
        assert pattern.is_holiday is True
        assert pattern.season == "winter"


class TestEventProximity:
    def test_no_events(self):
        assert calculate_event_proximity([]) == 0.0

    def test_adjacent_large_event_saturates(self):
        assert calculate_event_proximity([EventInfo(distance=0, capacity=1_000)]) == 1.0

    def test_distance_and_capacity_scale(self):
        event = EventInfo(distance=2_500, capacity=500)
        assert calculate_event_proximity([event]) == pytest.approx(0.25)

    def test_far_event_has_no_influence(self):
        assert calculate_event_proximity([EventInfo(distance=6_000, capacity=5_000)]) == 0.0

    def test_sum_is_clamped(self):
        events = [EventInfo(distance=0, capacity=800)] * 3
        assert calculate_event_proximity(events) == 1.0


class TestExtraction:
    def test_default_vector_without_context(self, make_observation):
        vector = extract_features(make_observation())
        assert len(vector) == len(DEFAULT_FEATURES)
        assert vector == pytest.approx([
            12 / 24,                  # hour_of_day
            0.0,                      # day_of_week (Sunday)
            10 / 12,                  # month
            20 / 40,                  # default temperature
            0.0,                      # default precipitation
            math.log10(101) / 5,      # default density 100
            0.0,                      # no events
            0.5,                      # neutral historical average
            0.0,                      # no trend
        ])

    def test_context_blocks_are_used(self, make_observation):
        obs = make_observation(
            weather=Weather(temperature=30, precipitation=10),
            demographics=Demographics(density=9_999),
            events=(EventInfo(distance=0, capacity=1_000),),
        )
        names = ["temperature", "precipitation", "population_density", "distance_to_events"]
        vector = extract_features(obs, feature_names=names)
        assert vector == pytest.approx([0.75, 0.1, 4 / 5, 1.0])

    def test_explicit_historical_pattern_wins(self, make_observation):
        pattern = HistoricalPattern(
            hour_of_day=6, day_of_week=3, day_of_month=1, month=3, season="spring",
        )
        vector = extract_features(make_observation(historical=pattern), feature_names=["hour_of_day", "day_of_week", "month"])
        assert vector == pytest.approx([6 / 24, 3 / 7, 3 / 12])

    def test_vector_follows_configured_order(self, make_observation):
        obs = make_observation(weather=Weather(temperature=40))
        assert extract_features(obs, feature_names=["temperature", "hour_of_day"]) == pytest.approx([1.0, 0.5])

    def test_unknown_feature_rejected(self):
        with pytest.raises(ValueError, match="unknown feature"):
            FeatureExtractor(["hour_of_day", "moon_phase"])

    def test_matrix_shape(self, make_observation):
        extractor = FeatureExtractor()
        records = [make_observation(minutes_ago=i * 60) for i in range(5)]
        matrix = extractor.matrix(records, HistoryIndex(records, NOW_MS))
        assert matrix.shape == (5, len(DEFAULT_FEATURES))
        assert str(matrix.dtype) == "float32"


class TestHistoryIndex:
    def test_average_uses_same_weekday_within_two_hours(self, make_observation):
        records = [
            make_observation(value=80, minutes_ago=60),     # Sunday 11:00
            make_observation(value=60, minutes_ago=-120),   # Sunday 14:00
            make_observation(value=0, minutes_ago=-180),    # Sunday 15:00, outside ±2 h
            make_observation(value=0, minutes_ago=24 * 60), # Saturday 12:00
        ]
        history = HistoryIndex(records, NOW_MS)
        assert history.historical_average(infer_historical_pattern(NOW_MS)) == pytest.approx(0.7)

    def test_no_matching_history_is_neutral(self, make_observation):
        history = HistoryIndex([make_observation(value=90, minutes_ago=24 * 60)], NOW_MS)
        assert history.historical_average(infer_historical_pattern(NOW_MS)) == 0.5

    def test_recent_trend(self, make_observation):
        records = [make_observation(value=v, minutes_ago=m) for v, m in ((10, 400), (20, 300), (30, 200), (40, 100))]
        assert HistoryIndex(records, NOW_MS).recent_trend == pytest.approx(0.2)

    def test_trend_ignores_records_older_than_a_week(self, make_observation):
        records = [
            make_observation(value=100, minutes_ago=8 * 24 * 60),
            make_observation(value=10, minutes_ago=60),
        ]
        assert HistoryIndex(records, NOW_MS).recent_trend == 0.0

    def test_historical_feature_reads_index(self, make_observation):
        records = [make_observation(value=30, minutes_ago=30)]
        vector = FeatureExtractor(["historical_avg"]).extract(make_observation(), HistoryIndex(records, NOW_MS))
        assert vector == pytest.approx([0.3])
