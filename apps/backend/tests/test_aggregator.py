"""
test_aggregator.py — Data points, radius clustering, stable cluster ids,
change classification and z-score anomaly detection.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW_MS
from civicpulse.services.aggregator import (
    build_data_point,
    classify_cluster_changes,
    cluster_points,
    detect_anomalies,
    freshness_at,
    intensity_level,
    reconcile_clusters,
    severity_from_ratio,
    urgency_for,
)
from civicpulse.services.geo import haversine_m

NOW = datetime.fromtimestamp(NOW_MS / 1000, tz=timezone.utc)
M = 1 / 111_320   # ~one metre of latitude in degrees


@pytest.fixture()
def point(make_observation):
    def _point(point_id, value=50.0, north_m=0.0, minutes_ago=0, **kwargs):
        obs = make_observation(value=value, dlat=north_m * M, minutes_ago=minutes_ago, **kwargs)
        return build_data_point(obs, point_id=point_id, now=NOW)
    return _point


class TestLevels:
    @pytest.mark.parametrize("intensity,level", [
        (0.0, "low"), (0.25, "low"), (0.26, "medium"), (0.5, "medium"),
        (0.7, "high"), (0.75, "high"), (0.76, "critical"), (1.0, "critical"),
    ])
    def test_intensity_level(self, intensity, level):
        assert intensity_level(intensity) == level

    @pytest.mark.parametrize("ratio,severity", [(0.5, "low"), (1.5, "medium"), (2.5, "high"), (3.5, "critical")])
    def test_severity(self, ratio, severity):
        assert severity_from_ratio(ratio) == severity

    def test_urgency(self):
        assert urgency_for("critical") == "immediate"
        assert urgency_for("high") == "urgent"
        assert urgency_for("low") == "informational"


class TestDataPoint:
    def test_fields(self, point):
        p = point("p1", value=80)
        assert p.id == "p1"
        assert p.intensity == pytest.approx(0.8)
        assert p.intensity_level == "critical"
        assert p.risk_score == pytest.approx(0.8)
        assert p.timestamp == NOW
        assert p.freshness == 1.0
        assert len(p.h3_index) == 15

    def test_out_of_range_value_is_clamped_for_intensity_only(self, point):
        p = point("p1", value=140)
        assert p.value == 140
        assert p.intensity == 1.0

    def test_generated_id(self, make_observation):
        a = build_data_point(make_observation(), now=NOW)
        b = build_data_point(make_observation(), now=NOW)
        assert a.id != b.id

    def test_freshness_decays_over_a_week(self):
        assert freshness_at(NOW - timedelta(days=3.5), NOW) == pytest.approx(0.5)
        assert freshness_at(NOW - timedelta(days=10), NOW) == 0.0
        assert freshness_at(NOW + timedelta(hours=1), NOW) == 1.0


class TestClustering:
    def test_empty(self):
        assert cluster_points([]) == []

    def test_near_points_cluster_far_points_do_not(self, point):
        points = [point("a"), point("b", north_m=100), point("c", north_m=5_000)]
        clusters = cluster_points(points, 500, now=NOW)
        assert [c.point_count for c in clusters] == [2, 1]
        assert clusters[0].point_ids == ["a", "b"]
        assert clusters[1].point_ids == ["c"]

    def test_single_linkage_chains(self, point):
        points = [point("a"), point("b", north_m=400), point("c", north_m=800)]
        clusters = cluster_points(points, 500, now=NOW)
        assert len(clusters) == 1
        assert clusters[0].point_count == 3
        assert clusters[0].radius_m == pytest.approx(400, abs=2)

    def test_radius_controls_linkage(self, point):
        points = [point("a"), point("b", north_m=600), point("c", north_m=1_150)]
        assert [c.point_count for c in cluster_points(points, 500, now=NOW)] == [1, 1, 1]
        assert [c.point_count for c in cluster_points(points, 700, now=NOW)] == [3]

    def test_duplicate_locations_share_a_cluster(self, point):
        clusters = cluster_points([point("a"), point("b"), point("c")], 500, now=NOW)
        assert len(clusters) == 1
        assert clusters[0].radius_m == 0

    def test_every_point_in_exactly_one_cluster(self, point):
        points = [point(f"p{i}", north_m=i * 300 + (i // 4) * 2_000) for i in range(12)]
        clusters = cluster_points(points, 500, now=NOW)
        seen = [pid for c in clusters for pid in c.point_ids]
        assert sorted(seen) == sorted(p.id for p in points)

    def test_cluster_summary(self, point):
        points = [point("a", value=20), point("b", value=40, north_m=50)]
        cluster = cluster_points(points, 500, now=NOW)[0]
        assert cluster.id.startswith("cl_")
        assert cluster.average_value == pytest.approx(30)
        assert cluster.risk_level == "medium"
        assert haversine_m(cluster.centroid, points[0].location) == pytest.approx(25, abs=1)

    def test_singleton_density_uses_minimum_area(self, point):
        cluster = cluster_points([point("a")], 500, now=NOW)[0]
        assert cluster.radius_m == 0
        assert cluster.density == pytest.approx(1 / (3.141592653589793 * 50 ** 2 / 1e6))

    def test_trend_from_last_two_days(self, point):
        recent = [point(f"r{i}", north_m=i * 10, minutes_ago=60) for i in range(3)]
        older = [point("o1", north_m=30, minutes_ago=30 * 60)]
        cluster = cluster_points(recent + older, 500, now=NOW)[0]
        assert cluster.change_rate == pytest.approx(2.0)
        assert cluster.trend == "growing"

    def test_declining_trend(self, point):
        points = [point("r1", minutes_ago=60)] + [point(f"o{i}", north_m=i * 10, minutes_ago=30 * 60) for i in range(4)]
        assert cluster_points(points, 500, now=NOW)[0].trend == "declining"


class TestReconcile:
    def test_first_pass_is_all_new(self, point):
        current = cluster_points([point("a"), point("b", north_m=5_000)], 500, now=NOW)
        clusters, update = reconcile_clusters([], current)
        assert len(update.added) == 2
        assert {c.change_type for c in update.changes} == {"new_formation"}
        assert update.removed_ids == []

    def test_unchanged_clusters_keep_ids_and_report_nothing(self, point):
        points = [point("a"), point("b", north_m=100)]
        first, _ = reconcile_clusters([], cluster_points(points, 500, now=NOW))
        second, update = reconcile_clusters(first, cluster_points(points, 500, now=NOW))
        assert [c.id for c in second] == [c.id for c in first]
        assert update.added == [] and update.updated == [] and update.removed_ids == []
        assert update.changes == []

    def test_growth_keeps_id_and_reports_size_change(self, point):
        base = [point("a"), point("b", north_m=100)]
        first, _ = reconcile_clusters([], cluster_points(base, 500, now=NOW))
        grown = base + [point("c", north_m=450)]
        second, update = reconcile_clusters(first, cluster_points(grown, 500, now=NOW))
        assert second[0].id == first[0].id
        assert [c.id for c in update.updated] == [first[0].id]
        size = [c for c in update.changes if c.change_type == "size_change"]
        assert size and size[0].magnitude == pytest.approx(0.5)

    def test_risk_increase(self, point):
        low = [point("a", value=10), point("b", value=10, north_m=100)]
        first, _ = reconcile_clusters([], cluster_points(low, 500, now=NOW))
        hotter = low + [point("c", value=100, north_m=50), point("d", value=100, north_m=60)]
        changes = classify_cluster_changes(first, cluster_points(hotter, 500, now=NOW))
        assert "risk_increase" in {c.change_type for c in changes}

    def test_dissolution(self, point):
        points = [point("a"), point("b", north_m=5_000)]
        first, _ = reconcile_clusters([], cluster_points(points, 500, now=NOW))
        gone = next(c.id for c in first if "b" in c.point_ids)
        _, update = reconcile_clusters(first, cluster_points(points[:1], 500, now=NOW))
        assert update.removed_ids == [gone]
        assert [c.change_type for c in update.changes] == ["dissolution"]

    def test_merge_keeps_larger_ancestor(self, point):
        west = [point("a"), point("b", north_m=100), point("c", north_m=200)]
        east = [point("d", north_m=900)]
        first, _ = reconcile_clusters([], cluster_points(west + east, 500, now=NOW))
        big = next(c.id for c in first if c.point_count == 3)
        small = next(c.id for c in first if c.point_count == 1)

        bridge = [point("e", north_m=550)]
        merged, update = reconcile_clusters(first, cluster_points(west + east + bridge, 500, now=NOW))
        assert [c.id for c in merged] == [big]
        assert update.removed_ids == [small]


class TestAnomalies:
    def _baseline(self, point, n=10, value=50.0):
        return [point(f"b{i}", value=value, north_m=i * 10, minutes_ago=i * 60) for i in range(n)]

    def test_spike(self, point):
        points = self._baseline(point) + [point("spike", value=100)]
        anomalies = detect_anomalies(points, now=NOW)
        assert len(anomalies) == 1
        a = anomalies[0]
        assert a.id == "an_spike"
        assert a.point_id == "spike"
        assert a.anomaly_type == "spike"
        assert a.deviation_score == pytest.approx(3.162, abs=0.01)
        assert a.expected_value == pytest.approx(600 / 11)
        assert a.severity == "medium"
        assert a.confidence == 1.0
        assert a.potential_causes

    def test_drop(self, point):
        points = self._baseline(point) + [point("hole", value=0)]
        [anomaly] = detect_anomalies(points, now=NOW)
        assert anomaly.anomaly_type == "drop"

    def test_needs_minimum_baseline(self, point):
        points = self._baseline(point, n=3) + [point("spike", value=100)]
        assert detect_anomalies(points, now=NOW, min_baseline=5) == []

    def test_flat_baseline_has_no_anomalies(self, point):
        assert detect_anomalies(self._baseline(point), now=NOW) == []

    def test_old_points_are_outside_the_window(self, point):
        old = [point(f"old{i}", value=100, minutes_ago=200 * 60) for i in range(20)]
        points = old + self._baseline(point) + [point("spike", value=100)]
        anomalies = detect_anomalies(points, now=NOW, baseline_hours=168)
        assert [a.point_id for a in anomalies] == ["spike"]

    def test_threshold_is_respected(self, point):
        points = self._baseline(point) + [point("spike", value=100)]
        assert detect_anomalies(points, now=NOW, threshold=3.5) == []

    def test_sorted_by_deviation(self, point):
        points = self._baseline(point, n=30) + [point("big", value=100), point("small", value=85)]
        ids = [a.point_id for a in detect_anomalies(points, now=NOW)]
        assert ids == ["big", "small"]
