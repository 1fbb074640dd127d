"""
aggregator.py — Data points, clusters and anomalies from the current point set.

Reference policy
────────────────
Clusters   Single-linkage radius clustering: two points within `radius_m`
           of each other end up in the same cluster (DBSCAN, haversine
           metric, min_samples=1 so nothing is noise).
           Every point belongs to exactly one cluster, and an isolated
           point forms a singleton cluster.

Stable ids A recomputed cluster inherits the id of the previous cluster it
           shares the most points with, so clients can patch clusters in
           place. reconcile_clusters() also classifies what changed:
           new_formation, dissolution, risk_increase, risk_decrease,
           size_change.

Anomalies  z-score of each point against the mean / std of every point in
           the baseline window (default: last 168 h). |z| above the
           threshold (default 2.5) is flagged. Cluster membership plays
           no part.
"""

import logging
import math
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone

import numpy as np
from sklearn.cluster import DBSCAN

from civicpulse.models.common import Coordinate
from civicpulse.models.heatmap import (
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    IntensityLevel,
    Severity,
)
from civicpulse.models.observation import Observation
from civicpulse.models.realtime import ClusterChange, ClusterUpdate, Urgency
from civicpulse.services.geo import EARTH_RADIUS_M, cell_for, centroid, haversine_m

logger = logging.getLogger(__name__)

MIN_CLUSTER_AREA_RADIUS_M = 50.0
FRESHNESS_WINDOW = timedelta(days=7)
TREND_WINDOW = timedelta(hours=24)
TREND_THRESHOLD = 0.2
MAX_SEVERITY_RATIO = 4.0

_LEVEL_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}
_URGENCY: dict[str, Urgency] = {
    "critical": "immediate",
    "high":     "urgent",
    "medium":   "standard",
    "low":      "informational",
}


# ── Levels ────────────────────────────────────────────────────────────────────

def intensity_level(intensity: float) -> IntensityLevel:
    if intensity <= 0.25:
        return "low"
    if intensity <= 0.5:
        return "medium"
    if intensity <= 0.75:
        return "high"
    return "critical"


def severity_from_ratio(ratio: float) -> Severity:
    if ratio <= 1:
        return "low"
    if ratio <= 2:
        return "medium"
    if ratio <= 3:
        return "high"
    return "critical"


def urgency_for(severity: str) -> Urgency:
    return _URGENCY[severity]


# ── Points ────────────────────────────────────────────────────────────────────

def freshness_at(timestamp: datetime, now: datetime) -> float:
    """1.0 for a point reported now, decaying linearly to 0 over a week."""
    age = max((now - timestamp).total_seconds(), 0.0)
    return max(0.0, 1.0 - age / FRESHNESS_WINDOW.total_seconds())


def build_data_point(
    observation: Observation,
    *,
    point_id: str | None = None,
    resolution: int = 8,
    now: datetime | None = None,
) -> HeatmapDataPoint:
    now = now or datetime.now(tz=timezone.utc)
    timestamp = datetime.fromtimestamp(observation.timestamp / 1000, tz=timezone.utc)
    intensity = min(max(observation.value / 100.0, 0.0), 1.0)
    return HeatmapDataPoint(
        id=point_id or uuid.uuid4().hex,
        location=observation.location,
        h3_index=cell_for(observation.location, resolution),
        value=observation.value,
        intensity=intensity,
        intensity_level=intensity_level(intensity),
        risk_score=intensity,
        category=observation.category,
        timestamp=timestamp,
        freshness=freshness_at(timestamp, now),
    )


# ── Clustering ────────────────────────────────────────────────────────────────

def _cluster_labels(locations: list[Coordinate], radius_m: float) -> np.ndarray:
    # min_samples=1 makes every point a core point, so DBSCAN reduces to
    # single-linkage within eps and never labels noise.
    coords_rad = np.radians([[lat, lon] for lon, lat in locations])
    dbscan = DBSCAN(
        eps=radius_m / EARTH_RADIUS_M,
        min_samples=1,
        metric="haversine",
        algorithm="ball_tree",
    )
    return dbscan.fit(coords_rad).labels_


def cluster_points(
    points: list[HeatmapDataPoint],
    radius_m: float = 500.0,
    now: datetime | None = None,
) -> list[HeatmapCluster]:
    if not points:
        return []
    now = now or datetime.now(tz=timezone.utc)
    labels = _cluster_labels([p.location for p in points], radius_m)

    groups: dict[int, list[HeatmapDataPoint]] = defaultdict(list)
    for label, point in zip(labels, points):
        groups[int(label)].append(point)

    clusters = []
    taken: set[str] = set()
    for members in groups.values():
        cluster = _summarise(members, now)
        cluster_id = cluster.id
        suffix = 1
        while cluster_id in taken:
            suffix += 1
            cluster_id = f"{cluster.id}-{suffix}"
        taken.add(cluster_id)
        clusters.append(cluster.model_copy(update={"id": cluster_id}))
    clusters.sort(key=lambda c: (-c.point_count, c.id))
    return clusters


def _summarise(members: list[HeatmapDataPoint], now: datetime) -> HeatmapCluster:
    center = centroid([p.location for p in members])
    radius = max(haversine_m(center, p.location) for p in members)
    area_km2 = math.pi * max(radius, MIN_CLUSTER_AREA_RADIUS_M) ** 2 / 1e6
    average = sum(p.value for p in members) / len(members)

    recent = sum(1 for p in members if now - p.timestamp <= TREND_WINDOW)
    prior = sum(1 for p in members if TREND_WINDOW < now - p.timestamp <= 2 * TREND_WINDOW)
    change_rate = (recent - prior) / max(prior, 1)
    if change_rate > TREND_THRESHOLD:
        trend = "growing"
    elif change_rate < -TREND_THRESHOLD:
        trend = "declining"
    else:
        trend = "stable"

    return HeatmapCluster(
        id=f"cl_{cell_for(center, 9)}",
        centroid=center,
        radius_m=round(radius, 1),
        density=len(members) / area_km2,
        point_ids=sorted(p.id for p in members),
        point_count=len(members),
        average_value=average,
        risk_level=intensity_level(min(max(average / 100.0, 0.0), 1.0)),
        trend=trend,
        change_rate=change_rate,
    )


def reconcile_clusters(
    previous: list[HeatmapCluster],
    current: list[HeatmapCluster],
) -> tuple[list[HeatmapCluster], ClusterUpdate]:
    """Carry ids over from `previous` and describe the difference as a ClusterUpdate."""
    prev_by_id = {c.id: c for c in previous}
    owner = {pid: c.id for c in previous for pid in c.point_ids}
    claimed: set[str] = set()
    reconciled: list[HeatmapCluster] = []
    update = ClusterUpdate()

    # Larger clusters claim their ancestors first.
    for cluster in sorted(current, key=lambda c: (-c.point_count, c.id)):
        overlap = Counter(owner[p] for p in cluster.point_ids if p in owner)
        match = next((cid for cid, _ in overlap.most_common() if cid not in claimed), None)

        if match is None:
            cluster_id = cluster.id
            suffix = 1
            while cluster_id in claimed or cluster_id in prev_by_id:
                suffix += 1
                cluster_id = f"{cluster.id}-{suffix}"
            cluster = cluster.model_copy(update={"id": cluster_id})
            claimed.add(cluster_id)
            update.added.append(cluster)
            update.changes.append(ClusterChange(
                cluster_id=cluster_id,
                change_type="new_formation",
                magnitude=float(cluster.point_count),
                description=f"New cluster of {cluster.point_count} point(s)",
            ))
        else:
            claimed.add(match)
            cluster = cluster.model_copy(update={"id": match})
            old = prev_by_id[match]
            changes = _classify(old, cluster)
            if changes or old.point_ids != cluster.point_ids or old.average_value != cluster.average_value:
                update.updated.append(cluster)
            update.changes.extend(changes)
        reconciled.append(cluster)

    for cluster_id, old in prev_by_id.items():
        if cluster_id not in claimed:
            update.removed_ids.append(cluster_id)
            update.changes.append(ClusterChange(
                cluster_id=cluster_id,
                change_type="dissolution",
                magnitude=float(old.point_count),
                description=f"Cluster of {old.point_count} point(s) dissolved",
            ))

    reconciled.sort(key=lambda c: (-c.point_count, c.id))
    return reconciled, update


def classify_cluster_changes(
    previous: list[HeatmapCluster],
    current: list[HeatmapCluster],
) -> list[ClusterChange]:
    return reconcile_clusters(previous, current)[1].changes


def _classify(old: HeatmapCluster, new: HeatmapCluster) -> list[ClusterChange]:
    changes = []
    old_rank, new_rank = _LEVEL_RANK[old.risk_level], _LEVEL_RANK[new.risk_level]
    if new_rank != old_rank:
        changes.append(ClusterChange(
            cluster_id=new.id,
            change_type="risk_increase" if new_rank > old_rank else "risk_decrease",
            magnitude=abs(new.average_value - old.average_value),
            description=f"Risk {old.risk_level} → {new.risk_level}",
        ))
    if new.point_count != old.point_count:
        changes.append(ClusterChange(
            cluster_id=new.id,
            change_type="size_change",
            magnitude=(new.point_count - old.point_count) / max(old.point_count, 1),
            description=f"{old.point_count} → {new.point_count} point(s)",
        ))
    return changes


# ── Anomalies ─────────────────────────────────────────────────────────────────

def detect_anomalies(
    points: list[HeatmapDataPoint],
    *,
    now: datetime | None = None,
    baseline_hours: int = 168,
    threshold: float = 2.5,
    min_baseline: int = 5,
) -> list[HeatmapAnomaly]:
    now = now or datetime.now(tz=timezone.utc)
    cutoff = now - timedelta(hours=baseline_hours)
    window = [p for p in points if p.timestamp >= cutoff]
    if len(window) < min_baseline:
        return []

    values = np.array([p.value for p in window], dtype=np.float64)
    mean = float(values.mean())
    std = float(values.std())
    if std == 0.0:
        return []

    anomalies = []
    for point, value in zip(window, values):
        z = (float(value) - mean) / std
        if abs(z) <= threshold:
            continue
        kind = "spike" if z > 0 else "drop"
        anomalies.append(HeatmapAnomaly(
            id=f"an_{point.id}",
            point_id=point.id,
            location=point.location,
            anomaly_type=kind,
            severity=severity_from_ratio(min(abs(z) / threshold, MAX_SEVERITY_RATIO)),
            deviation_score=abs(z),
            expected_value=mean,
            actual_value=float(value),
            confidence=min(abs(z) / 3.0, 1.0),
            potential_causes=_potential_causes(point, kind, abs(z), threshold),
            detected_at=now,
        ))
    anomalies.sort(key=lambda a: a.deviation_score, reverse=True)
    return anomalies


def _potential_causes(point: HeatmapDataPoint, kind: str, z: float, threshold: float) -> list[str]:
    if kind == "spike":
        causes = [f"Sudden increase in {point.category} reports", "Incident or event nearby"]
    else:
        causes = ["Issue resolved in the area", "Reporting gap in the area"]
    if z > 2 * threshold:
        causes.append("Possible data-entry error")
    return causes
