"""
engine.py — The explicit state holder behind the API.

One HeatmapEngine is created per process and attached to app.state; routes
reach it through the get_engine dependency (overridable in tests). It owns:

  scheduler       deferred retrains, prediction cycles, subscription pruning
  store           bounded training buffer
  predictor       learned model + statistical fallback
  hotspots        prediction service and its per-cell cache
  subscriptions   realtime registry and routing
  points          current data points (bounded, oldest evicted first)
  clusters        current clusters, ids stable across recomputation
  anomalies       current anomalies

Ingestion path
──────────────
  ingest(observation) → training store → data point → recompute clusters
  and anomalies → publish data_update / cluster_update / anomaly_alert

Prediction cycle (every ModelConfig.update_frequency_ms)
────────────────────────────────────────────────────────
  locations = busiest cluster centroids + centre of every active
  subscription → one batch → one prediction_update per subscription
"""

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable

from motor.motor_asyncio import AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from civicpulse.core.config import settings
from civicpulse.core.database import OBSERVATIONS
from civicpulse.core.scheduler import TaskScheduler
from civicpulse.ml.learned_model import build_network
from civicpulse.ml.predictor import ModelPredictor
from civicpulse.ml.resources import ResourceTracker
from civicpulse.ml.training_store import TrainingDataStore
from civicpulse.models.common import RegionBounds
from civicpulse.models.heatmap import (
    CacheInfo,
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapConfig,
    HeatmapDataPoint,
    HeatmapMetadata,
    HeatmapSnapshot,
    PerformanceInfo,
)
from civicpulse.models.observation import ModelConfig, Observation, ObservationStats
from civicpulse.models.prediction import HotspotPrediction, Timeframe
from civicpulse.models.realtime import (
    AnomalyAlert,
    AnomalyAlertEvent,
    ClusterUpdate,
    ClusterUpdateEvent,
    DataUpdate,
    DataUpdateEvent,
    HeatmapFilters,
    PredictionUpdate,
    PredictionUpdateEvent,
    SystemStatus,
    SystemStatusEvent,
    UpdateEvent,
)
from civicpulse.services.aggregator import (
    build_data_point,
    cluster_points,
    detect_anomalies,
    freshness_at,
    reconcile_clusters,
    urgency_for,
)
from civicpulse.services.context_provider import ContextProvider
from civicpulse.services.hotspot_service import HotspotPredictionService
from civicpulse.services.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

PREDICTION_TASK = "prediction-cycle"
RETRAIN_CHECK_TASK = "retrain-check"
PRUNE_TASK = "subscription-prune"
RETRAIN_CHECK_SECONDS = 5.0
PRUNE_SECONDS = 60.0
MAX_CYCLE_CLUSTERS = 50

_PRIORITY = {"critical": "critical", "high": "high", "medium": "normal", "low": "low"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class HeatmapEngine:
    def __init__(
        self,
        *,
        scheduler: TaskScheduler | None = None,
        context: ContextProvider | None = None,
        model_config: ModelConfig | None = None,
        heatmap_config: HeatmapConfig | None = None,
        network_factory=build_network,
        tracker: ResourceTracker | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._clock_ms = clock_ms
        self.heatmap_config = heatmap_config or HeatmapConfig(
            resolution=settings.h3_resolution,
            max_points=settings.max_points,
        )
        self.scheduler = scheduler or TaskScheduler(tick_seconds=settings.scheduler_tick_seconds)
        self.store = TrainingDataStore(
            max_records=settings.max_training_records,
            retrain_every=settings.retrain_every,
            min_records=settings.min_training_records,
        )
        self.predictor = ModelPredictor(
            self.store,
            model_config,
            network_factory=network_factory,
            tracker=tracker,
            epochs=settings.training_epochs,
            batch_size=settings.training_batch_size,
            learning_rate=settings.learning_rate,
            clock_ms=clock_ms,
        )
        self.hotspots = HotspotPredictionService(
            self.predictor,
            self.store,
            context or ContextProvider(),
            cache_size=settings.prediction_cache_size,
            resolution=self.heatmap_config.resolution,
            clock_ms=clock_ms,
        )
        self.subscriptions = SubscriptionManager(
            retention_seconds=settings.subscription_retention_seconds,
            clock_ms=clock_ms,
        )
        self.points: OrderedDict[str, HeatmapDataPoint] = OrderedDict()
        self.clusters: list[HeatmapCluster] = []
        self.anomalies: list[HeatmapAnomaly] = []
        self.started = False

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock_ms() / 1000, tz=timezone.utc)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, run_loop: bool = True) -> None:
        """Initialise the predictor and queue periodic work. run_loop=False leaves ticking to the caller."""
        if self.started:
            return
        self.predictor.initialize()
        self.store.bind(self.predictor, self.scheduler, settings.retrain_delay_seconds)
        self._schedule_prediction_cycle()
        self.scheduler.call_every(RETRAIN_CHECK_SECONDS, self._check_pending_retraining, name=RETRAIN_CHECK_TASK)
        self.scheduler.call_every(PRUNE_SECONDS, self._prune, name=PRUNE_TASK)
        if run_loop:
            self.scheduler.start()
        self.started = True
        logger.info("Heatmap engine started (%s)", self.predictor.state.value)

    async def shutdown(self) -> None:
        if self.started:
            await self.publish(SystemStatusEvent(
                timestamp=self._now(),
                data=SystemStatus(status="shutting_down", message="Server is restarting"),
            ))
        await self.scheduler.stop()
        self.predictor.destroy()
        self.started = False
        logger.info("Heatmap engine stopped")

    def _schedule_prediction_cycle(self) -> None:
        self.scheduler.cancel_named(PREDICTION_TASK)
        self.scheduler.call_every(
            self.predictor.config.update_frequency_ms / 1000,
            self.run_prediction_cycle,
            name=PREDICTION_TASK,
        )

    async def _check_pending_retraining(self) -> None:
        self.store.check_pending_retraining()

    async def _prune(self) -> None:
        self.subscriptions.prune()

    async def warm_start(self, db: AsyncIOMotorDatabase | None) -> int:
        """Replay the most recent persisted observations. Publishes nothing."""
        if db is None:
            return 0
        try:
            cursor = db[OBSERVATIONS].find({}, {"_id": 0}).sort("timestamp", -1).limit(settings.warm_start_limit)
            docs = await cursor.to_list(length=settings.warm_start_limit)
        except Exception as exc:
            logger.warning("Warm start skipped, could not read observations: %s", exc)
            return 0

        observations: list[Observation] = []
        now = self._now()
        for doc in reversed(docs):
            try:
                observation = Observation.model_validate(doc)
            except ValueError as exc:
                logger.debug("Skipping malformed stored observation: %s", exc)
                continue
            observations.append(observation)
            self._add_point(build_data_point(
                observation,
                point_id=doc.get("pointId"),
                resolution=self.heatmap_config.resolution,
                now=now,
            ))

        loaded = self.store.load(observations)
        self._recompute()
        logger.info("Warm start: %d observation(s) replayed", loaded)
        if self.store.has_enough_data():
            self.store.request_retraining()
        return loaded

    # ── Ingestion ─────────────────────────────────────────────────────────────

    async def ingest(self, observation: Observation, db: AsyncIOMotorDatabase | None = None) -> HeatmapDataPoint:
        self.store.add_training_data(observation)
        point = build_data_point(observation, resolution=self.heatmap_config.resolution, now=self._now())
        evicted = self._add_point(point)

        if db is not None:
            await self._persist(db, observation, point)

        previous_anomaly_ids = {a.id for a in self.anomalies}
        previous_centroids = {c.id: c.centroid for c in self.clusters}
        cluster_update = self._recompute()

        await self.publish(DataUpdateEvent(
            timestamp=self._now(),
            affected_area=RegionBounds.around([point.location, *(p.location for p in evicted)]),
            data=DataUpdate(updated_points=[point], removed_point_ids=[p.id for p in evicted]),
        ))
        if cluster_update.added or cluster_update.updated or cluster_update.removed_ids:
            touched = [c.centroid for c in (*cluster_update.added, *cluster_update.updated)]
            touched += [previous_centroids[cid] for cid in cluster_update.removed_ids]
            await self.publish(ClusterUpdateEvent(
                timestamp=self._now(),
                affected_area=RegionBounds.around(touched),
                data=cluster_update,
            ))
        for anomaly in self.anomalies:
            if anomaly.id in previous_anomaly_ids:
                continue
            await self.publish(AnomalyAlertEvent(
                timestamp=self._now(),
                affected_area=RegionBounds.around([anomaly.location]),
                priority=_PRIORITY[anomaly.severity],
                data=AnomalyAlert(anomaly=anomaly, urgency=urgency_for(anomaly.severity)),
            ))
        return point

    def _add_point(self, point: HeatmapDataPoint) -> list[HeatmapDataPoint]:
        self.points[point.id] = point
        evicted = []
        while len(self.points) > self.heatmap_config.max_points:
            evicted.append(self.points.popitem(last=False)[1])
        return evicted

    async def _persist(self, db: AsyncIOMotorDatabase, observation: Observation, point: HeatmapDataPoint) -> None:
        doc = observation.model_dump(mode="json", by_alias=True)
        doc["pointId"] = point.id
        doc["geo"] = {"type": "Point", "coordinates": list(observation.location)}
        try:
            await db[OBSERVATIONS].insert_one(doc)
        except Exception as exc:
            logger.warning("Observation %s not persisted: %s", point.id, exc)

    def _recompute(self) -> ClusterUpdate:
        points = list(self.points.values())
        now = self._now()
        current = cluster_points(points, settings.cluster_radius_m, now=now)
        self.clusters, update = reconcile_clusters(self.clusters, current)
        self.anomalies = detect_anomalies(
            points,
            now=now,
            baseline_hours=settings.anomaly_baseline_hours,
            threshold=settings.anomaly_z_threshold,
            min_baseline=settings.anomaly_min_baseline,
        )
        return update

    # ── Realtime ──────────────────────────────────────────────────────────────

    async def publish(self, event: UpdateEvent) -> list[str]:
        return await self.subscriptions.on_update(event)

    def subscribe(self, region_id: str, bounds: RegionBounds, filters: HeatmapFilters | None = None, callback=None) -> str:
        return self.subscriptions.subscribe(region_id, bounds, filters, callback)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.subscriptions.unsubscribe(subscription_id)

    # ── Predictions ───────────────────────────────────────────────────────────

    async def run_prediction_cycle(self, timeframe: Timeframe = "next-hour") -> list[HotspotPrediction]:
        active = self.subscriptions.active()
        locations = [c.centroid for c in self.clusters[:MAX_CYCLE_CLUSTERS]]
        locations += [s.bounds.center for s in active]
        if not locations:
            return []

        predictions = await self.hotspots.generate_predictions(locations, timeframe)
        for subscription in active:
            await self.publish(PredictionUpdateEvent(
                subscription_id=subscription.id,
                region_id=subscription.region_id,
                timestamp=self._now(),
                affected_area=subscription.bounds,
                data=PredictionUpdate(predictions=[p for p in predictions if subscription.bounds.contains(p.location)]),
            ))
        return predictions

    def update_model_config(self, updates: dict) -> ModelConfig:
        previous_frequency = self.predictor.config.update_frequency_ms
        config = self.predictor.update_config(updates)
        if self.started and config.update_frequency_ms != previous_frequency:
            self._schedule_prediction_cycle()
        return config

    # ── Queries ───────────────────────────────────────────────────────────────

    def snapshot(self, bounds: RegionBounds | None = None, filters: HeatmapFilters | None = None) -> HeatmapSnapshot:
        started = time.perf_counter()
        now = self._now()
        config = self.heatmap_config

        def visible(location) -> bool:
            return bounds is None or bounds.contains(location)

        points = [
            p.model_copy(update={"freshness": freshness_at(p.timestamp, now)})
            for p in self.points.values()
            if visible(p.location) and (filters is None or filters.matches(p))
        ]
        clusters = [c for c in self.clusters if visible(c.centroid)] if config.show_clusters else []
        anomalies = [a for a in self.anomalies if visible(a.location)] if config.show_anomalies else []
        predictions = self.hotspots.get_cached_predictions(bounds) if config.show_predictions else []

        return HeatmapSnapshot(
            data_points=points,
            clusters=clusters,
            predictions=predictions,
            anomalies=anomalies,
            metadata=HeatmapMetadata(
                total_count=len(points),
                bounds=bounds or RegionBounds.around([p.location for p in points]),
                resolution=config.resolution,
                timestamp=now,
                cache_info=CacheInfo(
                    cached=bool(predictions),
                    prediction_entries=self.hotspots.cache_size_used,
                    last_cycle_at=self.hotspots.last_cycle_at,
                ),
                performance=PerformanceInfo(
                    query_time_ms=(time.perf_counter() - started) * 1000,
                    point_count=len(points),
                ),
            ),
        )

    def stats(self) -> ObservationStats:
        return ObservationStats(
            total_ingested=self.store.total_added,
            buffered_records=len(self.store),
            points=len(self.points),
            clusters=len(self.clusters),
            anomalies=len(self.anomalies),
            active_subscriptions=len(self.subscriptions.active()),
            prediction_cycles=self.hotspots.cycles,
        )


def get_engine(conn: HTTPConnection) -> HeatmapEngine:
    """FastAPI dependency for both HTTP routes and the WebSocket stream."""
    return conn.app.state.engine
