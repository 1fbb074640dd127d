"""
predictor.py — Model trainer / predictor state machine.

States
──────
  UNINITIALIZED ─initialize()─▶ READY_FALLBACK ─train()─▶ TRAINING ─▶ READY_LEARNED
                                     ▲                                    │
                                     └──────────── destroy() ◀────────────┘

initialize() builds the learned network once through `network_factory`.
If that fails (TensorFlow missing, bad factory) the predictor stays on the
statistical fallback permanently and logs once; only reinitialize()
retries. Until the first successful training run the fallback answers,
even when the learned network exists.

Exactly one model answers any predict() call. The active model is resolved
under a lock and leased for the duration of the call (or of a whole
prediction cycle via active_model()), so a retrain that finishes mid-call
swaps the reference for later callers while the in-flight call finishes on
the model it started with. Retired learned models are disposed when their
last lease ends.

Training and learned inference run in worker threads (asyncio.to_thread)
so the event loop never blocks on TensorFlow.

export_model() and import_model() move the fallback tables, the learned
network and its scaler in and out as one ModelArchive.
"""

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Union

import numpy as np

from civicpulse.ml.fallback_model import FallbackModel, FallbackTables
from civicpulse.ml.features import FeatureExtractor, HistoryIndex
from civicpulse.ml.learned_model import (
    LearnedModel,
    ModelNotReadyError,
    build_network,
    clone_network,
    fit_network,
    release_backend_state,
    restore_learned,
)
from civicpulse.ml.resources import ResourceTracker
from civicpulse.ml.training_store import TrainingDataStore
from civicpulse.models.observation import ModelConfig, Observation
from civicpulse.models.prediction import (
    FallbackArchive,
    LearnedArchive,
    ModelArchive,
    ModelStatus,
    TrainingReport,
)

logger = logging.getLogger(__name__)

ActiveModel = Union[LearnedModel, FallbackModel]


class PredictorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY_LEARNED = "ready_learned"
    READY_FALLBACK = "ready_fallback"
    TRAINING = "training"


@dataclass(frozen=True)
class Prediction:
    value:      float    # 0–100
    confidence: float    # 0–1
    model_kind: str      # "learned" | "fallback"


def _clamp(value: float, lo: float, hi: float) -> float:
    if value != value:   # NaN
        return lo
    return min(max(value, lo), hi)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ModelPredictor:
    def __init__(
        self,
        store: TrainingDataStore,
        config: ModelConfig | None = None,
        *,
        network_factory: Callable[[int], Any] = build_network,
        tracker: ResourceTracker | None = None,
        epochs: int = 50,
        batch_size: int = 32,
        learning_rate: float = 0.001,
        seed: int | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.config = config or ModelConfig()
        self.tracker = tracker or ResourceTracker()
        self.epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.seed = seed
        self._network_factory = network_factory
        self._clock_ms = clock_ms

        self._swap_lock = threading.Lock()
        self._initialized = False
        self._destroyed = False
        self._learned_available = False
        self._seed_network: Any = None
        self._seed_handle: int | None = None
        self._learned: LearnedModel | None = None
        self._fallback = FallbackModel()
        self._extractor = FeatureExtractor(self.config.features)
        self._generation = 0
        self._is_training = False

        self.training_runs = 0
        self.last_report: TrainingReport | None = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._destroyed = False
        self._extractor = FeatureExtractor(self.config.features)
        self._build_seed_network()

    def reinitialize(self) -> None:
        """Drop every model and retry constructing the learned network."""
        self._discard_models()
        self._initialized = False
        self.initialize()

    def destroy(self) -> None:
        """
        Dispose every model and the scaler tensors. Inference raises
        ModelNotReadyError until initialize() or reinitialize() is called.
        """
        had_network = self._learned_available
        self._discard_models()
        self._fallback = FallbackModel()
        self._initialized = False
        self._destroyed = True
        self.last_report = None

        live = self.tracker.live_count()
        if live:
            # a leased model is still finishing a call; it disposes itself on release
            logger.warning("Predictor destroyed with %d live resource(s): %s", live, self.tracker.live_labels())
            return
        if had_network:
            try:
                release_backend_state()
            except Exception as exc:
                logger.warning("Could not clear the Keras session: %s", exc)
        logger.info("Predictor destroyed, all model resources released")

    def _build_seed_network(self) -> None:
        try:
            self._seed_network = self._network_factory(len(self._extractor))
            self._seed_handle = self.tracker.acquire("model.initial_network")
            self._learned_available = True
            logger.info("Learned model constructed (%d features)", len(self._extractor))
        except Exception as exc:
            self._seed_network = None
            self._learned_available = False
            logger.warning("Learned model unavailable, using statistical fallback permanently: %s", exc)

    def _discard_models(self) -> None:
        with self._swap_lock:
            self._generation += 1
            learned, self._learned = self._learned, None
            seed_handle, self._seed_handle = self._seed_handle, None
            self._seed_network = None
        if learned is not None:
            learned.retire()
        if seed_handle is not None:
            self.tracker.release(seed_handle)

    # ── Config ────────────────────────────────────────────────────────────────

    def update_config(self, updates: dict) -> ModelConfig:
        """
        Merge known keys into the config. Unknown keys are ignored.
        A changed feature list invalidates the learned model (input width).
        """
        merged = self.config.model_dump()
        known = set(ModelConfig.model_fields)
        aliases = {f.alias: name for name, f in ModelConfig.model_fields.items() if f.alias}
        for key, value in updates.items():
            name = aliases.get(key, key)
            if name in known:
                merged[name] = value
        new_config = ModelConfig.model_validate(merged)

        features_changed = new_config.features != self.config.features
        self.config = new_config
        if features_changed:
            was_initialized = self._initialized
            self._discard_models()
            self._extractor = FeatureExtractor(new_config.features)
            if was_initialized and self._learned_available:
                self._build_seed_network()
            logger.info("Feature layout changed to %s; learned model reset", new_config.features)
        return new_config

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def is_training(self) -> bool:
        return self._is_training

    @property
    def learned_available(self) -> bool:
        return self._learned_available

    @property
    def uses_learned_model(self) -> bool:
        return self._learned is not None

    @property
    def state(self) -> PredictorState:
        if not self._initialized:
            return PredictorState.UNINITIALIZED
        if self._is_training:
            return PredictorState.TRAINING
        return PredictorState.READY_LEARNED if self._learned is not None else PredictorState.READY_FALLBACK

    def status(self) -> ModelStatus:
        active = None
        if self._initialized:
            active = "learned" if self._learned is not None else "fallback"
        return ModelStatus(
            state=self.state.value,
            active_model=active,
            learned_available=self._learned_available,
            is_training=self._is_training,
            training_runs=self.training_runs,
            live_resources=self.tracker.live_count(),
            buffered_records=len(self.store),
            retrain_pending=self.store.retrain_pending,
            last_training=self.last_report,
        )

    # ── Training ──────────────────────────────────────────────────────────────

    async def train(self) -> bool:
        """
        Retrain from a snapshot of the store. Returns True if a run happened.

        A call while another run is in flight, or with fewer than the
        minimum number of records, is a no-op.
        """
        if self._is_training:
            logger.debug("train() ignored: a training run is already in progress")
            return False
        if self._destroyed:
            logger.debug("train() ignored: predictor has been destroyed")
            return False
        if not self.store.has_enough_data():
            logger.debug("train() skipped: %d/%d records", len(self.store), self.store.min_records)
            return False

        self._is_training = True
        try:
            self.initialize()
            snapshot = self.store.snapshot()
            report = await asyncio.to_thread(self._train_sync, snapshot, self._clock_ms(), self._generation)
            self.training_runs += 1
            self.last_report = report
            logger.info(
                "Training run %d finished: %d samples, learned=%s, loss=%s, val_loss=%s (%.0f ms)",
                self.training_runs, report.samples, report.learned,
                report.train_loss, report.val_loss, report.duration_ms,
            )
            return True
        finally:
            self._is_training = False

    def _train_sync(self, snapshot: tuple[Observation, ...], now_ms: int, generation: int) -> TrainingReport:
        started = time.perf_counter()
        records = sorted(snapshot, key=lambda o: o.timestamp)
        fallback = FallbackModel(FallbackTables.from_records(records))

        learned: LearnedModel | None = None
        fit = None
        if self._learned_available:
            extractor = self._extractor
            try:
                history = HistoryIndex(records, now_ms)
                features = extractor.matrix(records, history)
                values = np.array([o.value for o in records], dtype=np.float32)
                network = self._next_network()
                fit = fit_network(
                    network, features, values, self.tracker,
                    epochs=self.epochs,
                    batch_size=self.batch_size,
                    learning_rate=self.learning_rate,
                    seed=self.seed,
                )
                learned = LearnedModel(network, fit.scaler_min, fit.scaler_range, extractor, self.tracker)
            except Exception as exc:
                logger.error("Learned model training failed, keeping previous model: %s", exc)
                learned = None
                fit = None

        self._install(fallback, learned, generation)
        return TrainingReport(
            samples=len(records),
            train_samples=fit.n_train if fit else 0,
            val_samples=fit.n_val if fit else 0,
            epochs=fit.epochs if fit else 0,
            train_loss=fit.train_loss if fit else None,
            val_loss=fit.val_loss if fit else None,
            learned=learned is not None,
            duration_ms=(time.perf_counter() - started) * 1000,
            completed_at=datetime.now(tz=timezone.utc),
        )

    def _next_network(self) -> Any:
        """Warm-start copy of the current weights; never trains the live network."""
        with self._swap_lock:
            source = self._learned.network if self._learned is not None else self._seed_network
        if source is None:
            raise RuntimeError("no network to train")
        return clone_network(source)

    def _install(self, fallback: FallbackModel, learned: LearnedModel | None, generation: int) -> None:
        outgoing: LearnedModel | None = None
        with self._swap_lock:
            if generation != self._generation:
                outgoing = learned   # destroyed or reconfigured mid-run
            else:
                self._fallback = fallback
                if learned is not None:
                    outgoing, self._learned = self._learned, learned
        if outgoing is not None:
            outgoing.retire()


    # ── Export / import ───────────────────────────────────────────────────────

    async def export_model(self) -> ModelArchive:
        """Snapshot the fallback tables and, when trained, the learned network and scaler."""
        if self._destroyed:
            raise ModelNotReadyError("predictor has been destroyed; call initialize() first")
        self.initialize()
        with self._swap_lock:
            fallback, learned = self._fallback, self._learned
            if learned is not None:
                learned.acquire_lease()
        learned_archive = None
        if learned is not None:
            try:
                network, scaler_min, scaler_range = await asyncio.to_thread(learned.export_state)
            finally:
                learned.release_lease()
            learned_archive = LearnedArchive(network=network, scaler_min=scaler_min, scaler_range=scaler_range)
        tables = fallback.tables
        return ModelArchive(
            exported_at=datetime.fromtimestamp(self._clock_ms() / 1000, tz=timezone.utc),
            features=list(learned.extractor.feature_names if learned is not None else self.config.features),
            fallback=FallbackArchive(hourly=tables.hourly, daily=tables.daily, samples=tables.samples),
            learned=learned_archive,
        )

    async def import_model(self, archive: ModelArchive) -> None:
        """
        Replace both models with the archive's. The feature list is adopted
        from the archive. A training run already in flight is discarded when
        it finishes. Without TensorFlow only the fallback tables are imported.
        """
        if self._destroyed:
            raise ModelNotReadyError("predictor has been destroyed; call initialize() first")
        if archive.features != self.config.features:
            self.update_config({"features": archive.features})
        self.initialize()

        learned: LearnedModel | None = None
        if archive.learned is not None:
            if self._learned_available:
                learned = await asyncio.to_thread(
                    restore_learned,
                    archive.learned.network,
                    archive.learned.scaler_min,
                    archive.learned.scaler_range,
                    self._extractor,
                    self.tracker,
                )
            else:
                logger.warning("Imported archive has a learned model but none can be built here; using its fallback tables")
        fallback = FallbackModel(FallbackTables(
            hourly=dict(archive.fallback.hourly),
            daily=dict(archive.fallback.daily),
            samples=archive.fallback.samples,
        ))

        with self._swap_lock:
            self._generation += 1
            outgoing, self._learned = self._learned, learned
            self._fallback = fallback
        if outgoing is not None:
            outgoing.retire()
        logger.info("Model imported (learned=%s, %d fallback samples)", learned is not None, fallback.tables.samples)
    # ── Inference ─────────────────────────────────────────────────────────────

    @contextmanager
    def active_model(self) -> Iterator[ActiveModel]:
        """Lease the authoritative model; it cannot be disposed until the block exits."""
        if self._destroyed:
            raise ModelNotReadyError("predictor has been destroyed; call initialize() first")
        self.initialize()
        with self._swap_lock:
            model: ActiveModel = self._learned if self._learned is not None else self._fallback
            model.acquire_lease()
        try:
            yield model
        finally:
            model.release_lease()

    async def predict(self, context: Observation, history: HistoryIndex | None = None) -> Prediction:
        with self.active_model() as model:
            return await self.predict_with(model, context, history)

    async def predict_with(
        self,
        model: ActiveModel,
        context: Observation,
        history: HistoryIndex | None = None,
    ) -> Prediction:
        if isinstance(model, LearnedModel):
            if history is None:
                history = self.store.history(self._clock_ms())
            features = model.extractor.extract(context, history)
            value, confidence = await asyncio.to_thread(model.predict, features)
        else:
            value, confidence = model.predict(context)
        return Prediction(
            value=_clamp(value, 0.0, 100.0),
            confidence=_clamp(confidence, 0.0, 1.0),
            model_kind=model.kind,
        )
