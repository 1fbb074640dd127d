"""
learned_model.py — Trainable feed-forward regressor (TensorFlow / Keras).

Architecture: Dense(64, relu) → Dropout(0.3) → Dense(32, relu) →
Dropout(0.2) → Dense(16, relu) → Dense(1, sigmoid), Adam + MSE with an
L2 kernel regularizer on the hidden layers. The sigmoid output is the
civic activity level divided by 100.

Lifecycle
─────────
  build_network(n)   → untrained Keras model (raises if TensorFlow is missing;
                       the predictor treats that as "learned model unavailable")
  clone_network(m)   → independent copy with the same weights, used to
                       warm-start a retrain without touching the live model
  fit_network(...)   → trains a model in place and returns a fresh min-max
                       scaler computed from that batch only
  LearnedModel(...)  → immutable trained handle: network + scaler + the
                       feature layout it was trained with. Readers take a
                       lease; retire() disposes it once the last lease ends,
                       so a retrain never pulls a model out from under an
                       in-flight predict().
  export_state()     → .keras bytes plus scaler lists; restore_learned(...)
                       rebuilds a LearnedModel from them through a
                       temporary .keras file

TensorFlow is imported lazily so the module can be imported (and the
fallback used) on machines without it.
"""

import logging
import math
import os
import tempfile
import threading
from dataclasses import dataclass
from typing import Any

import numpy as np

from civicpulse.ml.features import FeatureExtractor
from civicpulse.ml.resources import ResourceTracker

logger = logging.getLogger(__name__)


class ModelNotReadyError(RuntimeError):
    """Inference was requested from a model or predictor that has been torn down."""


class ModelArchiveError(ValueError):
    """An exported model could not be restored."""


TARGET_SCALE = 100.0
SCALER_EPSILON = 1e-8
TRAIN_FRACTION = 0.8
L2_PENALTY = 1e-3


def build_network(n_features: int) -> Any:
    from tensorflow import keras
    from tensorflow.keras import layers

    return keras.Sequential(
        [
            layers.Input(shape=(n_features,), name="features"),
            layers.Dense(64, activation="relu", kernel_regularizer=keras.regularizers.l2(L2_PENALTY)),
            layers.Dropout(0.3),
            layers.Dense(32, activation="relu", kernel_regularizer=keras.regularizers.l2(L2_PENALTY)),
            layers.Dropout(0.2),
            layers.Dense(16, activation="relu", kernel_regularizer=keras.regularizers.l2(L2_PENALTY)),
            layers.Dense(1, activation="sigmoid", name="activity"),
        ],
        name="civic_activity_regressor",
    )


def clone_network(network: Any) -> Any:
    from tensorflow import keras

    clone = keras.models.clone_model(network)
    clone.set_weights(network.get_weights())
    return clone


@dataclass
class FitResult:
    scaler_min:   Any            # tf.Tensor, shape (n_features,)
    scaler_range: Any            # tf.Tensor, shape (n_features,)
    train_loss:   float | None
    val_loss:     float | None
    epochs:       int
    n_train:      int
    n_val:        int


def fit_network(
    network: Any,
    features: np.ndarray,
    values: np.ndarray,
    tracker: ResourceTracker,
    *,
    epochs: int = 50,
    batch_size: int = 32,
    learning_rate: float = 0.001,
    seed: int | None = None,
) -> FitResult:
    """
    Train `network` in place on a chronologically ordered batch.

    Rows must already be sorted oldest → newest: the first 80 % train,
    the last 20 % validate. Keras shuffles the training split each epoch.
    Every tensor created here lives in a tracked scope and is released on
    exit, including when training raises.
    """
    import tensorflow as tf
    from tensorflow import keras

    n = len(features)
    if n == 0:
        raise ValueError("cannot fit on an empty batch")
    n_train = max(1, int(n * TRAIN_FRACTION))
    n_val = n - n_train

    if seed is not None:
        keras.utils.set_random_seed(seed)

    targets = np.clip(np.asarray(values, dtype=np.float32) / TARGET_SCALE, 0.0, 1.0)

    with tracker.scope("train") as scope:
        x = scope.track(tf.convert_to_tensor(features, dtype=tf.float32))
        y = scope.track(tf.reshape(tf.convert_to_tensor(targets, dtype=tf.float32), (-1, 1)))

        col_min = scope.track(tf.reduce_min(x, axis=0))
        col_range = scope.track(tf.reduce_max(x, axis=0) - col_min + SCALER_EPSILON)
        x_scaled = scope.track((x - col_min) / col_range)

        network.compile(optimizer=keras.optimizers.Adam(learning_rate=learning_rate), loss="mse")
        history = network.fit(
            x_scaled[:n_train],
            y[:n_train],
            validation_data=(x_scaled[n_train:], y[n_train:]) if n_val else None,
            epochs=epochs,
            batch_size=batch_size,
            shuffle=True,
            verbose=0,
        )

        losses = history.history
        train_loss = float(losses["loss"][-1]) if losses.get("loss") else None
        val_loss = float(losses["val_loss"][-1]) if losses.get("val_loss") else None
        logger.debug("fit: %d epochs, loss=%s val_loss=%s", epochs, train_loss, val_loss)

        result = FitResult(
            scaler_min=tf.identity(col_min),
            scaler_range=tf.identity(col_range),
            train_loss=train_loss,
            val_loss=val_loss,
            epochs=epochs,
            n_train=n_train,
            n_val=n_val,
        )
    return result


class LearnedModel:
    """Trained network + scaler. Immutable once built; disposed via retire()."""

    kind = "learned"

    def __init__(
        self,
        network: Any,
        scaler_min: Any,
        scaler_range: Any,
        extractor: FeatureExtractor,
        tracker: ResourceTracker,
    ):
        self.network = network
        self.extractor = extractor
        self._scaler_min = scaler_min
        self._scaler_range = scaler_range
        self._tracker = tracker
        self._handles = [
            tracker.acquire("model.network"),
            tracker.acquire("model.scaler_min"),
            tracker.acquire("model.scaler_range"),
        ]
        self._lock = threading.Lock()
        self._leases = 0
        self._retired = False
        self._disposed = False

    # ── Leasing ───────────────────────────────────────────────────────────────

    def acquire_lease(self) -> None:
        with self._lock:
            if self._disposed:
                raise ModelNotReadyError("learned model already disposed")
            self._leases += 1

    def release_lease(self) -> None:
        with self._lock:
            self._leases -= 1
            dispose_now = self._retired and self._leases == 0
        if dispose_now:
            self._dispose()

    def retire(self) -> None:
        with self._lock:
            self._retired = True
            dispose_now = self._leases == 0
        if dispose_now:
            self._dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        for handle in self._handles:
            self._tracker.release(handle)
        self._handles = []
        self.network = None
        self._scaler_min = None
        self._scaler_range = None

    # ── Inference ─────────────────────────────────────────────────────────────

    def predict(self, features: list[float]) -> tuple[float, float]:
        """(value 0–100, confidence 0–1). Blocking — run via asyncio.to_thread."""
        import tensorflow as tf

        network = self.network
        if network is None:
            raise ModelNotReadyError("learned model already disposed")

        with self._tracker.scope("predict") as scope:
            x = scope.track(tf.constant([features], dtype=tf.float32))
            scaled = scope.track((x - self._scaler_min) / self._scaler_range)
            out = scope.track(network(scaled, training=False))
            raw = float(tf.reshape(out, [-1])[0])

        if not math.isfinite(raw):
            raw = 0.0
        raw = min(max(raw, 0.0), 1.0)
        return raw * TARGET_SCALE, min(raw * 2, 1.0)

    # ── Export ────────────────────────────────────────────────────────────────

    def export_state(self) -> tuple[bytes, list[float], list[float]]:
        """(.keras bytes, scaler_min, scaler_range). Caller must hold a lease."""
        network = self.network
        if network is None:
            raise ModelNotReadyError("learned model already disposed")
        return (
            serialize_network(network),
            [float(v) for v in self._scaler_min.numpy()],
            [float(v) for v in self._scaler_range.numpy()],
        )


def release_backend_state() -> None:
    """Free Keras' global graph state once no model is left alive."""
    from tensorflow import keras

    keras.backend.clear_session()


def serialize_network(network: Any) -> bytes:
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "model.keras")
        network.save(path)
        with open(path, "rb") as fh:
            return fh.read()


def deserialize_network(payload: bytes) -> Any:
    from tensorflow import keras

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "model.keras")
        with open(path, "wb") as fh:
            fh.write(payload)
        return keras.models.load_model(path, compile=False)


def restore_learned(
    payload: bytes,
    scaler_min: list[float],
    scaler_range: list[float],
    extractor: FeatureExtractor,
    tracker: ResourceTracker,
) -> LearnedModel:
    """Rebuild a LearnedModel from export_state() output for the given feature layout."""
    import tensorflow as tf

    width = len(extractor)
    if len(scaler_min) != width or len(scaler_range) != width:
        raise ModelArchiveError(f"scaler has {len(scaler_min)} columns, feature layout has {width}")
    if any(r <= 0 for r in scaler_range):
        raise ModelArchiveError("scaler ranges must be positive")
    try:
        network = deserialize_network(payload)
    except Exception as exc:
        raise ModelArchiveError(f"network could not be loaded: {exc}") from exc
    if network.input_shape[-1] != width:
        raise ModelArchiveError(f"network expects {network.input_shape[-1]} features, layout has {width}")
    return LearnedModel(
        network,
        tf.constant(scaler_min, dtype=tf.float32),
        tf.constant(scaler_range, dtype=tf.float32),
        extractor,
        tracker,
    )
