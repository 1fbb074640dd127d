"""
training_store.py — Bounded, append-only buffer of observations.

The store is the only structure written by both ingestion and training.
Ingestion appends; training only ever reads a snapshot() (an immutable
tuple copy), so observations arriving during a multi-second training run
never alter the in-flight batch.

Retraining cadence: every `retrain_every` insertions (counted over the
store's lifetime, not the current length) a retrain is queued on the core
scheduler after a short delay. If a run is already in progress the request
is remembered in `retrain_pending` and picked up by the next scheduled
check instead of starting a parallel run.
"""

import logging
from collections import deque
from typing import Awaitable, Iterable, Protocol

from civicpulse.core.scheduler import TaskScheduler
from civicpulse.ml.features import HistoryIndex
from civicpulse.models.common import Coordinate
from civicpulse.models.observation import Observation
from civicpulse.services.geo import haversine_m

logger = logging.getLogger(__name__)

RETRAIN_TASK = "retrain"


class Trainer(Protocol):
    @property
    def is_training(self) -> bool: ...

    def train(self) -> Awaitable[bool]: ...


class TrainingDataStore:
    def __init__(
        self,
        max_records: int = 10_000,
        retrain_every: int = 100,
        min_records: int = 100,
    ):
        self.max_records = max_records
        self.retrain_every = retrain_every
        self.min_records = min_records
        self.retrain_pending = False
        self._buffer: deque[Observation] = deque(maxlen=max_records)
        self._total_added = 0
        self._trainer: Trainer | None = None
        self._scheduler: TaskScheduler | None = None
        self._retrain_delay = 1.0
        self._history: HistoryIndex | None = None
        self._history_key: tuple[int, int] | None = None

    def bind(self, trainer: Trainer, scheduler: TaskScheduler, retrain_delay: float = 1.0) -> None:
        self._trainer = trainer
        self._scheduler = scheduler
        self._retrain_delay = retrain_delay

    # ── Writes ────────────────────────────────────────────────────────────────

    def add_training_data(self, observation: Observation) -> None:
        self._buffer.append(observation)   # deque(maxlen) drops the oldest
        self._total_added += 1
        if self._total_added % self.retrain_every == 0:
            self.request_retraining()

    def load(self, observations: Iterable[Observation]) -> int:
        """Bulk replay (warm start). Does not trigger retraining."""
        count = 0
        for observation in observations:
            self._buffer.append(observation)
            count += 1
        self._total_added += count
        return count

    def clear(self) -> None:
        self._buffer.clear()
        self.retrain_pending = False
        self._history = None
        self._history_key = None

    # ── Retraining ────────────────────────────────────────────────────────────

    def request_retraining(self) -> None:
        if self._trainer is None or self._scheduler is None:
            return
        if self._scheduler.has_pending(RETRAIN_TASK):
            return
        if self._trainer.is_training:
            self.retrain_pending = True
            logger.debug("Retrain requested while training, deferred to next check")
            return
        self._scheduler.call_later(self._retrain_delay, self._trainer.train, name=RETRAIN_TASK)
        logger.debug("Retrain scheduled in %.1fs (total observations: %d)", self._retrain_delay, self._total_added)

    def check_pending_retraining(self) -> bool:
        """Consume the pending flag if training has finished. Returns True if a retrain was queued."""
        if not self.retrain_pending or self._trainer is None or self._trainer.is_training:
            return False
        self.retrain_pending = False
        self.request_retraining()
        return True

    # ── Reads ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> tuple[Observation, ...]:
        return tuple(self._buffer)

    def history(self, now_ms: int) -> HistoryIndex:
        """HistoryIndex over the current snapshot, reused while nothing new arrives within the same minute."""
        key = (self._total_added, now_ms // 60_000)
        if self._history is None or self._history_key != key:
            self._history = HistoryIndex(self.snapshot(), now_ms)
            self._history_key = key
        return self._history

    def has_enough_data(self) -> bool:
        return len(self._buffer) >= self.min_records

    def count_within(self, location: Coordinate, radius_m: float) -> int:
        return sum(1 for obs in tuple(self._buffer) if haversine_m(obs.location, location) < radius_m)

    @property
    def total_added(self) -> int:
        return self._total_added

    def __len__(self) -> int:
        return len(self._buffer)
