"""
resources.py — Accounting for tensors created by training and inference.

TensorFlow frees an eager tensor once nothing references it, but long-lived
references (a closure, a cached batch, an exception traceback) keep it
alive across cycles. Every tensor the model code creates is therefore
acquired through a ResourceTracker: either inside a scope (released when
the scope exits, on success or error) or as a persistent handle owned by
a model and released when that model is disposed.

live_count() is the resource-count API: after destroy() it is back at zero
and the predictor clears the Keras session, which frees the graph state
the networks themselves hold.

    with tracker.scope("train") as scope:
        x = scope.track(tf.convert_to_tensor(features))
        ...
    # every tracked tensor released here
"""

import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class ResourceScope:
    def __init__(self, tracker: "ResourceTracker", label: str):
        self._tracker = tracker
        self.label = label
        self._held: dict[int, Any] = {}

    def track(self, tensor: Any) -> Any:
        handle = self._tracker.acquire(self.label)
        self._held[handle] = tensor
        return tensor

    def close(self) -> None:
        for handle in list(self._held):
            self._tracker.release(handle)
        self._held.clear()

    def __len__(self) -> int:
        return len(self._held)


class ResourceTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._live: dict[int, str] = {}
        self._ids = itertools.count(1)
        self.peak = 0

    def acquire(self, label: str) -> int:
        with self._lock:
            handle = next(self._ids)
            self._live[handle] = label
            self.peak = max(self.peak, len(self._live))
            return handle

    def release(self, handle: int) -> None:
        with self._lock:
            self._live.pop(handle, None)

    @contextmanager
    def scope(self, label: str) -> Iterator[ResourceScope]:
        scope = ResourceScope(self, label)
        try:
            yield scope
        finally:
            scope.close()

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def live_labels(self) -> list[str]:
        with self._lock:
            return sorted(self._live.values())
