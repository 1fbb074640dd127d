"""
scheduler.py — Core-owned task queue for deferred and periodic work.

Retraining, prediction cycles and subscription pruning are queued here
instead of on ad-hoc timers. The clock is injectable:

  Production  TaskScheduler() uses time.monotonic and a background loop
              (start() / stop()) that wakes every tick_seconds.
  Tests       TaskScheduler(clock=ManualClock()): advance the clock, then
              `await scheduler.run_due()` to run exactly what is due.

Usage
─────
    scheduler = TaskScheduler()
    scheduler.call_later(1.0, predictor.train, name="retrain")
    scheduler.call_every(300.0, engine.run_prediction_cycle, name="prediction-cycle")
    scheduler.start()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Awaitable[Any]]


class ManualClock:
    """Virtual clock for tests. Starts at `start` seconds and only moves on advance()."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class ScheduledTask:
    task_id:  int
    name:     str
    callback: TaskCallback
    due:      float
    interval: float | None = None   # None → one-shot


class TaskScheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic, tick_seconds: float = 0.25):
        self._clock = clock
        self._tick = tick_seconds
        self._tasks: dict[int, ScheduledTask] = {}
        self._next_id = 0
        self._runner: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    # ── Queueing ──────────────────────────────────────────────────────────────

    def call_later(self, delay: float, callback: TaskCallback, *, name: str = "task") -> int:
        return self._add(name, callback, self._clock() + max(0.0, delay), None)

    def call_every(
        self,
        interval: float,
        callback: TaskCallback,
        *,
        name: str = "periodic",
        start_after: float | None = None,
    ) -> int:
        if interval <= 0:
            raise ValueError("interval must be positive")
        first = interval if start_after is None else max(0.0, start_after)
        return self._add(name, callback, self._clock() + first, interval)

    def cancel(self, task_id: int) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def cancel_named(self, name: str) -> int:
        ids = [t.task_id for t in self._tasks.values() if t.name == name]
        for task_id in ids:
            del self._tasks[task_id]
        return len(ids)

    def cancel_all(self) -> None:
        self._tasks.clear()

    def has_pending(self, name: str) -> bool:
        return any(t.name == name for t in self._tasks.values())

    @property
    def pending(self) -> list[str]:
        return [t.name for t in sorted(self._tasks.values(), key=lambda t: (t.due, t.task_id))]

    def _add(self, name: str, callback: TaskCallback, due: float, interval: float | None) -> int:
        self._next_id += 1
        self._tasks[self._next_id] = ScheduledTask(self._next_id, name, callback, due, interval)
        return self._next_id

    # ── Execution ─────────────────────────────────────────────────────────────

    async def run_due(self, wait: bool = True) -> int:
        """
        Run every task whose due time has passed.

        wait=True awaits each callback in due order (deterministic, used by
        tests). wait=False spawns them as asyncio tasks so a long training
        run does not hold up the next prediction cycle.
        """
        now = self._clock()
        due = sorted(
            (t for t in self._tasks.values() if t.due <= now),
            key=lambda t: (t.due, t.task_id),
        )
        ran = 0
        for task in due:
            if task.task_id not in self._tasks:
                continue  # cancelled by an earlier callback in this pass
            if task.interval is None:
                del self._tasks[task.task_id]
            else:
                task.due = now + task.interval

            if wait:
                await self._invoke(task)
            else:
                spawned = asyncio.create_task(self._invoke(task), name=task.name)
                self._in_flight.add(spawned)
                spawned.add_done_callback(self._in_flight.discard)
            ran += 1
        return ran

    async def _invoke(self, task: ScheduledTask) -> None:
        try:
            await task.callback()
        except Exception as exc:
            logger.exception("Scheduled task %r failed: %s", task.name, exc)

    # ── Background loop ───────────────────────────────────────────────────────

    async def _run_forever(self) -> None:
        while True:
            await self.run_due(wait=False)
            await asyncio.sleep(self._tick)

    def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run_forever(), name="civicpulse-scheduler")
            logger.info("Scheduler started (tick: %.2fs)", self._tick)

    async def stop(self) -> None:
        self.cancel_all()
        pending = [t for t in (self._runner, *self._in_flight) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._runner = None
        self._in_flight.clear()
        logger.info("Scheduler stopped")
