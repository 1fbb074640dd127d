"""
test_scheduler.py — Core task queue on a manual clock.
"""

import pytest

from civicpulse.core.scheduler import ManualClock, TaskScheduler


@pytest.fixture()
def sched():
    clock = ManualClock()
    return clock, TaskScheduler(clock=clock)


class TestQueueing:
    async def test_one_shot_runs_once_when_due(self, sched):
        clock, scheduler = sched
        calls = []

        async def job():
            calls.append(clock())

        scheduler.call_later(2.0, job, name="job")
        assert await scheduler.run_due() == 0
        clock.advance(2.0)
        assert await scheduler.run_due() == 1
        clock.advance(10.0)
        assert await scheduler.run_due() == 0
        assert calls == [2.0]
        assert not scheduler.has_pending("job")

    async def test_periodic_reschedules(self, sched):
        clock, scheduler = sched
        calls = []

        async def tick():
            calls.append(clock())

        scheduler.call_every(5.0, tick, name="tick")
        for _ in range(3):
            clock.advance(5.0)
            await scheduler.run_due()
        assert calls == [5.0, 10.0, 15.0]
        assert scheduler.has_pending("tick")

    async def test_start_after_zero_runs_immediately(self, sched):
        _, scheduler = sched
        calls = []

        async def tick():
            calls.append(1)

        scheduler.call_every(60.0, tick, start_after=0)
        await scheduler.run_due()
        assert calls == [1]

    async def test_due_order(self, sched):
        clock, scheduler = sched
        order = []

        def make(label):
            async def job():
                order.append(label)
            return job

        scheduler.call_later(3.0, make("c"))
        scheduler.call_later(1.0, make("a"))
        scheduler.call_later(2.0, make("b"))
        clock.advance(5.0)
        await scheduler.run_due()
        assert order == ["a", "b", "c"]

    def test_non_positive_interval_rejected(self, sched):
        _, scheduler = sched

        async def job():
            pass

        with pytest.raises(ValueError):
            scheduler.call_every(0, job)


class TestCancellation:
    async def test_cancel_by_id(self, sched):
        clock, scheduler = sched
        calls = []

        async def job():
            calls.append(1)

        task_id = scheduler.call_later(1.0, job)
        assert scheduler.cancel(task_id) is True
        assert scheduler.cancel(task_id) is False
        clock.advance(1.0)
        await scheduler.run_due()
        assert calls == []

    async def test_cancel_named(self, sched):
        _, scheduler = sched

        async def job():
            pass

        scheduler.call_later(1.0, job, name="retrain")
        scheduler.call_later(2.0, job, name="retrain")
        scheduler.call_later(3.0, job, name="other")
        assert scheduler.cancel_named("retrain") == 2
        assert scheduler.pending == ["other"]

    async def test_callback_can_cancel_later_task_in_same_pass(self, sched):
        clock, scheduler = sched
        calls = []

        async def second():
            calls.append("second")

        second_id = None

        async def first():
            calls.append("first")
            scheduler.cancel(second_id)

        scheduler.call_later(1.0, first)
        second_id = scheduler.call_later(2.0, second)
        clock.advance(3.0)
        await scheduler.run_due()
        assert calls == ["first"]

    async def test_stop_clears_queue(self, sched):
        _, scheduler = sched

        async def job():
            pass

        scheduler.call_every(1.0, job, name="tick")
        await scheduler.stop()
        assert scheduler.pending == []


class TestFailures:
    async def test_failing_task_does_not_block_others(self, sched, caplog):
        clock, scheduler = sched
        calls = []

        async def boom():
            raise RuntimeError("kaboom")

        async def fine():
            calls.append(1)

        scheduler.call_later(1.0, boom, name="boom")
        scheduler.call_later(1.0, fine, name="fine")
        clock.advance(1.0)
        assert await scheduler.run_due() == 2
        assert calls == [1]
        assert "boom" in caplog.text

    async def test_background_loop_runs_tasks(self):
        import asyncio

        scheduler = TaskScheduler(tick_seconds=0.01)
        done = asyncio.Event()

        async def job():
            done.set()

        scheduler.call_later(0.0, job)
        scheduler.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2.0)
        finally:
            await scheduler.stop()
        assert done.is_set()
