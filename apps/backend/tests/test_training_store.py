"""
test_training_store.py — Bounded buffer, snapshots and the retrain cadence.
"""

import pytest

from conftest import NOW_MS
from civicpulse.core.scheduler import ManualClock, TaskScheduler
from civicpulse.ml.training_store import RETRAIN_TASK, TrainingDataStore


class FakeTrainer:
    def __init__(self):
        self.is_training = False
        self.calls = 0

    async def train(self) -> bool:
        self.calls += 1
        return True


@pytest.fixture()
def bound_store():
    clock = ManualClock()
    scheduler = TaskScheduler(clock=clock)
    trainer = FakeTrainer()
    store = TrainingDataStore(max_records=50, retrain_every=3, min_records=2)
    store.bind(trainer, scheduler, retrain_delay=1.0)
    return store, trainer, scheduler, clock


class TestBuffer:
    def test_bounded_drops_oldest(self, make_observation):
        store = TrainingDataStore(max_records=5)
        for i in range(7):
            store.add_training_data(make_observation(value=i))
        assert len(store) == 5
        assert [o.value for o in store.snapshot()] == [2, 3, 4, 5, 6]
        assert store.total_added == 7

    def test_default_capacity_keeps_most_recent(self, make_observation):
        store = TrainingDataStore()
        for i in range(10_050):
            store.add_training_data(make_observation(value=i % 100, minutes_ago=10_050 - i))
        assert len(store) == 10_000
        snapshot = store.snapshot()
        assert snapshot[0].timestamp == NOW_MS - 10_000 * 60_000
        assert snapshot[-1].timestamp == NOW_MS - 60_000

    def test_snapshot_is_isolated_from_later_writes(self, make_observation):
        store = TrainingDataStore()
        store.add_training_data(make_observation(value=1))
        snapshot = store.snapshot()
        store.add_training_data(make_observation(value=2))
        assert len(snapshot) == 1
        assert isinstance(snapshot, tuple)

    def test_has_enough_data(self, make_observation):
        store = TrainingDataStore(min_records=3)
        for _ in range(2):
            store.add_training_data(make_observation())
        assert not store.has_enough_data()
        store.add_training_data(make_observation())
        assert store.has_enough_data()

    def test_count_within(self, make_observation):
        store = TrainingDataStore()
        store.add_training_data(make_observation())
        store.add_training_data(make_observation(dlat=0.005))   # ~550 m
        store.add_training_data(make_observation(dlat=0.05))    # ~5.5 km
        centre = make_observation().location
        assert store.count_within(centre, 1_000) == 2
        assert store.count_within(centre, 100) == 1

    def test_clear(self, make_observation):
        store = TrainingDataStore()
        store.add_training_data(make_observation())
        store.clear()
        assert len(store) == 0

    def test_history_is_reused_until_new_data(self, make_observation):
        store = TrainingDataStore()
        store.add_training_data(make_observation())
        first = store.history(NOW_MS)
        assert store.history(NOW_MS + 1_000) is first
        store.add_training_data(make_observation())
        assert store.history(NOW_MS + 1_000) is not first


class TestRetrainCadence:
    async def test_every_nth_insertion_queues_retrain(self, bound_store, make_observation):
        store, trainer, scheduler, clock = bound_store
        store.add_training_data(make_observation())
        store.add_training_data(make_observation())
        assert not scheduler.has_pending(RETRAIN_TASK)
        store.add_training_data(make_observation())
        assert scheduler.has_pending(RETRAIN_TASK)

        clock.advance(1.0)
        await scheduler.run_due()
        assert trainer.calls == 1

    def test_requests_coalesce_while_queued(self, bound_store):
        store, _, scheduler, _ = bound_store
        store.request_retraining()
        store.request_retraining()
        assert scheduler.pending.count(RETRAIN_TASK) == 1

    async def test_request_during_training_is_deferred(self, bound_store):
        store, trainer, scheduler, clock = bound_store
        trainer.is_training = True
        store.request_retraining()
        assert store.retrain_pending is True
        assert not scheduler.has_pending(RETRAIN_TASK)

        assert store.check_pending_retraining() is False   # still training
        trainer.is_training = False
        assert store.check_pending_retraining() is True
        assert store.retrain_pending is False
        clock.advance(1.0)
        await scheduler.run_due()
        assert trainer.calls == 1

    def test_load_does_not_trigger_retrain(self, bound_store, make_observation):
        store, _, scheduler, _ = bound_store
        assert store.load([make_observation() for _ in range(9)]) == 9
        assert len(store) == 9
        assert not scheduler.has_pending(RETRAIN_TASK)

    def test_unbound_store_ignores_requests(self, make_observation):
        store = TrainingDataStore(retrain_every=1)
        store.add_training_data(make_observation())
        assert store.retrain_pending is False
