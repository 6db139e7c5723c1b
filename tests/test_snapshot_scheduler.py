import asyncio
from datetime import timedelta

import pytest

from database.ActivityDatabase import StorageError
from rolewatch_system.activity.activity_store import ActivityStore
from rolewatch_system.snapshots.retention import RetentionPolicy
from rolewatch_system.snapshots.snapshot_manager import SnapshotManager
from rolewatch_system.snapshots.tasks.snapshot_scheduler import SnapshotScheduler, take_final_snapshot

HOUR = 3600.0


class StopScheduler(Exception):
    pass


class VirtualSleep:
    """Advances the fake clock instead of waiting; stops the loop after ``limit`` waits."""

    def __init__(self, clock, limit):
        self.clock = clock
        self.limit = limit
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        self.clock.advance(seconds=seconds)
        if len(self.delays) >= self.limit:
            raise StopScheduler()


def _build(database, clock, sleep, keep_count=100):
    store = ActivityStore(database, clock=clock)
    manager = SnapshotManager(database, clock=clock)
    scheduler = SnapshotScheduler(
        manager,
        RetentionPolicy(manager, keep_count=keep_count),
        interval=timedelta(hours=4),
        skew_margin=timedelta(hours=1),
        clock=clock,
        sleep=sleep,
    )
    return store, manager, scheduler


def test_overdue_snapshot_fires_immediately(database, clock):
    sleep = VirtualSleep(clock, limit=1)
    store, manager, scheduler = _build(database, clock, sleep)

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await manager.create()
        clock.advance(hours=5)
        with pytest.raises(StopScheduler):
            await scheduler.run()
        return await manager.list()

    snapshots = asyncio.run(scenario())

    assert len(snapshots) == 2
    assert sleep.delays == [4 * HOUR]
    assert scheduler.firings == 1


def test_recent_snapshot_waits_out_the_interval(database, clock):
    sleep = VirtualSleep(clock, limit=1)
    store, manager, scheduler = _build(database, clock, sleep)

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await manager.create()
        clock.advance(hours=2)
        with pytest.raises(StopScheduler):
            await scheduler.run()
        return await manager.list()

    snapshots = asyncio.run(scenario())

    # 2h since the last snapshot minus the 1h margin leaves 3h to wait.
    assert sleep.delays == [3 * HOUR]
    assert len(snapshots) == 1
    assert scheduler.firings == 0


def test_initial_delay_counts_the_skew_margin(database, clock):
    store, manager, scheduler = _build(database, clock, VirtualSleep(clock, limit=1))

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await manager.create()
        clock.advance(hours=4, minutes=30)
        return await scheduler.initial_delay()

    assert asyncio.run(scenario()) == pytest.approx(0.5 * HOUR)


def test_snapshot_inside_the_skew_margin_waits_longer_than_an_interval(database, clock):
    store, manager, scheduler = _build(database, clock, VirtualSleep(clock, limit=1))

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await manager.create()
        clock.advance(minutes=30)
        return await scheduler.initial_delay()

    # 30min minus the 1h margin is -30min, so 4h30 remain.
    assert asyncio.run(scenario()) == pytest.approx(4.5 * HOUR)


def test_snapshot_from_the_future_waits_one_interval(database, clock):
    store, manager, scheduler = _build(database, clock, VirtualSleep(clock, limit=1))

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        await manager.create()
        clock.advance(hours=-2)
        return await scheduler.initial_delay(), await manager.list()

    delay, snapshots = asyncio.run(scenario())

    assert delay == pytest.approx(4 * HOUR)
    assert len(snapshots) == 1


def test_first_start_snapshots_once_then_runs_on_interval(database, clock):
    sleep = VirtualSleep(clock, limit=3)
    store, manager, scheduler = _build(database, clock, sleep)

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        with pytest.raises(StopScheduler):
            await scheduler.run()
        return await manager.list()

    snapshots = asyncio.run(scenario())

    assert sleep.delays == [4 * HOUR, 4 * HOUR, 4 * HOUR]
    assert len(snapshots) == 3
    assert scheduler.firings == 3


def test_each_firing_prunes_to_keep_count(database, clock):
    sleep = VirtualSleep(clock, limit=4)
    store, manager, scheduler = _build(database, clock, sleep, keep_count=2)

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        with pytest.raises(StopScheduler):
            await scheduler.run()
        return await manager.list()

    snapshots = asyncio.run(scenario())

    assert [s["id"] for s in snapshots] == [4, 3]


class _FailingManager:
    def __init__(self, calls):
        self.calls = calls
        self.projection = self

    async def latest_created_at(self):
        return None

    async def create(self):
        self.calls.append("create")
        raise StorageError("database is locked", retryable=True)


class _RecordingRetention:
    def __init__(self, calls):
        self.calls = calls

    async def prune(self):
        self.calls.append("prune")
        return []


def test_failed_firings_do_not_stop_the_timer(clock):
    calls = []
    sleep = VirtualSleep(clock, limit=3)
    scheduler = SnapshotScheduler(
        _FailingManager(calls),
        _RecordingRetention(calls),
        interval=timedelta(hours=4),
        clock=clock,
        sleep=sleep,
    )

    with pytest.raises(StopScheduler):
        asyncio.run(scheduler.run())

    assert calls == ["create", "prune"] * 3
    assert scheduler.firings == 3


def test_start_and_stop_background_task(database, clock):
    async def scenario():
        sleeping = asyncio.Event()

        async def never_wake(seconds):
            sleeping.set()
            await asyncio.Event().wait()

        store, manager, scheduler = _build(database, clock, never_wake)
        await store.record_message("1", "alice", "Prover", "c1", "general")
        scheduler.start()
        await asyncio.wait_for(sleeping.wait(), timeout=10)
        running = scheduler.is_running()
        await scheduler.stop()
        return running, scheduler.is_running(), await manager.list()

    was_running, still_running, snapshots = asyncio.run(scenario())

    assert was_running is True
    assert still_running is False
    assert len(snapshots) == 1


def test_non_positive_interval_is_rejected(database, clock):
    manager = SnapshotManager(database, clock=clock)
    with pytest.raises(ValueError):
        SnapshotScheduler(manager, RetentionPolicy(manager), interval=timedelta(0))


class _StuckScheduler:
    def __init__(self, calls):
        self.calls = calls

    async def stop(self):
        self.calls.append("stop")
        raise RuntimeError("scheduler task is stuck")


class _RecordingManager:
    def __init__(self, calls):
        self.calls = calls

    async def create(self):
        self.calls.append("create")
        return {"id": 9, "name": "final", "row_count": 1}


def test_final_snapshot_runs_even_when_stopping_fails():
    calls = []

    async def close_ingestion():
        calls.append("close")
        raise RuntimeError("already closed")

    result = asyncio.run(take_final_snapshot(
        _StuckScheduler(calls), _RecordingManager(calls), close_ingestion=close_ingestion,
    ))

    assert calls == ["stop", "close", "create"]
    assert result["id"] == 9


def test_final_snapshot_is_created_once_and_never_pruned(database, clock):
    sleep = VirtualSleep(clock, limit=100)
    store, manager, scheduler = _build(database, clock, sleep, keep_count=0)

    async def scenario():
        await store.record_message("1", "alice", "Prover", "c1", "general")
        result = await take_final_snapshot(scheduler, manager)
        return result, await manager.list()

    result, snapshots = asyncio.run(scenario())

    assert [s["id"] for s in snapshots] == [result["id"]]
    assert scheduler.firings == 0
    assert sleep.delays == []


def test_final_snapshot_failure_is_logged_not_raised(clock):
    calls = []
    scheduler = SnapshotScheduler(_FailingManager(calls), _RecordingRetention(calls), clock=clock)

    result = asyncio.run(take_final_snapshot(scheduler, scheduler.manager))

    assert result is None
    assert calls == ["create"]
