"""Tests for consecutive-failure and cooldown trackers."""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from src.alerting.trackers import ConsecutiveFailureTracker, CooldownTracker

KEY = ("rule-1", "test-1")
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_streak_increments_and_resets():
    tracker = ConsecutiveFailureTracker()
    assert tracker.record(KEY, True) == 1
    assert tracker.record(KEY, True) == 2
    assert tracker.record(KEY, False) == 0
    assert tracker.record(KEY, True) == 1


def test_streaks_are_per_key():
    tracker = ConsecutiveFailureTracker()
    tracker.record(KEY, True)
    tracker.record(("rule-1", "test-2"), True)
    tracker.record(("rule-2", "test-1"), False)
    assert tracker.get(KEY) == 1
    assert tracker.get(("rule-1", "test-2")) == 1
    assert tracker.get(("rule-2", "test-1")) == 0


def test_streak_increment_is_atomic():
    tracker = ConsecutiveFailureTracker()
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: tracker.record(KEY, True), range(500)))
    assert tracker.get(KEY) == 500


def test_streak_snapshot_restore():
    tracker = ConsecutiveFailureTracker()
    tracker.record(KEY, True)
    tracker.record(KEY, True)

    restored = ConsecutiveFailureTracker()
    restored.restore(tracker.snapshot())
    assert restored.get(KEY) == 2


def test_cooldown_blocks_within_window():
    tracker = CooldownTracker()
    assert tracker.try_acquire(KEY, T0, 60) is True
    assert tracker.try_acquire(KEY, T0 + timedelta(minutes=30), 60) is False
    assert tracker.try_acquire(KEY, T0 + timedelta(minutes=61), 60) is True
    assert tracker.last_fire(KEY) == T0 + timedelta(minutes=61)


def test_zero_cooldown_never_blocks():
    tracker = CooldownTracker()
    assert tracker.try_acquire(KEY, T0, 0)
    assert tracker.try_acquire(KEY, T0, 0)


def test_only_one_concurrent_acquire_wins():
    tracker = CooldownTracker()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: tracker.try_acquire(KEY, T0, 60), range(50)))
    assert results.count(True) == 1


def test_release_undoes_fire():
    tracker = CooldownTracker()
    tracker.try_acquire(KEY, T0, 60)
    tracker.release(KEY, T0)
    assert tracker.last_fire(KEY) is None
    assert tracker.try_acquire(KEY, T0 + timedelta(minutes=1), 60)


def test_cooldown_snapshot_restore():
    tracker = CooldownTracker()
    tracker.try_acquire(KEY, T0, 60)

    restored = CooldownTracker()
    restored.restore(tracker.snapshot())
    assert restored.last_fire(KEY) == T0
