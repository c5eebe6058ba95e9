"""
Per (rule, test) state used by the matching engine.

Both trackers are keyed by ``(rule_id, test_id)`` and apply their
read-modify-write operations under a per-key lock, so two results for the
same test can never both pass the cooldown check.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Optional, Tuple

TrackerKey = Tuple[str, str]


class KeyedLocks:
    """Lazily created lock per key."""

    def __init__(self):
        self._guard = Lock()
        self._locks: Dict[TrackerKey, Lock] = {}

    def __call__(self, key: TrackerKey) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = Lock()
            return lock


class ConsecutiveFailureTracker:
    """Counts back-to-back matching results per (rule, test)."""

    def __init__(self):
        self._counts: Dict[TrackerKey, int] = defaultdict(int)
        self._locks = KeyedLocks()

    def record(self, key: TrackerKey, matched: bool) -> int:
        """
        Atomically increment (on a match) or reset (otherwise) the streak.

        Returns:
            The streak length after the update
        """
        with self._locks(key):
            if matched:
                self._counts[key] += 1
            else:
                self._counts[key] = 0
            return self._counts[key]

    def get(self, key: TrackerKey) -> int:
        with self._locks(key):
            return self._counts.get(key, 0)

    def snapshot(self) -> Dict[str, int]:
        """Serializable copy of all non-zero streaks."""
        return {f"{rule_id}:{test_id}": count
                for (rule_id, test_id), count in list(self._counts.items()) if count}

    def restore(self, data: Dict[str, int]) -> None:
        for raw_key, count in data.items():
            rule_id, _, test_id = raw_key.partition(":")
            self._counts[(rule_id, test_id)] = int(count)


class CooldownTracker:
    """Remembers when each (rule, test) last fired."""

    def __init__(self):
        self._last_fire: Dict[TrackerKey, datetime] = {}
        self._locks = KeyedLocks()

    def try_acquire(self, key: TrackerKey, now: datetime, cooldown_minutes: int) -> bool:
        """
        Atomically check the cooldown window and, if clear, record a fire.

        Args:
            key: (rule_id, test_id)
            now: Current time
            cooldown_minutes: Window during which re-firing is suppressed

        Returns:
            True if the caller may fire (and the fire time was recorded),
            False if still cooling down
        """
        with self._locks(key):
            last = self._last_fire.get(key)
            if last is not None and now - last < timedelta(minutes=cooldown_minutes):
                return False
            self._last_fire[key] = now
            return True

    def release(self, key: TrackerKey, fired_at: datetime) -> None:
        """Undo a recorded fire (used when alert creation fails afterwards)."""
        with self._locks(key):
            if self._last_fire.get(key) == fired_at:
                del self._last_fire[key]

    def last_fire(self, key: TrackerKey) -> Optional[datetime]:
        with self._locks(key):
            return self._last_fire.get(key)

    def snapshot(self) -> Dict[str, str]:
        return {f"{rule_id}:{test_id}": ts.isoformat()
                for (rule_id, test_id), ts in list(self._last_fire.items())}

    def restore(self, data: Dict[str, Any]) -> None:
        for raw_key, value in data.items():
            rule_id, _, test_id = raw_key.partition(":")
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            self._last_fire[(rule_id, test_id)] = value


__all__ = [
    "TrackerKey",
    "KeyedLocks",
    "ConsecutiveFailureTracker",
    "CooldownTracker",
]
