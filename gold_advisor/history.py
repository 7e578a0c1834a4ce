from __future__ import annotations

import logging
from collections import deque
from itertools import islice
from typing import Deque, Iterator, List, Optional

from gold_advisor.models import FEATURE_KEYS, Snapshot

LOGGER = logging.getLogger(__name__)

GOLD_SERIES = "gold"
TGJU_GOLD_SERIES = "tgju_gold"


def series_value(snapshot: Optional[Snapshot], series: str) -> float | None:
    """Value of a named series on one snapshot.

    ``gold`` is the primary price. ``tgju_gold`` falls back from the sell
    quote to the buy quote. Auxiliary keys only count while fresh.
    """
    if snapshot is None:
        return None
    if series == GOLD_SERIES:
        return snapshot.gold_price
    if series == TGJU_GOLD_SERIES:
        value = _fresh_value(snapshot, "tgju_gold_irg18")
        if value is None:
            value = _fresh_value(snapshot, "tgju_gold_irg18_buy")
        return value
    if series in FEATURE_KEYS:
        return _fresh_value(snapshot, series)
    return None


def _fresh_value(snapshot: Snapshot, key: str) -> float | None:
    f = snapshot.fields.get(key)
    if f is None or not f.is_fresh:
        return None
    return f.value


class HistoryStore:
    """Bounded, time-ordered window of snapshots.

    Only ``append``, ``undo_append`` and ``trim`` mutate the window; all
    act on the ends so ordering is never disturbed. ``append`` trims
    against the appended snapshot's timestamp.

    Parameters
    ----------
    retention_hours:
        Snapshots older than this (relative to the trim time) are dropped.
    max_points:
        Hard cap on window length; the oldest entries go first.
    """

    def __init__(self, retention_hours: float, max_points: int) -> None:
        self._retention_hours = retention_hours
        self._max_points = max_points
        self._items: Deque[Snapshot] = deque()

    def configure(self, retention_hours: float, max_points: int) -> None:
        self._retention_hours = retention_hours
        self._max_points = max_points

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(self._items)

    def append(self, snapshot: Snapshot) -> List[Snapshot]:
        """Append and trim. Returns the snapshots the trim evicted, oldest first."""
        latest = self.latest()
        if latest is not None and snapshot.timestamp_ms < latest.timestamp_ms:
            raise ValueError(
                f"snapshot at {snapshot.timestamp_ms} is older than latest {latest.timestamp_ms}"
            )
        self._items.append(snapshot)
        return self._evict(snapshot.timestamp_ms)

    def undo_append(self, snapshot: Snapshot, evicted: List[Snapshot]) -> None:
        """Reverse the ``append`` of ``snapshot`` that evicted ``evicted``."""
        if not self._items or self._items[-1] is not snapshot:
            raise ValueError(f"snapshot at {snapshot.timestamp_ms} is not the latest entry")
        self._items.pop()
        self._items.extendleft(reversed(evicted))

    def _evict(self, now_ms: float) -> List[Snapshot]:
        evicted: List[Snapshot] = []
        min_ts = now_ms - self._retention_hours * 3_600_000
        while self._items and self._items[0].timestamp_ms < min_ts:
            evicted.append(self._items.popleft())
        while len(self._items) > self._max_points:
            evicted.append(self._items.popleft())
        if evicted:
            LOGGER.debug("history trimmed %d snapshot(s), %d left", len(evicted), len(self._items))
        return evicted

    def trim(self, now_ms: float) -> int:
        """Drop expired entries, then enforce the size cap. Returns the count removed."""
        return len(self._evict(now_ms))

    def clear(self) -> None:
        self._items.clear()

    def latest(self) -> Optional[Snapshot]:
        return self._items[-1] if self._items else None

    def tail(self, count: int) -> List[Snapshot]:
        if count <= 0:
            return []
        out = list(islice(reversed(self._items), count))
        out.reverse()
        return out

    def since(self, cutoff_ms: float) -> List[Snapshot]:
        """Snapshots with ``timestamp_ms >= cutoff_ms``, oldest first."""
        out: List[Snapshot] = []
        for snap in reversed(self._items):
            if snap.timestamp_ms < cutoff_ms:
                break
            out.append(snap)
        out.reverse()
        return out

    def value_at_or_before(self, series: str, target_ms: float) -> float | None:
        """Newest defined value of ``series`` at or before ``target_ms``."""
        for snap in reversed(self._items):
            if snap.timestamp_ms > target_ms:
                continue
            value = series_value(snap, series)
            if value is not None:
                return value
        return None

    def value_at_or_after(self, target_ms: float) -> float | None:
        """First gold price at or after ``target_ms``; used for horizon resolution."""
        for snap in self._items:
            if snap.timestamp_ms < target_ms:
                continue
            return snap.gold_price
        return None
