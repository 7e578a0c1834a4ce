"""Momentum, volatility and cross-asset divergence over the history window."""

from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np

from gold_advisor.history import TGJU_GOLD_SERIES, HistoryStore, series_value

# Divergence never looks back less than this, whatever the horizon.
MIN_DIVERGENCE_WINDOW_MIN = 120.0
DIVERGENCE_HORIZON_MULTIPLIER = 4.0


def pct_change(current: float | None, previous: float | None) -> float | None:
    if current is None or previous is None:
        return None
    if not math.isfinite(current) or not math.isfinite(previous) or previous == 0:
        return None
    return (current - previous) / abs(previous)


def mean(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return float(np.mean(values))


def std_dev(values: Sequence[float]) -> float | None:
    """Sample standard deviation (n-1 divisor); ``None`` below two values."""
    if len(values) < 2:
        return None
    return float(np.std(np.asarray(values, dtype=float), ddof=1))


def divergence_window_min(horizon_min: float) -> float:
    return max(MIN_DIVERGENCE_WINDOW_MIN, horizon_min * DIVERGENCE_HORIZON_MULTIPLIER)


class FeatureExtractor:
    """Reads the history window; never mutates it."""

    def __init__(self, history: HistoryStore) -> None:
        self._history = history

    def momentum(self, series: str, lookback_min: float) -> float | None:
        """Percent change of ``series`` from ``lookback_min`` ago to the latest tick."""
        latest = self._history.latest()
        if latest is None:
            return None
        baseline = self._history.value_at_or_before(
            series, latest.timestamp_ms - lookback_min * 60_000
        )
        return pct_change(series_value(latest, series), baseline)

    def returns_over(self, series: str, lookback_min: float) -> List[float]:
        """Step-to-step percent changes of ``series`` inside the lookback window."""
        latest = self._history.latest()
        if latest is None:
            return []
        cutoff = latest.timestamp_ms - lookback_min * 60_000
        values = [
            v
            for v in (series_value(snap, series) for snap in self._history.since(cutoff))
            if v is not None
        ]
        returns: List[float] = []
        for prev, cur in zip(values, values[1:]):
            r = pct_change(cur, prev)
            if r is not None:
                returns.append(r)
        return returns

    def volatility(self, series: str, lookback_min: float) -> float | None:
        return std_dev(self.returns_over(series, lookback_min))

    def rolling_ratio_mean(self, lookback_min: float) -> float | None:
        """Mean gold / reference-gold ratio over the lookback window."""
        latest = self._history.latest()
        if latest is None:
            return None
        cutoff = latest.timestamp_ms - lookback_min * 60_000
        ratios: List[float] = []
        for snap in self._history.since(cutoff):
            ref = series_value(snap, TGJU_GOLD_SERIES)
            if not ref:
                continue
            ratios.append(snap.gold_price / ref)
        return mean(ratios)

    def divergence(self, horizon_min: float) -> float | None:
        """Current gold / reference ratio relative to its rolling mean.

        Positive means the retail quote is rich against the reference.
        """
        latest = self._history.latest()
        if latest is None:
            return None
        ref_now = series_value(latest, TGJU_GOLD_SERIES)
        if not ref_now:
            return None
        ratio_mean = self.rolling_ratio_mean(divergence_window_min(horizon_min))
        return pct_change(latest.gold_price / ref_now, ratio_mean)
