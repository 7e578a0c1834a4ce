"""Forecast reliability: resolves pending P(up) predictions at the horizon.

Every tick queues one ``PendingPrediction``. Once the history holds a
price at or after ``prediction time + horizon`` the prediction is scored
(hit/miss and Brier) and dropped from the queue. Predictions with no
realized price yet stay pending; there is no expiry.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Tuple

from gold_advisor.history import HistoryStore
from gold_advisor.models import Metrics, PendingPrediction
from gold_advisor.scoring import clamp

LOGGER = logging.getLogger(__name__)

MAX_OUTCOMES = 5000


@dataclass(frozen=True)
class CalibrationBin:
    bin_lower: float
    bin_upper: float
    mean_predicted: float
    mean_realized: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bin_lower": self.bin_lower,
            "bin_upper": self.bin_upper,
            "mean_predicted": self.mean_predicted,
            "mean_realized": self.mean_realized,
            "count": self.count,
        }


class ReliabilityTracker:
    """Cumulative hit-rate / Brier tracking for the process lifetime.

    Parameters
    ----------
    max_outcomes:
        How many resolved ``(p_up, went_up)`` pairs to keep for the
        calibration curve. Counters in ``metrics`` are never truncated.
    """

    def __init__(self, max_outcomes: int = MAX_OUTCOMES) -> None:
        self._pending: List[PendingPrediction] = []
        self._metrics = Metrics()
        self._outcomes: Deque[Tuple[float, bool]] = deque(maxlen=max_outcomes)

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def pending(self) -> Tuple[PendingPrediction, ...]:
        return tuple(self._pending)

    def add_prediction(self, timestamp_ms: int, base_price: float, p_up: float) -> None:
        self._pending.append(
            PendingPrediction(timestamp_ms=timestamp_ms, base_price=base_price, p_up=p_up)
        )

    def resolve(self, history: HistoryStore, horizon_min: float) -> int:
        """Score every pending prediction whose horizon has a realized price.

        Returns the number resolved this call.
        """
        horizon_ms = horizon_min * 60_000
        still_pending: List[PendingPrediction] = []
        resolved = 0
        for pred in self._pending:
            realized = history.value_at_or_after(pred.timestamp_ms + horizon_ms)
            if realized is None:
                still_pending.append(pred)
                continue
            actual_up = realized > pred.base_price
            predicted_up = pred.p_up >= 0.5
            prob = clamp(pred.p_up, 0.0, 1.0)
            self._metrics.total += 1
            if predicted_up == actual_up:
                self._metrics.correct += 1
            self._metrics.brier_sum += (prob - (1.0 if actual_up else 0.0)) ** 2
            self._outcomes.append((prob, actual_up))
            resolved += 1
        self._pending = still_pending
        if resolved:
            LOGGER.debug(
                "resolved %d prediction(s); total=%d pending=%d",
                resolved,
                self._metrics.total,
                len(self._pending),
            )
        return resolved

    def calibration_curve(self, num_bins: int = 10) -> List[CalibrationBin]:
        """Bin resolved predictions by p_up and compare with realized frequency."""
        if not self._outcomes or num_bins <= 0:
            return []
        width = 1.0 / num_bins
        buckets: List[List[Tuple[float, bool]]] = [[] for _ in range(num_bins)]
        for prob, went_up in self._outcomes:
            idx = min(int(prob / width), num_bins - 1)
            buckets[idx].append((prob, went_up))

        bins: List[CalibrationBin] = []
        for i, bucket in enumerate(buckets):
            if not bucket:
                continue
            bins.append(
                CalibrationBin(
                    bin_lower=i * width,
                    bin_upper=(i + 1) * width,
                    mean_predicted=sum(p for p, _ in bucket) / len(bucket),
                    mean_realized=sum(1.0 for _, up in bucket if up) / len(bucket),
                    count=len(bucket),
                )
            )
        return bins
