"""Signal scoring: squashed feature blend -> P(up) plus confidence.

Each raw feature ``v`` is squashed with ``tanh(v / scale)`` and combined
linearly. Momentum terms carry positive weight; divergence and volatility
carry negative weight (reversion on divergence, caution on volatility).
``p_up = sigmoid(2 * score)``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from gold_advisor.features import FeatureExtractor
from gold_advisor.history import GOLD_SERIES, TGJU_GOLD_SERIES, HistoryStore
from gold_advisor.models import FEATURE_KEYS, Signal

LOGGER = logging.getLogger(__name__)

SCORE_SHARPNESS = 2.0


@dataclass(frozen=True)
class FeatureTerm:
    name: str
    weight: float
    scale: float


DEFAULT_TERMS: tuple[FeatureTerm, ...] = (
    FeatureTerm("gold_mom_5", 0.34, 0.0025),
    FeatureTerm("gold_mom_15", 0.24, 0.0045),
    FeatureTerm("tgju_gold_mom_5", 0.10, 0.003),
    FeatureTerm("dollar_mom_5", 0.14, 0.0025),
    FeatureTerm("ons_mom_5", 0.10, 0.002),
    FeatureTerm("xaut_mom_5", 0.08, 0.002),
    FeatureTerm("silver_mom_5", 0.06, 0.0025),
    FeatureTerm("divergence", -0.14, 0.0035),
    FeatureTerm("volatility_15", -0.22, 0.003),
)


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def tanh_norm(value: float | None, scale: float) -> float:
    """``tanh(value / scale)``; a missing input contributes nothing."""
    if value is None or not math.isfinite(value):
        return 0.0
    return math.tanh(value / max(abs(scale), 1e-9))


def confidence_from(p_up: float, coverage: float, freshness: float) -> float:
    """Directional conviction discounted by input coverage and freshness."""
    conviction = abs(p_up - 0.5) * 2
    return clamp(conviction * (0.45 + 0.55 * coverage) * (0.5 + 0.5 * freshness), 0.0, 1.0)


def _input_builders(horizon_min: float) -> Dict[str, Callable[[FeatureExtractor], Optional[float]]]:
    return {
        "gold_mom_5": lambda fx: fx.momentum(GOLD_SERIES, 5),
        "gold_mom_15": lambda fx: fx.momentum(GOLD_SERIES, 15),
        "tgju_gold_mom_5": lambda fx: fx.momentum(TGJU_GOLD_SERIES, 5),
        "dollar_mom_5": lambda fx: fx.momentum("price_dollar_rl", 5),
        "ons_mom_5": lambda fx: fx.momentum("ons", 5),
        "xaut_mom_5": lambda fx: fx.momentum("tether_gold_xaut", 5),
        "silver_mom_5": lambda fx: fx.momentum("silver", 5),
        "volatility_15": lambda fx: fx.volatility(GOLD_SERIES, 15),
        "divergence": lambda fx: fx.divergence(horizon_min),
    }


class SignalScorer:
    """Turns the current history window into a ``Signal``.

    Parameters
    ----------
    history:
        Shared history window (read only).
    terms:
        Weight/scale per named input. Every term name must be one of the
        inputs this scorer knows how to compute.
    """

    def __init__(
        self,
        history: HistoryStore,
        terms: Sequence[FeatureTerm] = DEFAULT_TERMS,
    ) -> None:
        self._history = history
        self._extractor = FeatureExtractor(history)
        self._terms = tuple(terms)

    @property
    def extractor(self) -> FeatureExtractor:
        return self._extractor

    def compute_inputs(self, horizon_min: float) -> Dict[str, Optional[float]]:
        builders = _input_builders(horizon_min)
        return {term.name: builders[term.name](self._extractor) for term in self._terms}

    def neutral_signal(self, now_ms: int) -> Signal:
        return Signal(
            score=0.0,
            p_up=0.5,
            confidence=0.0,
            coverage=0.0,
            freshness=0.0,
            fresh_field_count=0,
            total_field_count=len(FEATURE_KEYS),
            price=0.0,
            timestamp_ms=now_ms,
            inputs={term.name: None for term in self._terms},
        )

    def score(self, horizon_min: float, now_ms: int) -> Signal:
        latest = self._history.latest()
        if latest is None:
            return self.neutral_signal(now_ms)

        inputs = self.compute_inputs(horizon_min)
        score = sum(term.weight * tanh_norm(inputs[term.name], term.scale) for term in self._terms)
        p_up = sigmoid(SCORE_SHARPNESS * score)

        used = sum(1 for v in inputs.values() if v is not None and math.isfinite(v))
        coverage = used / len(inputs) if inputs else 0.0
        fresh_count = latest.fresh_count()
        freshness = fresh_count / len(FEATURE_KEYS)

        return Signal(
            score=score,
            p_up=p_up,
            confidence=confidence_from(p_up, coverage, freshness),
            coverage=coverage,
            freshness=freshness,
            fresh_field_count=fresh_count,
            total_field_count=len(FEATURE_KEYS),
            price=latest.gold_price,
            timestamp_ms=latest.timestamp_ms,
            inputs=inputs,
        )
