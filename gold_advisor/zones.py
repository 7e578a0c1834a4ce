from __future__ import annotations

import math

from gold_advisor.features import FeatureExtractor
from gold_advisor.history import GOLD_SERIES
from gold_advisor.models import Signal, Zones
from gold_advisor.scoring import clamp

# Per-step volatility used when the window is too short to measure one.
FALLBACK_VOLATILITY = 0.0018
RANGE_MULTIPLIER = 1.2
DRIFT_MULTIPLIER = 1.15
MIN_RANGE_PCT = 0.001
MAX_RANGE_PCT = 0.05
NEAR_BAND_FRACTION = 0.3
FAR_BAND_FRACTION = 0.9


def estimate_zones(
    signal: Signal,
    extractor: FeatureExtractor,
    horizon_min: float,
    poll_interval_ms: float,
) -> Zones:
    """Project up/down price bands for the horizon and pick an expected stop.

    The range is recent per-step gold volatility scaled by the square root
    of the number of polls inside the horizon. Drift tilts the bands toward
    the side ``p_up`` favours.
    """
    vol = extractor.volatility(GOLD_SERIES, max(10.0, horizon_min))
    if vol is None or not math.isfinite(vol):
        vol = FALLBACK_VOLATILITY
    step_min = max(0.5, poll_interval_ms / 60_000)
    steps = max(1.0, horizon_min / step_min)
    range_pct = clamp(vol * math.sqrt(steps) * RANGE_MULTIPLIER, MIN_RANGE_PCT, MAX_RANGE_PCT)
    drift_pct = (signal.p_up - 0.5) * 2 * range_pct * DRIFT_MULTIPLIER

    price = signal.price
    up_drift = max(0.0, drift_pct)
    down_drift = max(0.0, -drift_pct)
    up_low = price * (1 + up_drift + range_pct * NEAR_BAND_FRACTION)
    up_high = price * (1 + up_drift + range_pct * FAR_BAND_FRACTION)
    down_high = price * (1 - down_drift - range_pct * NEAR_BAND_FRACTION)
    down_low = price * (1 - down_drift - range_pct * FAR_BAND_FRACTION)

    if signal.p_up >= 0.5:
        expected_stop = (up_low + up_high) / 2
    else:
        expected_stop = (down_low + down_high) / 2

    return Zones(
        range_pct=range_pct,
        drift_pct=drift_pct,
        expected_stop=expected_stop,
        up_low=max(0.0, up_low),
        up_high=max(0.0, up_high),
        down_low=max(0.0, down_low),
        down_high=max(0.0, down_high),
    )
