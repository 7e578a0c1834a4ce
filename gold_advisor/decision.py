"""Fee-aware BUY/SELL/HOLD policy.

Gates are evaluated in a fixed order and the first one that forces HOLD
supplies the reason:

1. confidence below ``min_confidence``
2. P(up) thresholds (tentative BUY / SELL, otherwise neutral HOLD)
3. inventory: cash for one gram including fee, or grams to sell
4. fee-aware edge against the expected stop
5. cooldown on a change of action

The policy remembers the last non-HOLD action and when it was emitted;
that is the only state it carries between ticks.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

from gold_advisor.config import EngineSettings, Profile
from gold_advisor.models import Action, Decision, GateReason, Signal, Zones

LOGGER = logging.getLogger(__name__)


def compute_edges(
    price: float,
    expected_price: float,
    profile: Profile,
) -> Tuple[Optional[float], Optional[float]]:
    """Return ``(buy_edge_pct, sell_edge_pct)`` including both fees.

    Buy edge: sell at the expected stop after buying now.
    Sell edge: rebuy at the expected stop after selling now.
    """
    buy_now_cost = price * (1 + profile.buy_fee_pct)
    sell_now_proceeds = price * (1 - profile.sell_fee_pct)
    expected_sell = expected_price * (1 - profile.sell_fee_pct)
    expected_rebuy = expected_price * (1 + profile.buy_fee_pct)
    buy_edge = (expected_sell - buy_now_cost) / buy_now_cost if buy_now_cost > 0 else None
    sell_edge = (
        (sell_now_proceeds - expected_rebuy) / sell_now_proceeds if sell_now_proceeds > 0 else None
    )
    return buy_edge, sell_edge


def waiting_decision() -> Decision:
    return Decision(
        action=Action.HOLD,
        gate=GateReason.WARMING_UP,
        reason="waiting for first fetch",
        expected_price=0.0,
    )


class DecisionPolicy:
    def __init__(self) -> None:
        self._last_action: Optional[Action] = None
        self._last_action_ms: Optional[int] = None

    @property
    def last_action(self) -> Optional[Action]:
        return self._last_action

    @property
    def last_action_ms(self) -> Optional[int]:
        return self._last_action_ms

    def evaluate(
        self,
        signal: Signal,
        zones: Zones,
        profile: Profile,
        settings: EngineSettings,
        now_ms: int,
    ) -> Decision:
        """Pure evaluation against the current cooldown memory."""
        expected_price = zones.expected_stop if math.isfinite(zones.expected_stop) else signal.price
        buy_edge, sell_edge = compute_edges(signal.price, expected_price, profile)

        def _decision(action: Action, gate: GateReason, reason: str) -> Decision:
            return Decision(
                action=action,
                gate=gate,
                reason=reason,
                expected_price=expected_price,
                buy_edge_pct=buy_edge,
                sell_edge_pct=sell_edge,
            )

        if signal.confidence < settings.min_confidence:
            return _decision(
                Action.HOLD,
                GateReason.LOW_CONFIDENCE,
                f"confidence {signal.confidence:.1%} below threshold {settings.min_confidence:.1%}",
            )

        if signal.p_up >= settings.buy_threshold:
            action, gate = Action.BUY, GateReason.BUY_THRESHOLD
            reason = f"P(up) {signal.p_up:.1%} >= buy threshold {settings.buy_threshold:.1%}"
        elif signal.p_up <= settings.sell_threshold:
            action, gate = Action.SELL, GateReason.SELL_THRESHOLD
            reason = f"P(up) {signal.p_up:.1%} <= sell threshold {settings.sell_threshold:.1%}"
        else:
            return _decision(Action.HOLD, GateReason.NEUTRAL_ZONE, "inside neutral zone")

        if action is Action.BUY and profile.cash_amount < signal.price * (1 + profile.buy_fee_pct):
            return _decision(
                Action.HOLD, GateReason.INSUFFICIENT_CASH, "not enough cash for 1g including fee"
            )
        if action is Action.SELL and profile.gold_grams <= 0:
            return _decision(Action.HOLD, GateReason.NO_HOLDINGS, "no gold holdings to sell")

        if action is Action.BUY and buy_edge is not None and buy_edge <= 0:
            return _decision(
                Action.HOLD, GateReason.BUY_EDGE_BELOW_FEES, "BUY edge does not clear fees"
            )
        if action is Action.SELL and sell_edge is not None and sell_edge <= 0:
            return _decision(
                Action.HOLD, GateReason.SELL_EDGE_BELOW_FEES, "SELL edge does not clear fees"
            )

        if (
            self._last_action is not None
            and self._last_action_ms is not None
            and action is not self._last_action
        ):
            elapsed_min = (now_ms - self._last_action_ms) / 60_000
            if elapsed_min < settings.action_cooldown_min:
                remaining = math.ceil(settings.action_cooldown_min - elapsed_min)
                return _decision(
                    Action.HOLD,
                    GateReason.COOLDOWN,
                    f"cooldown active ({remaining}m left after {self._last_action.value})",
                )

        return _decision(action, gate, reason)

    def record(self, decision: Decision, now_ms: int) -> None:
        if decision.action is Action.HOLD:
            return
        self._last_action = decision.action
        self._last_action_ms = now_ms
