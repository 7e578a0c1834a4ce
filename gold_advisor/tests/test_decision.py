"""Tests for the fee-aware decision policy and its gate precedence."""

from __future__ import annotations

import pytest

from gold_advisor.config import EngineSettings, Profile
from gold_advisor.decision import DecisionPolicy, compute_edges, waiting_decision
from gold_advisor.models import Action, Decision, GateReason, Signal, Zones

T0 = 1_760_000_000_000
MINUTE = 60_000
PRICE = 1_000_000.0


# ── Helpers ────────────────────────────────────────────────────────

def _make_signal(p_up: float = 0.8, confidence: float = 0.6, price: float = PRICE) -> Signal:
    return Signal(
        score=0.0,
        p_up=p_up,
        confidence=confidence,
        coverage=1.0,
        freshness=1.0,
        fresh_field_count=11,
        total_field_count=11,
        price=price,
        timestamp_ms=T0,
    )


def _make_zones(expected_stop: float) -> Zones:
    return Zones(
        range_pct=0.01,
        drift_pct=0.0,
        expected_stop=expected_stop,
        up_low=expected_stop,
        up_high=expected_stop,
        down_low=expected_stop,
        down_high=expected_stop,
    )


def _make_profile(**overrides) -> Profile:
    defaults = dict(cash_amount=10 * PRICE, gold_grams=5.0, avg_buy_price=PRICE)
    defaults.update(overrides)
    return Profile(**defaults)


def _decide(policy: DecisionPolicy, signal, zones, profile, settings, now_ms) -> Decision:
    decision = policy.evaluate(signal, zones, profile, settings, now_ms)
    policy.record(decision, now_ms)
    return decision


SETTINGS = EngineSettings(
    buy_threshold=0.6, sell_threshold=0.4, min_confidence=0.2, action_cooldown_min=8
)
BULL_ZONES = _make_zones(PRICE * 1.02)
BEAR_ZONES = _make_zones(PRICE * 0.98)


class TestEdges:
    def test_edges_include_both_fees(self) -> None:
        buy_edge, sell_edge = compute_edges(PRICE, PRICE, Profile())
        cost = PRICE * 1.003
        assert buy_edge == pytest.approx((PRICE * 0.997 - cost) / cost)
        assert buy_edge < 0
        assert sell_edge < 0

    def test_zero_price_has_no_edge(self) -> None:
        assert compute_edges(0.0, PRICE, Profile()) == (None, None)


class TestGates:
    def test_low_confidence(self) -> None:
        d = _decide(
            DecisionPolicy(),
            _make_signal(confidence=0.1), BULL_ZONES, _make_profile(), SETTINGS, T0
        )
        assert d.action is Action.HOLD
        assert d.gate is GateReason.LOW_CONFIDENCE
        assert "confidence" in d.reason

    def test_neutral_zone(self) -> None:
        d = _decide(DecisionPolicy(), _make_signal(p_up=0.5), BULL_ZONES, _make_profile(), SETTINGS, T0)
        assert d.action is Action.HOLD
        assert d.gate is GateReason.NEUTRAL_ZONE
        assert d.reason == "inside neutral zone"

    def test_buy(self) -> None:
        d = _decide(DecisionPolicy(), _make_signal(p_up=0.8), BULL_ZONES, _make_profile(), SETTINGS, T0)
        assert d.action is Action.BUY
        assert d.gate is GateReason.BUY_THRESHOLD
        assert "P(up)" in d.reason
        assert d.buy_edge_pct > 0
        assert d.expected_price == pytest.approx(PRICE * 1.02)

    def test_sell(self) -> None:
        d = _decide(DecisionPolicy(), _make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), SETTINGS, T0)
        assert d.action is Action.SELL
        assert d.gate is GateReason.SELL_THRESHOLD
        assert d.sell_edge_pct > 0

    def test_insufficient_cash(self) -> None:
        profile = _make_profile(cash_amount=PRICE)  # one gram but not the fee
        d = _decide(DecisionPolicy(), _make_signal(), BULL_ZONES, profile, SETTINGS, T0)
        assert d.action is Action.HOLD
        assert d.gate is GateReason.INSUFFICIENT_CASH
        assert "cash" in d.reason

    def test_no_holdings(self) -> None:
        profile = _make_profile(gold_grams=0.0)
        d = _decide(DecisionPolicy(), _make_signal(p_up=0.2), BEAR_ZONES, profile, SETTINGS, T0)
        assert d.gate is GateReason.NO_HOLDINGS

    def test_buy_edge_below_fees(self) -> None:
        zones = _make_zones(PRICE * 1.001)
        d = _decide(DecisionPolicy(), _make_signal(), zones, _make_profile(), SETTINGS, T0)
        assert d.action is Action.HOLD
        assert d.gate is GateReason.BUY_EDGE_BELOW_FEES
        assert "edge does not clear fees" in d.reason

    def test_sell_edge_below_fees(self) -> None:
        zones = _make_zones(PRICE * 0.999)
        d = _decide(DecisionPolicy(), _make_signal(p_up=0.2), zones, _make_profile(), SETTINGS, T0)
        assert d.gate is GateReason.SELL_EDGE_BELOW_FEES

    def test_confidence_wins_over_inventory(self) -> None:
        profile = _make_profile(cash_amount=0.0)
        d = _decide(
            DecisionPolicy(),
            _make_signal(confidence=0.05), BULL_ZONES, profile, SETTINGS, T0
        )
        assert d.gate is GateReason.LOW_CONFIDENCE

    def test_inventory_wins_over_edge(self) -> None:
        profile = _make_profile(cash_amount=0.0)
        d = _decide(DecisionPolicy(), _make_signal(), _make_zones(PRICE), profile, SETTINGS, T0)
        assert d.gate is GateReason.INSUFFICIENT_CASH


class TestCooldown:
    def test_flip_within_cooldown_is_held(self) -> None:
        policy = DecisionPolicy()
        first = _decide(policy, _make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), SETTINGS, T0)
        assert first.action is Action.SELL

        d = _decide(policy, _make_signal(), BULL_ZONES, _make_profile(), SETTINGS, T0 + 3 * MINUTE)
        assert d.action is Action.HOLD
        assert d.gate is GateReason.COOLDOWN
        assert "cooldown active (5m left" in d.reason
        assert policy.last_action is Action.SELL

    def test_flip_after_cooldown_is_allowed(self) -> None:
        policy = DecisionPolicy()
        _decide(policy, _make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), SETTINGS, T0)
        d = _decide(policy, _make_signal(), BULL_ZONES, _make_profile(), SETTINGS, T0 + 8 * MINUTE)
        assert d.action is Action.BUY
        assert policy.last_action is Action.BUY
        assert policy.last_action_ms == T0 + 8 * MINUTE

    def test_repeat_is_not_gated(self) -> None:
        policy = DecisionPolicy()
        _decide(policy, _make_signal(), BULL_ZONES, _make_profile(), SETTINGS, T0)
        d = _decide(policy, _make_signal(), BULL_ZONES, _make_profile(), SETTINGS, T0 + MINUTE)
        assert d.action is Action.BUY

    def test_hold_does_not_reset_memory(self) -> None:
        policy = DecisionPolicy()
        _decide(policy, _make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), SETTINGS, T0)
        _decide(policy, _make_signal(p_up=0.5), BULL_ZONES, _make_profile(), SETTINGS, T0 + MINUTE)
        assert policy.last_action is Action.SELL
        assert policy.last_action_ms == T0

    def test_evaluate_leaves_memory_until_recorded(self) -> None:
        policy = DecisionPolicy()
        d = policy.evaluate(_make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), SETTINGS, T0)
        assert d.action is Action.SELL
        assert policy.last_action is None
        assert policy.last_action_ms is None

        policy.record(d, T0)
        assert policy.last_action is Action.SELL
        assert policy.last_action_ms == T0

    def test_zero_cooldown(self) -> None:
        settings = EngineSettings(action_cooldown_min=0)
        policy = DecisionPolicy()
        _decide(policy, _make_signal(p_up=0.2), BEAR_ZONES, _make_profile(), settings, T0)
        d = _decide(policy, _make_signal(), BULL_ZONES, _make_profile(), settings, T0)
        assert d.action is Action.BUY


def test_waiting_decision() -> None:
    d = waiting_decision()
    assert d.action is Action.HOLD
    assert d.gate is GateReason.WARMING_UP
    assert d.to_dict()["gate"] == "warming_up"
