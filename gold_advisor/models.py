from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Auxiliary indicators tracked on every snapshot.
FEATURE_KEYS: tuple[str, ...] = (
    "price_dollar_rl",
    "ons",
    "tether_gold_xaut",
    "silver",
    "ratio_sp500",
    "ratio_silver",
    "ratio_xau",
    "ratio_crudeoil",
    "tgju_gold_irg18",
    "tgju_gold_irg18_buy",
    "usdt-irr",
)


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class GateReason(str, Enum):
    """Machine-readable identifier of the rule that produced a decision."""

    WARMING_UP = "warming_up"
    LOW_CONFIDENCE = "low_confidence"
    NEUTRAL_ZONE = "neutral_zone"
    BUY_THRESHOLD = "buy_threshold"
    SELL_THRESHOLD = "sell_threshold"
    INSUFFICIENT_CASH = "insufficient_cash"
    NO_HOLDINGS = "no_holdings"
    BUY_EDGE_BELOW_FEES = "buy_edge_below_fees"
    SELL_EDGE_BELOW_FEES = "sell_edge_below_fees"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class Field:
    """One auxiliary indicator reading, already in working units."""

    value: float | None
    timestamp_ms: float | None
    age_minutes: float | None
    is_fresh: bool
    unit_adjusted: bool = True


@dataclass(frozen=True)
class Snapshot:
    timestamp_ms: int
    gold_price: float
    raw_price_text: str
    fields: Mapping[str, Field] = field(default_factory=dict)

    def fresh_count(self) -> int:
        return sum(1 for f in self.fields.values() if f.is_fresh)


@dataclass(frozen=True)
class Signal:
    score: float
    p_up: float
    confidence: float
    coverage: float
    freshness: float
    fresh_field_count: int
    total_field_count: int
    price: float
    timestamp_ms: int
    inputs: Mapping[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["inputs"] = dict(self.inputs)
        return out


@dataclass(frozen=True)
class Zones:
    range_pct: float
    drift_pct: float
    expected_stop: float
    up_low: float
    up_high: float
    down_low: float
    down_high: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Decision:
    action: Action
    gate: GateReason
    reason: str
    expected_price: float
    buy_edge_pct: float | None = None
    sell_edge_pct: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "gate": self.gate.value,
            "reason": self.reason,
            "expected_price": self.expected_price,
            "buy_edge_pct": self.buy_edge_pct,
            "sell_edge_pct": self.sell_edge_pct,
        }


@dataclass(frozen=True)
class PendingPrediction:
    timestamp_ms: int
    base_price: float
    p_up: float


@dataclass
class Metrics:
    """Cumulative forecast reliability counters."""

    total: int = 0
    correct: int = 0
    brier_sum: float = 0.0

    @property
    def hit_rate(self) -> float | None:
        if self.total == 0:
            return None
        return self.correct / self.total

    @property
    def mean_brier(self) -> float | None:
        if self.total == 0:
            return None
        return self.brier_sum / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "correct": self.correct,
            "brier_sum": self.brier_sum,
            "hit_rate": self.hit_rate,
            "mean_brier": self.mean_brier,
        }


@dataclass(frozen=True)
class PortfolioStats:
    cash_amount: float
    gold_grams: float
    avg_buy_price: float
    buy_fee_pct: float
    sell_fee_pct: float
    basis_gross: float
    basis_with_buy_fee: float
    gold_mark_value: float
    gold_liquidation_value: float
    portfolio_mark_value: float
    portfolio_liquidation_value: float
    net_pnl_after_fees: float
    net_pnl_pct: float | None
    break_even_sell_price: float | None
    affordable_grams: float
    cost_per_gram_buy: float
    proceeds_per_gram_sell: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PricePoint:
    t: int
    p: float
