"""Snapshot normalization: raw provider values to typed, unit-consistent snapshots.

The working unit is the toman. The primary quote is published in thousands
of toman; a handful of auxiliary indicators are published in rial. Each
normalized field is stamped ``unit_adjusted=True`` so that reloading a
persisted snapshot never converts it twice.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from gold_advisor.errors import ParseError
from gold_advisor.models import FEATURE_KEYS, Field, Snapshot

PRIMARY_TO_TOMAN_MULTIPLIER = 1_000
RIAL_TO_TOMAN_DIVISOR = 10
RIAL_DENOMINATED_KEYS = frozenset(
    {"price_dollar_rl", "silver", "tgju_gold_irg18", "tgju_gold_irg18_buy"}
)

_NON_NUMERIC = re.compile(r"[^\d.-]")


@dataclass(frozen=True)
class RawIndicator:
    value: Any
    timestamp: Any = None


@dataclass(frozen=True)
class RawQuote:
    """One fetch worth of provider data, before any parsing."""

    price: Any
    indicators: Mapping[str, RawIndicator] = field(default_factory=dict)


def parse_number(raw: Any) -> float | None:
    """Parse a provider number; strings are stripped to ``[0-9.-]`` first."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else None
    cleaned = _NON_NUMERIC.sub("", str(raw).strip())
    if not cleaned or cleaned in {"-", "."}:
        return None
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_timestamp_ms(raw: Any) -> float | None:
    """Epoch milliseconds from a number, ``datetime`` or ISO-like string.

    Naive values are interpreted in local time.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.timestamp() * 1000.0
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        pass
    else:
        return value if math.isfinite(value) else None
    normalized = text.replace(" ", "T", 1)
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(normalized).timestamp() * 1000.0
    except ValueError:
        return None


def normalize_primary_price(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value * PRIMARY_TO_TOMAN_MULTIPLIER


def normalize_field_value(key: str, value: float | None, already_adjusted: bool) -> float | None:
    """Convert an auxiliary value to toman. No-op when ``already_adjusted``."""
    if value is None or not math.isfinite(value):
        return None
    if key not in RIAL_DENOMINATED_KEYS or already_adjusted:
        return value
    return value / RIAL_TO_TOMAN_DIVISOR


def is_fresh(value: float | None, age_minutes: float | None, freshness_max_min: float) -> bool:
    return (
        value is not None
        and age_minutes is not None
        and math.isfinite(age_minutes)
        and 0 <= age_minutes <= freshness_max_min
    )


def build_field(
    key: str,
    raw_value: Any,
    raw_timestamp: Any,
    snapshot_ms: float,
    freshness_max_min: float,
    already_adjusted: bool = False,
) -> Field:
    value = normalize_field_value(key, parse_number(raw_value), already_adjusted)
    ts = parse_timestamp_ms(raw_timestamp)
    age = (snapshot_ms - ts) / 60_000.0 if ts is not None else None
    return Field(
        value=value,
        timestamp_ms=ts,
        age_minutes=age,
        is_fresh=is_fresh(value, age, freshness_max_min),
        unit_adjusted=True,
    )


def normalize_quote(quote: RawQuote, now_ms: int, freshness_max_min: float) -> Snapshot:
    """Turn a freshly fetched quote into a ``Snapshot``.

    Raises ``ParseError`` when the primary price is unusable. Auxiliary
    parse failures only yield null, stale fields.
    """
    price = normalize_primary_price(parse_number(quote.price))
    if price is None:
        raise ParseError(f"primary price parse failed: {quote.price!r}")

    fields: Dict[str, Field] = {}
    for key in FEATURE_KEYS:
        raw = quote.indicators.get(key)
        fields[key] = build_field(
            key,
            raw.value if raw is not None else None,
            raw.timestamp if raw is not None else None,
            now_ms,
            freshness_max_min,
        )
    return Snapshot(
        timestamp_ms=int(now_ms),
        gold_price=price,
        raw_price_text=str(quote.price),
        fields=fields,
    )


def normalize_record(record: Mapping[str, Any], freshness_max_min: float) -> Optional[Snapshot]:
    """Rebuild a ``Snapshot`` from a persisted row; ``None`` if unusable.

    Rows written before the primary price was scaled carry a gold price
    equal to the raw text; those are rescaled here.
    """
    t = parse_timestamp_ms(record.get("timestamp_ms"))
    raw_price = parse_number(record.get("raw_price_text"))
    gold = record.get("gold_price")
    gold_price = parse_number(gold if gold is not None else record.get("raw_price_text"))
    if gold_price is not None and raw_price:
        ratio = gold_price / raw_price
        if 0.99 < ratio < 1.01:
            gold_price = normalize_primary_price(gold_price)
    if t is None or gold_price is None:
        return None

    stored_fields = record.get("fields") or {}
    fields: Dict[str, Field] = {}
    for key in FEATURE_KEYS:
        stored = stored_fields.get(key) or {}
        fields[key] = build_field(
            key,
            stored.get("value"),
            stored.get("timestamp_ms"),
            t,
            freshness_max_min,
            already_adjusted=bool(stored.get("unit_adjusted")),
        )
    raw_text = record.get("raw_price_text")
    return Snapshot(
        timestamp_ms=int(t),
        gold_price=gold_price,
        raw_price_text=str(raw_text if raw_text is not None else gold_price),
        fields=fields,
    )
