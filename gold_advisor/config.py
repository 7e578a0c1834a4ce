from __future__ import annotations

import math
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Mapping, Tuple

from dotenv import load_dotenv

from gold_advisor.errors import ValidationError

DEFAULT_TGJU_URL = (
    "https://call4.tgju.org/ajax.json"
    "?rev=4onobYe9NtlQDpR4lIpf5ZfBGO8uT37Hj0vJgT8iW7AqvM5BjisvF4BobKoT"
)
DEFAULT_TALASEA_URL = "https://api.talasea.ir/api/market/getGoldPrice"


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if math.isfinite(parsed) else default


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(_as_float(value, float(default)))


@dataclass(frozen=True)
class EngineSettings:
    """Runtime-tunable engine parameters.

    Persisted as a singleton row and editable through ``update_settings``.
    ``buy_threshold`` must stay strictly above ``sell_threshold``.
    """

    poll_interval_ms: int = 60_000
    prediction_horizon_min: float = 30.0
    freshness_max_min: float = 180.0
    buy_threshold: float = 0.6
    sell_threshold: float = 0.4
    min_confidence: float = 0.2
    action_cooldown_min: float = 8.0
    history_retention_hours: float = 24.0 * 30
    max_in_memory_points: int = 50_000
    request_timeout_ms: int = 15_000

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Profile:
    """User-owned holdings. The engine reads it and never writes it."""

    cash_amount: float = 0.0
    gold_grams: float = 0.0
    avg_buy_price: float = 0.0
    buy_fee_pct: float = 0.003
    sell_fee_pct: float = 0.003

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# name -> (lower, upper, integral)
SETTINGS_BOUNDS: Dict[str, Tuple[float, float, bool]] = {
    "poll_interval_ms": (10_000, 3_600_000, True),
    "prediction_horizon_min": (5, 1_440, False),
    "freshness_max_min": (15, 1_440, False),
    "buy_threshold": (0.01, 0.99, False),
    "sell_threshold": (0.01, 0.99, False),
    "min_confidence": (0.0, 1.0, False),
    "action_cooldown_min": (0, 360, False),
    "history_retention_hours": (24, 24 * 365, False),
    "max_in_memory_points": (1_000, 1_000_000, True),
    "request_timeout_ms": (3_000, 60_000, True),
}

PROFILE_BOUNDS: Dict[str, Tuple[float, float, bool]] = {
    "cash_amount": (0.0, math.inf, False),
    "gold_grams": (0.0, math.inf, False),
    "avg_buy_price": (0.0, math.inf, False),
    "buy_fee_pct": (0.0, 0.2, False),
    "sell_fee_pct": (0.0, 0.2, False),
}


def _coerce(
    name: str,
    raw: Any,
    bounds: Tuple[float, float, bool],
    default: float,
    strict: bool,
) -> float:
    lower, upper, integral = bounds
    if isinstance(raw, bool):
        value = math.nan
    elif isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            value = math.nan
    else:
        value = math.nan

    if not math.isfinite(value):
        if strict:
            raise ValidationError(f"{name} must be a finite number, got {raw!r}")
        value = float(default)

    if value < lower or value > upper:
        if strict:
            raise ValidationError(f"{name}={value:g} outside allowed range [{lower:g}, {upper:g}]")
        value = min(upper, max(lower, value))

    if integral:
        return int(round(value))
    return value


def sanitize_settings(values: Mapping[str, Any], *, strict: bool = True) -> EngineSettings:
    """Build validated ``EngineSettings`` from a full or partial mapping.

    Missing keys take the dataclass defaults. In strict mode any invalid
    value raises ``ValidationError``; in lenient mode (startup loading) it is
    clamped or replaced by the default. The threshold ordering is enforced
    in both modes.
    """
    defaults = EngineSettings()
    out: Dict[str, Any] = {}
    for f in fields(EngineSettings):
        default = getattr(defaults, f.name)
        raw = values.get(f.name, default)
        out[f.name] = _coerce(f.name, raw, SETTINGS_BOUNDS[f.name], default, strict)
    settings = EngineSettings(**out)
    if settings.buy_threshold <= settings.sell_threshold:
        raise ValidationError("buy_threshold must be higher than sell_threshold")
    return settings


def sanitize_profile(values: Mapping[str, Any], *, strict: bool = True) -> Profile:
    defaults = Profile()
    out: Dict[str, Any] = {}
    for f in fields(Profile):
        default = getattr(defaults, f.name)
        raw = values.get(f.name, default)
        out[f.name] = _coerce(f.name, raw, PROFILE_BOUNDS[f.name], default, strict)
    return Profile(**out)


def _check_patch(patch: Any, allowed: Mapping[str, Any], kind: str) -> None:
    if not isinstance(patch, Mapping):
        raise ValidationError(f"{kind} patch must be an object")
    unknown = sorted(set(patch) - set(allowed))
    if unknown:
        raise ValidationError(f"unknown {kind} field(s): {', '.join(unknown)}")


def apply_settings_patch(current: EngineSettings, patch: Mapping[str, Any]) -> EngineSettings:
    """Validate ``patch`` against ``current`` and return the merged result.

    Raises ``ValidationError`` without side effects on any bad field.
    """
    _check_patch(patch, SETTINGS_BOUNDS, "settings")
    return sanitize_settings({**current.to_dict(), **patch}, strict=True)


def apply_profile_patch(current: Profile, patch: Mapping[str, Any]) -> Profile:
    _check_patch(patch, PROFILE_BOUNDS, "profile")
    return sanitize_profile({**current.to_dict(), **patch}, strict=True)


@dataclass(frozen=True)
class AppSettings:
    engine: EngineSettings = field(default_factory=EngineSettings)
    profile: Profile = field(default_factory=Profile)
    db_path: str = "gold_advisor.db"
    api_host: str = "127.0.0.1"
    api_port: int = 8787
    log_level: str = "INFO"
    retention_sweep_interval_ms: int = 15 * 60_000
    max_log_lines: int = 40
    chart_points: int = 300
    tgju_url: str = DEFAULT_TGJU_URL
    talasea_url: str = DEFAULT_TALASEA_URL
    run_once: bool = False


def load_settings() -> AppSettings:
    """Build ``AppSettings`` from ``GOLD_*`` environment variables."""
    load_dotenv(override=False)

    defaults = EngineSettings()
    engine = sanitize_settings(
        {
            f.name: _as_float(os.getenv(f"GOLD_{f.name.upper()}"), getattr(defaults, f.name))
            for f in fields(EngineSettings)
        },
        strict=False,
    )
    profile_defaults = Profile()
    profile = sanitize_profile(
        {
            f.name: _as_float(os.getenv(f"GOLD_{f.name.upper()}"), getattr(profile_defaults, f.name))
            for f in fields(Profile)
        },
        strict=False,
    )

    return AppSettings(
        engine=engine,
        profile=profile,
        db_path=os.getenv("GOLD_DB_PATH", "gold_advisor.db"),
        api_host=os.getenv("GOLD_API_HOST", "127.0.0.1"),
        api_port=_as_int(os.getenv("GOLD_API_PORT"), 8787),
        log_level=os.getenv("GOLD_LOG_LEVEL", "INFO"),
        retention_sweep_interval_ms=_as_int(
            os.getenv("GOLD_RETENTION_SWEEP_INTERVAL_MS"), 15 * 60_000
        ),
        max_log_lines=_as_int(os.getenv("GOLD_MAX_LOG_LINES"), 40),
        chart_points=_as_int(os.getenv("GOLD_CHART_POINTS"), 300),
        tgju_url=os.getenv("GOLD_TGJU_URL", DEFAULT_TGJU_URL),
        talasea_url=os.getenv("GOLD_TALASEA_URL", DEFAULT_TALASEA_URL),
        run_once=_as_bool(os.getenv("GOLD_RUN_ONCE"), False),
    )
