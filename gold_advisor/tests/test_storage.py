from __future__ import annotations

import json
import sqlite3

import pytest

from gold_advisor.config import EngineSettings, Profile
from gold_advisor.decision import DecisionPolicy
from gold_advisor.models import Field, Signal, Snapshot, Zones
from gold_advisor.normalizer import normalize_record
from gold_advisor.portfolio import compute_portfolio_stats
from gold_advisor.storage import SnapshotStore

T0 = 1_760_000_000_000
MINUTE = 60_000
PROFILE = Profile(cash_amount=50_000_000)
ZONES = Zones(0.01, 0.002, 7_200_000.0, 7_160_000.0, 7_240_000.0, 7_080_000.0, 7_120_000.0)


def _snap(ts: int, price: float = 7_150_000.0) -> Snapshot:
    return Snapshot(
        timestamp_ms=ts,
        gold_price=price,
        raw_price_text="7150",
        fields={
            "silver": Field(value=1200.0, timestamp_ms=ts - MINUTE, age_minutes=1.0, is_fresh=True),
        },
    )


def _signal(snap: Snapshot, inputs=None) -> Signal:
    return Signal(
        score=0.4, p_up=0.69, confidence=0.3, coverage=1.0, freshness=1.0,
        fresh_field_count=11, total_field_count=11, price=snap.gold_price,
        timestamp_ms=snap.timestamp_ms,
        inputs={"gold_mom_5": 0.01, "divergence": None} if inputs is None else inputs,
    )


def _save(store: SnapshotStore, snap: Snapshot, inputs=None, purge_before=None):
    signal = _signal(snap, inputs)
    decision = DecisionPolicy().evaluate(signal, ZONES, PROFILE, EngineSettings(), snap.timestamp_ms)
    return store.save_tick(
        snap, signal, ZONES, decision, compute_portfolio_stats(PROFILE, signal.price), 30,
        purge_before=purge_before,
    )


def _store(tmp_path) -> SnapshotStore:
    store = SnapshotStore(str(tmp_path / "gold.db"))
    store.open()
    return store


class TestSnapshots:
    def test_query_returns_newest_rows_oldest_first(self, tmp_path) -> None:
        store = _store(tmp_path)
        for i in range(5):
            _save(store, _snap(T0 + i * MINUTE, 7_000_000.0 + i))
        rows = store.query_snapshots(since_ts=T0 + MINUTE, limit=3)
        assert [r["timestamp_ms"] for r in rows] == [T0 + 2 * MINUTE, T0 + 3 * MINUTE, T0 + 4 * MINUTE]
        assert rows[0]["fields"]["silver"]["unit_adjusted"] is True
        store.close()

    def test_rows_normalize_back_without_double_conversion(self, tmp_path) -> None:
        store = _store(tmp_path)
        _save(store, _snap(T0))
        (row,) = store.query_snapshots(since_ts=0, limit=10)
        snap = normalize_record(row, 180)
        assert snap is not None
        assert snap.gold_price == pytest.approx(7_150_000.0)
        assert snap.fields["silver"].value == pytest.approx(1200.0)
        store.close()

    def test_delete_before(self, tmp_path) -> None:
        store = _store(tmp_path)
        for i in range(4):
            _save(store, _snap(T0 + i * MINUTE))
        # Two snapshot rows plus their two signal rows.
        removed = store.delete_before(T0 + 2 * MINUTE)
        assert removed == 4
        assert store.count_snapshots() == 2
        assert len(store.recent_signals()) == 2
        store.close()

    def test_memory_database(self) -> None:
        store = SnapshotStore(":memory:")
        _save(store, _snap(T0))
        assert store.count_snapshots() == 1
        store.close()
        assert not store.is_open


class TestSaveTick:
    def test_signal_row_links_snapshot_and_json_columns(self, tmp_path) -> None:
        store = _store(tmp_path)
        snapshot_id, removed = _save(store, _snap(T0))
        assert removed == 0

        recent = store.recent_signals()
        assert len(recent) == 1
        assert recent[0]["action"] in {"BUY", "SELL", "HOLD"}

        conn = sqlite3.connect(str(tmp_path / "gold.db"))
        inputs_json, snap_id = conn.execute("SELECT inputs_json, snapshot_id FROM signals").fetchone()
        conn.close()
        assert json.loads(inputs_json) == {"gold_mom_5": 0.01, "divergence": None}
        assert snap_id == snapshot_id
        store.close()

    def test_failed_signal_write_leaves_no_snapshot(self, tmp_path) -> None:
        store = _store(tmp_path)
        _save(store, _snap(T0))
        with pytest.raises(ValueError):
            _save(store, _snap(T0 + MINUTE), inputs={"gold_mom_5": float("nan")})
        assert store.count_snapshots() == 1
        assert len(store.recent_signals()) == 1
        store.close()

    def test_purge_runs_in_the_same_write(self, tmp_path) -> None:
        store = _store(tmp_path)
        for i in range(3):
            _save(store, _snap(T0 + i * MINUTE))
        _, removed = _save(store, _snap(T0 + 3 * MINUTE), purge_before=T0 + 2 * MINUTE)
        assert removed == 4
        assert store.count_snapshots() == 2
        store.close()


class TestSingletons:
    def test_settings_and_profile_last_write_wins(self, tmp_path) -> None:
        store = _store(tmp_path)
        assert store.load_settings() is None
        assert store.load_profile() is None

        store.save_settings(EngineSettings(), T0)
        store.save_settings(EngineSettings(poll_interval_ms=30_000), T0 + 1)
        store.save_profile(Profile(gold_grams=3.0), T0)

        assert store.load_settings()["poll_interval_ms"] == 30_000
        assert store.load_profile()["gold_grams"] == pytest.approx(3.0)
        store.close()

    def test_reopen_keeps_data(self, tmp_path) -> None:
        store = _store(tmp_path)
        store.save_profile(Profile(cash_amount=10.0), T0)
        store.close()

        again = _store(tmp_path)
        assert again.load_profile()["cash_amount"] == pytest.approx(10.0)
        again.close()
