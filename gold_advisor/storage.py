"""SQLite persistence for snapshots, emitted signals, settings and profile.

Snapshots and signals are append-only and written together, one
transaction per tick; the retention sweep is the only delete path. Settings and profile are singleton rows holding JSON
(last write wins).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from gold_advisor.config import EngineSettings, Profile
from gold_advisor.models import Decision, PortfolioStats, Signal, Snapshot, Zones

LOGGER = logging.getLogger(__name__)


def _json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), allow_nan=False)


class SnapshotStore:
    """SQLite-backed store.

    Usage::

        store = SnapshotStore("gold_advisor.db")
        store.open()
        snapshot_id, _ = store.save_tick(snapshot, signal, zones, decision, portfolio, 30)
        rows = store.query_snapshots(since_ts=cutoff, limit=50_000)
    """

    def __init__(self, db_path: str = "gold_advisor.db") -> None:
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        """Open the database connection and create tables."""
        if self._conn is not None:
            return
        # The engine runs on one event loop, but the test client drives it from a worker thread.
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        LOGGER.info("snapshot store opened at %s", self._db_path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _ensure_open(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        assert self._conn is not None
        return self._conn

    def _create_tables(self) -> None:
        conn = self._ensure_open()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS profile (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS engine_settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp_ms INTEGER NOT NULL,
                gold_price REAL NOT NULL,
                raw_price_text TEXT NOT NULL,
                fields_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_snapshots_ts ON snapshots(timestamp_ms);

            CREATE TABLE IF NOT EXISTS signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp_ms INTEGER NOT NULL,
                snapshot_id INTEGER,
                horizon_min REAL NOT NULL,
                price REAL NOT NULL,
                p_up REAL NOT NULL,
                confidence REAL NOT NULL,
                score REAL NOT NULL,
                action TEXT NOT NULL,
                gate TEXT NOT NULL,
                reason TEXT NOT NULL,
                expected_price REAL NOT NULL,
                buy_edge_pct REAL,
                sell_edge_pct REAL,
                zones_json TEXT NOT NULL DEFAULT '{}',
                portfolio_json TEXT NOT NULL DEFAULT '{}',
                inputs_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_signals_ts ON signals(timestamp_ms);
        """)
        conn.commit()

    # -- snapshots ---------------------------------------------------------

    @staticmethod
    def _insert_snapshot(conn: sqlite3.Connection, snapshot: Snapshot) -> int:
        fields = {
            key: {
                "value": f.value,
                "timestamp_ms": f.timestamp_ms,
                "unit_adjusted": f.unit_adjusted,
            }
            for key, f in snapshot.fields.items()
        }
        cur = conn.execute(
            "INSERT INTO snapshots (timestamp_ms, gold_price, raw_price_text, fields_json) "
            "VALUES (?, ?, ?, ?)",
            (snapshot.timestamp_ms, snapshot.gold_price, snapshot.raw_price_text, _json(fields)),
        )
        return int(cur.lastrowid)

    def query_snapshots(self, since_ts: int, limit: int) -> List[Dict[str, Any]]:
        """Newest ``limit`` snapshot rows at or after ``since_ts``, oldest first."""
        conn = self._ensure_open()
        rows = conn.execute(
            "SELECT timestamp_ms, gold_price, raw_price_text, fields_json FROM snapshots "
            "WHERE timestamp_ms >= ? ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
            (int(since_ts), int(limit)),
        ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in reversed(rows):
            try:
                fields = json.loads(row["fields_json"] or "{}")
            except json.JSONDecodeError:
                LOGGER.warning("snapshot at %s has unreadable fields_json", row["timestamp_ms"])
                fields = {}
            out.append({
                "timestamp_ms": row["timestamp_ms"],
                "gold_price": row["gold_price"],
                "raw_price_text": row["raw_price_text"],
                "fields": fields,
            })
        return out

    def count_snapshots(self) -> int:
        conn = self._ensure_open()
        return int(conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0])

    @staticmethod
    def _purge(conn: sqlite3.Connection, ts: int) -> int:
        removed = conn.execute("DELETE FROM signals WHERE timestamp_ms < ?", (int(ts),)).rowcount
        removed += conn.execute("DELETE FROM snapshots WHERE timestamp_ms < ?", (int(ts),)).rowcount
        return removed

    def delete_before(self, ts: int) -> int:
        """Delete snapshots and signals older than ``ts``. Returns rows removed."""
        conn = self._ensure_open()
        with conn:
            return self._purge(conn, ts)

    # -- signals -----------------------------------------------------------

    @staticmethod
    def _insert_signal(
        conn: sqlite3.Connection,
        signal: Signal,
        zones: Zones,
        decision: Decision,
        portfolio: PortfolioStats,
        horizon_min: float,
        snapshot_id: Optional[int],
    ) -> int:
        cur = conn.execute(
            """INSERT INTO signals (
                timestamp_ms, snapshot_id, horizon_min, price, p_up, confidence, score,
                action, gate, reason, expected_price, buy_edge_pct, sell_edge_pct,
                zones_json, portfolio_json, inputs_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                signal.timestamp_ms,
                snapshot_id,
                horizon_min,
                signal.price,
                signal.p_up,
                signal.confidence,
                signal.score,
                decision.action.value,
                decision.gate.value,
                decision.reason,
                decision.expected_price,
                decision.buy_edge_pct,
                decision.sell_edge_pct,
                _json(zones.to_dict()),
                _json(portfolio.to_dict()),
                _json(dict(signal.inputs)),
            ),
        )
        return int(cur.lastrowid)

    def save_tick(
        self,
        snapshot: Snapshot,
        signal: Signal,
        zones: Zones,
        decision: Decision,
        portfolio: PortfolioStats,
        horizon_min: float,
        purge_before: Optional[int] = None,
    ) -> Tuple[int, int]:
        """Write one tick's snapshot and signal in a single transaction.

        With ``purge_before`` the retention delete joins the same
        transaction. Returns ``(snapshot_id, rows_purged)``; on any error
        nothing is written.
        """
        conn = self._ensure_open()
        with conn:
            snapshot_id = self._insert_snapshot(conn, snapshot)
            self._insert_signal(conn, signal, zones, decision, portfolio, horizon_min, snapshot_id)
            removed = self._purge(conn, purge_before) if purge_before is not None else 0
        return snapshot_id, removed

    def recent_signals(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._ensure_open()
        rows = conn.execute(
            "SELECT timestamp_ms, price, p_up, confidence, action, gate, reason "
            "FROM signals ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
            (int(limit),),
        ).fetchall()
        return [dict(row) for row in rows]

    # -- settings / profile ------------------------------------------------

    def _load_singleton(self, table: str) -> Optional[Dict[str, Any]]:
        conn = self._ensure_open()
        row = conn.execute(f"SELECT data_json FROM {table} WHERE id = 1").fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["data_json"])
        except json.JSONDecodeError:
            LOGGER.warning("%s row is not valid JSON; ignoring it", table)
            return None
        return data if isinstance(data, dict) else None

    def _save_singleton(self, table: str, data: Dict[str, Any], now_ms: int) -> None:
        conn = self._ensure_open()
        conn.execute(
            f"INSERT INTO {table} (id, data_json, updated_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data_json = excluded.data_json, "
            "updated_at = excluded.updated_at",
            (_json(data), int(now_ms)),
        )
        conn.commit()

    def load_settings(self) -> Optional[Dict[str, Any]]:
        return self._load_singleton("engine_settings")

    def save_settings(self, settings: EngineSettings, now_ms: int) -> None:
        self._save_singleton("engine_settings", settings.to_dict(), now_ms)

    def load_profile(self) -> Optional[Dict[str, Any]]:
        return self._load_singleton("profile")

    def save_profile(self, profile: Profile, now_ms: int) -> None:
        self._save_singleton("profile", profile.to_dict(), now_ms)
