"""GoldEngine: owns all mutable advisor state and runs the tick loop.

One tick is: fetch -> normalize -> append history -> score -> zones ->
decide -> portfolio -> persist snapshot and signal (one transaction, with
the retention purge when due) -> resolve pending predictions -> record
prediction and cooldown -> publish. A failed tick leaves prior state
untouched.

Only the fetch happens outside the state lock. At most one tick runs at a
time; an overlapping trigger (timer or manual) is skipped and logged.
``stop``/``close`` wait for an in-flight tick before releasing the store.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from gold_advisor.config import (
    AppSettings,
    EngineSettings,
    Profile,
    apply_profile_patch,
    apply_settings_patch,
    sanitize_profile,
    sanitize_settings,
)
from gold_advisor.decision import DecisionPolicy, waiting_decision
from gold_advisor.errors import ValidationError
from gold_advisor.history import HistoryStore
from gold_advisor.market_data import MarketDataSource
from gold_advisor.models import Decision, PortfolioStats, PricePoint, Signal, Zones
from gold_advisor.normalizer import RawQuote, normalize_quote, normalize_record
from gold_advisor.portfolio import compute_portfolio_stats
from gold_advisor.reliability import ReliabilityTracker
from gold_advisor.scoring import SignalScorer
from gold_advisor.storage import SnapshotStore
from gold_advisor.zones import estimate_zones

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[Dict[str, Any]], None]

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _format_event_line(ts_ms: int, seq: int, message: str) -> str:
    iso = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds")
    return f"[{iso.replace('+00:00', 'Z')}|{ts_ms}|{seq}] {message}"


class StateStream:
    """Bounded per-subscriber buffer; the oldest frame is dropped when full.

    ``push`` is registered as an engine listener and never blocks the
    publisher.
    """

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def push(self, state: Dict[str, Any]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(state)

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


class GoldEngine:
    """Signal & decision engine.

    Parameters
    ----------
    app_settings:
        Startup configuration; engine settings and profile here are the
        defaults used when the store has none saved.
    store:
        Persistence collaborator. Opened by ``start``/``initialize``.
    source:
        Market data collaborator.
    clock:
        Epoch-millisecond clock; tests inject a fake one.
    """

    def __init__(
        self,
        app_settings: AppSettings,
        store: SnapshotStore,
        source: MarketDataSource,
        clock: Callable[[], int] = _wall_clock_ms,
    ) -> None:
        self._app = app_settings
        self._store = store
        self._source = source
        self._clock = clock

        self._settings: EngineSettings = app_settings.engine
        self._profile: Profile = app_settings.profile
        self._history = HistoryStore(
            self._settings.history_retention_hours, self._settings.max_in_memory_points
        )
        self._scorer = SignalScorer(self._history)
        self._policy = DecisionPolicy()
        self._reliability = ReliabilityTracker()

        self._signal: Optional[Signal] = None
        self._zones: Optional[Zones] = None
        self._decision: Decision = waiting_decision()
        self._portfolio: Optional[PortfolioStats] = None

        self._status = STATUS_IDLE
        self._last_error: Optional[str] = None
        self._last_fetch_at: Optional[int] = None
        self._next_fetch_at: Optional[int] = None
        self._updated_at: int = clock()
        self._logs: Deque[str] = deque(maxlen=max(1, app_settings.max_log_lines))
        self._errors: Deque[str] = deque(maxlen=max(1, app_settings.max_log_lines))
        self._event_seq = 0

        self._listeners: List[StateListener] = []
        self._lock = asyncio.Lock()
        self._tick_running = False
        self._tick_idle = asyncio.Event()
        self._tick_idle.set()
        self._closing = False
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._initialized = False
        self._last_retention_sweep_ms = 0

    # -- read-only views ---------------------------------------------------

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def reliability(self) -> ReliabilityTracker:
        return self._reliability

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_ticking(self) -> bool:
        return self._tick_running

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def get_settings(self) -> EngineSettings:
        return self._settings

    def get_profile(self) -> Profile:
        return self._profile

    def get_state(self) -> Dict[str, Any]:
        """JSON-serializable copy of the full engine state."""
        metrics = self._reliability.metrics
        chart = [
            PricePoint(t=snap.timestamp_ms, p=snap.gold_price)
            for snap in self._history.tail(self._app.chart_points)
        ]
        state = {
            "status": self._status,
            "last_error": self._last_error,
            "last_fetch_at": self._last_fetch_at,
            "next_fetch_at": self._next_fetch_at,
            "updated_at": self._updated_at,
            "settings": self._settings.to_dict(),
            "profile": self._profile.to_dict(),
            "signal": self._signal.to_dict() if self._signal is not None else None,
            "zones": self._zones.to_dict() if self._zones is not None else None,
            "decision": self._decision.to_dict(),
            "portfolio_stats": self._portfolio.to_dict() if self._portfolio is not None else None,
            "metrics": metrics.to_dict(),
            "calibration": [b.to_dict() for b in self._reliability.calibration_curve()],
            "pending_predictions": len(self._reliability.pending),
            "last_action": (
                self._policy.last_action.value if self._policy.last_action is not None else None
            ),
            "last_action_at": self._policy.last_action_ms,
            "history_points": len(self._history),
            "price_history": [{"t": p.t, "p": p.p} for p in chart],
            "logs": list(self._logs),
            "errors": list(self._errors),
        }
        return copy.deepcopy(state)

    # -- event lines -------------------------------------------------------

    def _next_line(self, message: str) -> str:
        self._event_seq += 1
        return _format_event_line(self._clock(), self._event_seq, message)

    def _add_log(self, message: str) -> None:
        self._logs.append(self._next_line(message))

    def _add_error(self, message: str) -> None:
        line = self._next_line(message)
        self._errors.append(line)
        self._logs.append(line)

    # -- subscribe / publish -----------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; it receives the current state right away.

        Returns a callable that unsubscribes it.
        """
        self._listeners.append(listener)
        self._notify(listener, self.get_state())

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, listener: StateListener, state: Dict[str, Any]) -> None:
        try:
            listener(state)
        except Exception:
            LOGGER.exception("state listener %r failed", listener)

    def _publish(self) -> None:
        self._updated_at = self._clock()
        if not self._listeners:
            return
        state = self.get_state()
        for listener in list(self._listeners):
            self._notify(listener, state)

    # -- lifecycle ---------------------------------------------------------

    def initialize(self) -> None:
        """Open the store, load settings/profile and rebuild history.

        Failures here propagate; the process should not run without its
        persisted history.
        """
        if self._initialized:
            return
        now = self._clock()
        try:
            self._store.open()
            self._load_persisted_config(now)
            loaded = self._rebuild_history(now)
            removed = self._store.delete_before(now - self._retention_ms())
        except Exception:
            LOGGER.error("engine startup failed (db=%s)", self._store.db_path)
            raise
        self._last_retention_sweep_ms = now
        latest = self._history.latest()
        if latest is not None:
            self._portfolio = compute_portfolio_stats(self._profile, latest.gold_price)
        self._initialized = True
        LOGGER.info(
            "engine initialized: %d snapshot(s) loaded, %d expired row(s) removed",
            loaded,
            removed,
        )
        self._add_log(f"Loaded {loaded} snapshots from storage")

    def _retention_ms(self) -> float:
        return self._settings.history_retention_hours * 3_600_000

    def _load_persisted_config(self, now: int) -> None:
        stored_settings = self._store.load_settings()
        if stored_settings is None:
            self._store.save_settings(self._settings, now)
        else:
            try:
                self._settings = sanitize_settings(stored_settings, strict=False)
            except ValidationError as exc:
                LOGGER.warning("stored settings rejected (%s); keeping configured defaults", exc)
                self._store.save_settings(self._settings, now)

        stored_profile = self._store.load_profile()
        if stored_profile is None:
            self._store.save_profile(self._profile, now)
        else:
            self._profile = sanitize_profile(stored_profile, strict=False)

        self._history.configure(
            self._settings.history_retention_hours, self._settings.max_in_memory_points
        )

    def _rebuild_history(self, now: int) -> int:
        self._history.clear()
        rows = self._store.query_snapshots(
            int(now - self._retention_ms()), self._settings.max_in_memory_points
        )
        for row in rows:
            snapshot = normalize_record(row, self._settings.freshness_max_min)
            if snapshot is None:
                continue
            latest = self._history.latest()
            if latest is not None and snapshot.timestamp_ms < latest.timestamp_ms:
                continue
            self._history.append(snapshot)
        self._history.trim(now)
        return len(self._history)

    async def start(self) -> None:
        """Initialize, run one tick, then arm the recurring timer."""
        self.initialize()
        await self.tick(trigger="startup")
        self._arm_timer()

    async def stop(self) -> None:
        """Cancel the timer and wait for any tick already in flight."""
        task = self._timer_task
        self._timer_task = None
        self._next_fetch_at = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._tick_running:
            LOGGER.info("waiting for in-flight tick before stopping")
            await self._tick_idle.wait()
        if self._status == STATUS_RUNNING:
            self._status = STATUS_IDLE

    async def close(self) -> None:
        self._closing = True
        await self.stop()
        await self._source.aclose()
        self._store.close()

    def _arm_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop())

    async def _timer_loop(self) -> None:
        while True:
            interval_ms = self._settings.poll_interval_ms
            self._next_fetch_at = self._clock() + interval_ms
            await asyncio.sleep(interval_ms / 1000)
            # Re-arming the timer must not abort a tick already in flight.
            await asyncio.shield(self.tick(trigger="timer"))

    # -- tick --------------------------------------------------------------

    async def force_tick(self) -> bool:
        """Run a tick now; ``False`` when skipped (overlap or closing)."""
        return await self.tick(trigger="manual")

    async def tick(self, trigger: str = "timer") -> bool:
        if self._closing:
            LOGGER.info("tick skipped (%s): engine is closing", trigger)
            return False
        if self._tick_running:
            LOGGER.info("tick skipped (%s): previous tick still running", trigger)
            self._add_log(f"Tick skipped ({trigger}): previous tick still running")
            self._publish()
            return False

        self._tick_running = True
        self._tick_idle.clear()
        started = self._clock()
        self._last_fetch_at = started
        try:
            quote = await self._source.fetch_quote(self._settings.request_timeout_ms)
            async with self._lock:
                self._commit_tick(quote, started)
            self._status = STATUS_RUNNING
            self._last_error = None
        except Exception as exc:
            self._status = STATUS_ERROR
            self._last_error = str(exc) or exc.__class__.__name__
            LOGGER.warning("tick failed (%s): %s", trigger, self._last_error)
            self._add_error(f"Tick failed: {self._last_error}")
        finally:
            self._tick_running = False
            self._tick_idle.set()
        self._publish()
        return True

    def _commit_tick(self, quote: RawQuote, now: int) -> None:
        """Score ``quote`` and commit the result.

        Everything is computed first and written to the store in one
        transaction. Engine state changes only after that write succeeds;
        on failure the history append is undone and the error propagates.
        """
        settings = self._settings
        horizon = settings.prediction_horizon_min
        snapshot = normalize_quote(quote, now, settings.freshness_max_min)
        ts = snapshot.timestamp_ms
        sweep_due = ts - self._last_retention_sweep_ms >= self._app.retention_sweep_interval_ms

        evicted = self._history.append(snapshot)
        try:
            signal = self._scorer.score(horizon, ts)
            zones = estimate_zones(
                signal, self._scorer.extractor, horizon, settings.poll_interval_ms
            )
            decision = self._policy.evaluate(signal, zones, self._profile, settings, ts)
            portfolio = compute_portfolio_stats(self._profile, snapshot.gold_price)
            _, removed = self._store.save_tick(
                snapshot,
                signal,
                zones,
                decision,
                portfolio,
                horizon,
                purge_before=int(ts - self._retention_ms()) if sweep_due else None,
            )
        except Exception:
            self._history.undo_append(snapshot, evicted)
            raise

        self._reliability.resolve(self._history, horizon)
        self._reliability.add_prediction(ts, snapshot.gold_price, signal.p_up)
        self._policy.record(decision, ts)

        self._signal = signal
        self._zones = zones
        self._decision = decision
        self._portfolio = portfolio

        if sweep_due:
            self._last_retention_sweep_ms = ts
            if removed:
                LOGGER.info("retention sweep removed %d row(s)", removed)

        LOGGER.info(
            "price=%.0f action=%s gate=%s p_up=%.3f conf=%.3f",
            snapshot.gold_price,
            decision.action.value,
            decision.gate.value,
            signal.p_up,
            signal.confidence,
        )
        self._add_log(
            f"Price={snapshot.raw_price_text} action={decision.action.value} "
            f"pUp={signal.p_up * 100:.1f}% conf={signal.confidence * 100:.1f}% "
            f"({decision.reason})"
        )

    # -- updates -----------------------------------------------------------

    async def update_settings(self, patch: Mapping[str, Any]) -> EngineSettings:
        """Validate and apply a settings patch; raises ``ValidationError``."""
        async with self._lock:
            new = apply_settings_patch(self._settings, patch)
            now = self._clock()
            self._store.save_settings(new, now)
            old = self._settings
            self._settings = new
            self._history.configure(new.history_retention_hours, new.max_in_memory_points)
            self._history.trim(now)
            if new.poll_interval_ms != old.poll_interval_ms and self._timer_task is not None:
                self._arm_timer()
                LOGGER.info("poll interval changed to %d ms; timer re-armed", new.poll_interval_ms)
            self._add_log("Settings updated")
        self._publish()
        return new

    async def update_profile(self, patch: Mapping[str, Any]) -> Profile:
        """Validate and apply a profile patch; raises ``ValidationError``."""
        async with self._lock:
            new = apply_profile_patch(self._profile, patch)
            self._store.save_profile(new, self._clock())
            self._profile = new
            latest = self._history.latest()
            if latest is not None:
                self._portfolio = compute_portfolio_stats(new, latest.gold_price)
            self._add_log("Profile updated")
        self._publish()
        return new
