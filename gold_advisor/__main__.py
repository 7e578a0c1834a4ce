"""CLI entry point for the gold advisor.

Usage::

    python3 -m gold_advisor
    python3 -m gold_advisor --port 9000 --db /var/lib/gold/advisor.db
    python3 -m gold_advisor --once
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace

import uvicorn

from gold_advisor.api import create_app
from gold_advisor.config import AppSettings, load_settings
from gold_advisor.engine import GoldEngine
from gold_advisor.logging_setup import configure_logging
from gold_advisor.market_data import MarketDataClient
from gold_advisor.storage import SnapshotStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python3 -m gold_advisor",
        description="Gold price signal and BUY/SELL/HOLD advisor",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Run a single tick, print the decision and exit",
    )
    parser.add_argument("--host", type=str, default=None, help="API bind host")
    parser.add_argument("--port", type=int, default=None, help="API port (default: 8787)")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path")
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


def _apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    overrides = {}
    if args.once:
        overrides["run_once"] = True
    if args.host is not None:
        overrides["api_host"] = args.host
    if args.port is not None:
        overrides["api_port"] = args.port
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        settings = replace(settings, **overrides)
    return settings


def build_engine(settings: AppSettings) -> GoldEngine:
    return GoldEngine(
        settings,
        store=SnapshotStore(settings.db_path),
        source=MarketDataClient(settings.tgju_url, settings.talasea_url),
    )


async def _run_once(engine: GoldEngine) -> int:
    try:
        engine.initialize()
        await engine.force_tick()
        state = engine.get_state()
    finally:
        await engine.close()
    print(json.dumps(
        {
            "status": state["status"],
            "last_error": state["last_error"],
            "decision": state["decision"],
            "signal": state["signal"],
        },
        indent=2,
    ))
    return 0 if state["status"] != "error" else 1


def main() -> None:
    args = _build_parser().parse_args()
    settings = _apply_overrides(load_settings(), args)
    configure_logging(settings.log_level)

    engine = build_engine(settings)
    if settings.run_once:
        sys.exit(asyncio.run(_run_once(engine)))

    uvicorn.run(
        create_app(engine),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
