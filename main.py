from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from shockbot.advisory.service import HttpAdvisoryClient
from shockbot.clock import in_time_window, trading_day, utc_now
from shockbot.config import AlertsConfig, AppConfig, load_config
from shockbot.data.candles import load_candles_csv
from shockbot.data.market_data import SqliteMarketDataStore
from shockbot.engine.orchestrator import DecisionOrchestrator
from shockbot.engine.positions import PositionMonitor
from shockbot.engine.scan import ScanEngine
from shockbot.errors import ShockBotError
from shockbot.execution.venue import ExecutionVenue, build_venue
from shockbot.gating.safety_governor import SafetyGovernor
from shockbot.monitoring.alerts import AlertDispatcher
from shockbot.storage.config_store import ConfigStore
from shockbot.storage.db import get_connection, init_db
from shockbot.storage.journal import Journal
from shockbot.strategy.calibration import CalibrationEngine
from shockbot.strategy.contracts import TradingMode
from shockbot.strategy.learning import LearningEngine
from shockbot.strategy.state_machine import SetupStateMachine

LOGGER = logging.getLogger("shockbot")

OPERATOR = "operator"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shock-candle options setup bot")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--scan", action="store_true", help="Run the end-of-day shock scan and advance setups.")
    action.add_argument("--decide", action="store_true", help="Run one decision cycle.")
    action.add_argument("--monitor", action="store_true", help="Check open positions for exits once.")
    action.add_argument("--loop", action="store_true", help="Run scan, decision and monitor steps periodically.")
    action.add_argument("--kill-switch", choices=["activate", "deactivate", "status"])
    action.add_argument("--black-swan", metavar="DESCRIPTION", help="Flatten everything and stop trading.")
    action.add_argument("--graduation", action="store_true", help="Report whether REAL mode may be enabled.")
    action.add_argument("--import-candles", metavar="CSV", help="Load daily candles from a CSV file.")

    parser.add_argument("--symbol", default=None, help="Symbol for --import-candles")
    parser.add_argument("--reason", default="manual", help="Reason recorded for kill switch changes")
    parser.add_argument("--force", action="store_true", help="Ignore scan hour / decision window gates")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_db_path(root: Path) -> str:
    raw_path = os.getenv("SQLITE_PATH", "").strip()
    db_path = raw_path or "data/shockbot.db"
    path = Path(db_path)
    if not path.is_absolute():
        path = root / path
    return str(path)


def build_alerts(config: AppConfig) -> AlertDispatcher:
    alerts_cfg = config.alerts
    return AlertDispatcher(
        AlertsConfig(
            enabled=alerts_cfg.enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK") or alerts_cfg.discord_webhook,
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN") or alerts_cfg.telegram_bot_token,
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID") or alerts_cfg.telegram_chat_id,
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", str(alerts_cfg.cooldown_seconds))),
        )
    )


class Runtime:
    """Wires the collaborators around one SQLite ledger."""

    def __init__(self, config: AppConfig, db_path: str):
        self.config = config
        self.conn = get_connection(db_path)
        init_db(self.conn)
        self.journal = Journal(self.conn)
        self.market_data = SqliteMarketDataStore(self.conn)
        self.config_store = ConfigStore(self.journal, config)
        self.alerts = build_alerts(config)
        self.governor = SafetyGovernor(self.journal, self.config_store, config, alerts=self.alerts)
        self.state_machine = SetupStateMachine(self.journal)
        self.calibration = CalibrationEngine(self.journal, config.calibration)
        self.learning = LearningEngine(self.journal, config.learning)
        self.advisory = HttpAdvisoryClient(config.advisory) if config.advisory.enabled else None
        self.scan_engine = ScanEngine(
            config=config,
            journal=self.journal,
            market_data=self.market_data,
            state_machine=self.state_machine,
            governor=self.governor,
        )
        self.orchestrator = DecisionOrchestrator(
            config=config,
            journal=self.journal,
            config_store=self.config_store,
            market_data=self.market_data,
            governor=self.governor,
            calibration=self.calibration,
            learning=self.learning,
            scan_engine=self.scan_engine,
            state_machine=self.state_machine,
            venue_for=self.venue_for,
            advisory=self.advisory,
        )
        self.monitor = PositionMonitor(
            config=config,
            journal=self.journal,
            venue_for=self.venue_for,
            state_machine=self.state_machine,
            calibration=self.calibration,
            learning=self.learning,
        )

    def venue_for(self, mode: TradingMode) -> ExecutionVenue:
        return build_venue(mode, self.config.execution, self.market_data)

    def close(self) -> None:
        self.conn.close()


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str, sort_keys=True))


def run_kill_switch(runtime: Runtime, command: str, reason: str, now: datetime) -> None:
    governor = runtime.governor
    if command == "activate":
        governor.activate_kill_switch(OPERATOR, reason, now)
    elif command == "deactivate":
        governor.deactivate_kill_switch(OPERATOR, reason, now)
    record = governor.kill_switch_status()
    _print_json(
        {
            "active": bool(record is not None and record.is_active),
            "reason": record.reason if record is not None else None,
            "changed_by": record.activated_by if record is not None else None,
            "at": record.created_at if record is not None else None,
            "trading_mode": runtime.config_store.trading_mode().value,
        }
    )


def run_import_candles(runtime: Runtime, csv_path: str, symbol: str | None) -> int:
    if not symbol:
        raise SystemExit("--import-candles requires --symbol")
    candles = load_candles_csv(Path(csv_path))
    count = runtime.market_data.upsert_candles(symbol.strip().upper(), runtime.config.universe.timeframe, candles)
    LOGGER.info("Imported %s candles for %s from %s", count, symbol.upper(), csv_path)
    return count


def run_loop(runtime: Runtime) -> None:
    config = runtime.config
    alerts = runtime.alerts
    stop_event = threading.Event()
    last_scan_day: str | None = None

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    open_positions = len(runtime.journal.open_trades())
    if open_positions:
        runtime.governor.handle_infrastructure_restart(utc_now(), open_positions)

    while not stop_event.is_set():
        now = utc_now()
        try:
            runtime.monitor.run(now)
            window = config.decision_window
            if in_time_window(now, window.start, window.end, config.timezone):
                runtime.orchestrator.run_decision_cycle(now)
            day = trading_day(now, config.timezone).isoformat()
            if runtime.scan_engine.scan_allowed(now) and day != last_scan_day:
                runtime.scan_engine.run_scan(now)
                runtime.learning.apply_time_decay(now)
                last_scan_day = day
        except ShockBotError as exc:
            LOGGER.error("Cycle error: %s", exc)
            alerts.send(f"Cycle error: {exc}", dedupe_key=f"cycle-{type(exc).__name__}")
        except Exception:
            LOGGER.exception("Unhandled cycle error")
            alerts.send("Unhandled exception in main loop", dedupe_key="runtime-unhandled")

        stop_event.wait(config.execution.loop_seconds)
    LOGGER.info("Bot stopped.")


def run() -> None:
    load_dotenv()
    args = parse_args()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = load_config(args.config)
    root = Path(__file__).resolve().parent
    runtime = Runtime(config, resolve_db_path(root))
    now = utc_now()
    try:
        if args.scan:
            result = runtime.scan_engine.run_scan(now, force=args.force)
            _print_json({"status": result.status, "message": result.message, "transitions": result.transitions})
        elif args.decide:
            cycle = runtime.orchestrator.run_decision_cycle(now, ignore_window=args.force)
            _print_json(
                {
                    "status": cycle.status,
                    "message": cycle.message,
                    "cycle_id": cycle.cycle_id,
                    "outcomes": [asdict(outcome) for outcome in cycle.outcomes],
                }
            )
        elif args.monitor:
            closed = runtime.monitor.run(now)
            _print_json([asdict(item) for item in closed])
        elif args.kill_switch:
            run_kill_switch(runtime, args.kill_switch, args.reason, now)
        elif args.black_swan:
            flattened = runtime.governor.handle_market_black_swan(
                args.black_swan,
                now,
                flatten=lambda: runtime.monitor.flatten_all(now),
            )
            _print_json({"flattened_positions": flattened})
        elif args.graduation:
            result = runtime.governor.check_graduation(now)
            _print_json(asdict(result))
        elif args.import_candles:
            run_import_candles(runtime, args.import_candles, args.symbol)
        else:
            run_loop(runtime)
    finally:
        runtime.close()


if __name__ == "__main__":
    run()
