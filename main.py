"""
Order Block Retest Engine
=========================
Command line entry point.

  python main.py backtest --csv candles.csv --symbol BTCUSDT [--capital 10000]
                          [--timeframe 5m] [--set key=value ...] [--json]
  python main.py replay   --csv candles.csv --symbol BTCUSDT [...]

``backtest`` runs the synchronous replay. ``replay`` pushes the same candles
through the live runner against an in-memory paper gateway, exercising the
order flow end to end.
"""

import argparse
import ast
import csv
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import config
from backtest import run_backtest, summarize
from candle_compat import candle_from_payload
from data_manager import Candle
from live_runner import LiveRunner
from order_manager import OrderSubmitter, PaperGateway
from risk_manager import AccountRiskManager
from strategy_config import DEFAULT_CONFIG, ConfigError, StrategyConfig
from telegram_notifier import TelegramNotifier
from telemetry import FanoutSink, LoggingSink, TelegramSink

logger = logging.getLogger(__name__)


def setup_logging(level: str = config.LOG_LEVEL, log_file: str = config.LOG_FILE) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )


# =========================================================================
# INPUT
# =========================================================================

def load_csv(path: str) -> List[Candle]:
    """Candles from a CSV with timestamp/open/high/low/close/volume columns."""
    with open(path, newline="") as fh:
        candles = [candle_from_payload(row) for row in csv.DictReader(fh)]
    candles.sort(key=lambda c: c.timestamp)
    logger.info(f"📥 Loaded {len(candles)} candles from {path}")
    return candles


def _parse_value(raw: str):
    try:
        return ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        return raw


def parse_overrides(pairs: Sequence[str]) -> Dict:
    overrides = {}
    for pair in pairs or ():
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Override must look like key=value, got '{pair}'")
        value = _parse_value(raw.strip())
        if key.strip() in ("candidate_filters", "entry_filters") and isinstance(value, str):
            value = tuple(v for v in (s.strip() for s in value.split(",")) if v)
        overrides[key.strip()] = value
    return overrides


def build_config(args) -> StrategyConfig:
    overrides = parse_overrides(args.set)
    overrides.setdefault("timeframe", args.timeframe)
    return DEFAULT_CONFIG.with_overrides(**overrides)


def _epoch(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# =========================================================================
# COMMANDS
# =========================================================================

def cmd_backtest(args) -> Dict:
    cfg = build_config(args)
    candles = load_csv(args.csv)
    result = run_backtest(
        args.symbol, candles, cfg,
        initial_capital=args.capital,
        start=_epoch(args.start),
        end=_epoch(args.end),
        warmup_bars=args.warmup,
    )
    return result.to_dict() if args.trades else result.summary()


def cmd_replay(args) -> Dict:
    cfg = build_config(args)
    candles = load_csv(args.csv)

    notifier = TelegramNotifier()
    sink = FanoutSink([LoggingSink(), TelegramSink(notifier)])
    account = AccountRiskManager(args.capital, enabled=cfg.enable_risk_management)
    runner = LiveRunner([args.symbol], OrderSubmitter(PaperGateway()), cfg,
                        account=account, sink=sink, notifier=notifier)

    done = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Shutdown signal received")
        done.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    warmup = max(0, min(args.warmup, len(candles)))
    runner.preload(args.symbol, candles[:warmup])
    notifier.start()
    runner.start()
    try:
        for candle in candles[warmup:]:
            if done.is_set():
                break
            runner.feed(args.symbol, candle)
    finally:
        runner.stop()
        notifier.stop()

    engine = runner.engine(args.symbol)
    out = {"symbol": args.symbol, "bars": len(candles),
           **summarize(engine.trades, args.capital, account.capital),
           "stats": engine.stats.to_dict(),
           "risk_state": account.state.to_dict()}
    if args.trades:
        out["trades"] = [t.to_dict() for t in engine.trades]
    return out


def print_summary(summary: Dict) -> None:
    print("=" * 60)
    print(f"  {summary['symbol']}  ({summary['bars']} bars)")
    print("=" * 60)
    print(f"  Trades:        {summary['total_trades']} "
          f"({summary['wins']}W / {summary['losses']}L)")
    print(f"  Win rate:      {summary['win_rate']:.1f}%")
    print(f"  Total PnL:     ${summary['total_pnl']:+,.2f} "
          f"({summary['total_return']:+.2f}%)")
    print(f"  Max drawdown:  {summary['max_drawdown']:.2f}%")
    pf = summary["profit_factor"]
    print(f"  Profit factor: {'n/a' if pf is None else f'{pf:.2f}'}")
    print(f"  Final capital: ${summary['final_capital']:,.2f}")
    stats = summary["stats"]
    fill_rate = stats["fill_rate"]
    print(f"  Signals:       {stats['total_signals']} "
          f"(filled {stats['filled']}, zone exit {stats['skipped_ob_exit']}, "
          f"timeout {stats['skipped_timeout']}, "
          f"fill rate {'n/a' if fill_rate is None else f'{fill_rate:.1f}%'})")
    print("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ob-engine",
                                     description="Order Block retest engine")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, func, help_text in (
            ("backtest", cmd_backtest, "replay candles synchronously"),
            ("replay", cmd_replay, "replay candles through the live runner (paper)")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--csv", required=True, help="candle CSV file")
        p.add_argument("--symbol", required=True)
        p.add_argument("--capital", type=float, default=config.INITIAL_CAPITAL)
        p.add_argument("--timeframe", choices=("5m", "15m"), default="5m")
        p.add_argument("--warmup", type=int, default=0,
                       help="leading candles used only to build history")
        p.add_argument("--set", action="append", metavar="KEY=VALUE",
                       help="override a strategy parameter (repeatable)")
        p.add_argument("--json", action="store_true", help="print JSON")
        p.add_argument("--trades", action="store_true", help="include the trade log")
        if name == "backtest":
            p.add_argument("--start", help="ISO date; trades entered earlier are not counted")
            p.add_argument("--end", help="ISO date; trades entered later are not counted")
        p.set_defaults(func=func)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        summary = args.func(args)
    except (ValueError, OSError) as e:
        logger.error(f"❌ {e}")
        return 2

    if args.json:
        print(json.dumps(summary, indent=2, default=str))
    else:
        print_summary(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
