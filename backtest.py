"""
backtest.py — Replay a candle array through the SymbolEngine
=============================================================
Same engine as live, fed synchronously. Regime lookups run on candle time so
two runs over the same candles give identical trade logs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import config
from data_manager import Candle
from position_manager import Trade
from regime_engine import InMemoryRegimeCache, RegimeClassifier
from risk_manager import AccountRiskManager, RiskManagementState
from strategy import EngineStats, SymbolEngine
from strategy_config import DEFAULT_CONFIG, StrategyConfig
from telemetry import NullSink, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass
class BacktestResult:
    symbol:          str
    initial_capital: float
    final_capital:   float
    trades:          List[Trade]
    stats:           EngineStats
    risk_state:      RiskManagementState
    bars:            int = 0
    metrics:         Dict = field(default_factory=dict)

    def summary(self) -> Dict:
        return {
            "symbol": self.symbol,
            "bars": self.bars,
            **self.metrics,
            "stats": self.stats.to_dict(),
            "risk_state": self.risk_state.to_dict(),
        }

    def to_dict(self) -> Dict:
        out = self.summary()
        out["trades"] = [t.to_dict() for t in self.trades]
        return out


def max_drawdown(initial_capital: float, pnls: Sequence[float]) -> float:
    """Largest peak-to-trough fall of running capital, in percent of the peak."""
    peak = running = initial_capital
    worst = 0.0
    for pnl in pnls:
        running += pnl
        peak = max(peak, running)
        if peak > 0:
            worst = max(worst, (peak - running) / peak * 100)
    return worst


def summarize(trades: Sequence[Trade], initial_capital: float,
              final_capital: float) -> Dict:
    wins = [t for t in trades if t.is_win]
    losses = [t for t in trades if not t.is_win]
    gross_win = sum(t.pnl for t in trades if t.pnl > 0)
    gross_loss = -sum(t.pnl for t in trades if t.pnl < 0)
    total_pnl = final_capital - initial_capital

    return {
        "total_trades": len(trades),
        "wins": len(wins),
        "losses": len(losses),
        "win_rate": len(wins) / len(trades) * 100 if trades else 0.0,
        "total_pnl": total_pnl,
        "total_return": total_pnl / initial_capital * 100 if initial_capital else 0.0,
        "max_drawdown": max_drawdown(initial_capital, [t.pnl for t in trades]),
        "initial_capital": initial_capital,
        "final_capital": final_capital,
        "profit_factor": (gross_win / gross_loss) if gross_loss > 0 else None,
        "avg_win": sum(t.pnl for t in wins) / len(wins) if wins else 0.0,
        "avg_loss": sum(t.pnl for t in losses) / len(losses) if losses else 0.0,
        "largest_win": max((t.pnl for t in trades), default=0.0),
        "largest_loss": min((t.pnl for t in trades), default=0.0),
        "total_fees": sum(t.fees for t in trades),
    }


def _window_filter(start: Optional[float], end: Optional[float]):
    if start is None and end is None:
        return None

    def in_window(trade: Trade) -> bool:
        if start is not None and trade.entry_time < start:
            return False
        if end is not None and trade.entry_time > end:
            return False
        return True

    return in_window


def run_backtest(symbol: str, candles: Sequence[Candle],
                 cfg: StrategyConfig = DEFAULT_CONFIG,
                 initial_capital: float = config.INITIAL_CAPITAL,
                 start: Optional[float] = None,
                 end: Optional[float] = None,
                 warmup_bars: int = 0,
                 risk_state: Optional[RiskManagementState] = None,
                 sink: Optional[TelemetrySink] = None) -> BacktestResult:
    """
    Run one symbol over ``candles``.

    The first ``warmup_bars`` candles only build history. ``start``/``end``
    (epoch seconds) restrict which trades are logged and counted towards the
    risk ladder; capital still moves on every trade.
    """
    account = AccountRiskManager(initial_capital, risk_state,
                                 enabled=cfg.enable_risk_management)
    engine = SymbolEngine(
        symbol, cfg,
        account=account,
        sink=sink or NullSink(),
        regime=RegimeClassifier.for_config(cfg, cache=InMemoryRegimeCache()),
        auto_book=True,
        trade_filter=_window_filter(start, end),
    )

    warmup = max(0, min(warmup_bars, len(candles)))
    if warmup:
        engine.preload(candles[:warmup])
    for candle in candles[warmup:]:
        engine.on_candle(candle)

    result = BacktestResult(
        symbol=symbol,
        initial_capital=initial_capital,
        final_capital=account.capital,
        trades=list(engine.trades),
        stats=engine.stats,
        risk_state=account.state,
        bars=len(candles),
    )
    result.metrics = summarize(result.trades, initial_capital, account.capital)

    m = result.metrics
    logger.info(
        f"📊 [{symbol}] backtest: {m['total_trades']} trades | "
        f"WR {m['win_rate']:.1f}% | PnL ${m['total_pnl']:+,.2f} "
        f"({m['total_return']:+.2f}%) | MaxDD {m['max_drawdown']:.2f}%")
    return result
