"""
strategy.py — Per-symbol Order Block retest engine
===================================================
One SymbolEngine per symbol. ``on_candle`` is the only entry point that
advances it: append to history → ``lifecycle.advance`` → apply effects
(phase tracker, stats, telemetry, account bookkeeping).

The backtest and the live runner both drive this class, so the decision
path is shared. The only mode switch is ``auto_book``:

  auto_book=True   closed trades are booked to the account immediately
                   (backtest)
  auto_book=False  closed trades wait in ``unconfirmed`` until the live
                   runner gets an exchange ack and calls ``book_trade``
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional

from data_manager import Candle, CandleHistory
from lifecycle import (
    Bar, FillDeferred, LimitCancelled, OBDetected, OBRejected, OBReplaced,
    PositionOpened, TradeClosed, Transition, advance, DEFERRED_NO_REVERSAL,
)
from order_block import LimitOrder, OrderBlock
from position_manager import Position, Trade
from regime_engine import RegimeClassifier
from risk_manager import AccountRiskManager
from state_machine import (
    Active, Idle, Open, Pending, PhaseTracker, SymbolState,
    PHASE_FILLED, PHASE_NONE, PHASE_OB_ZONE_EXIT, PHASE_POSITION_CLOSED,
)
from strategy_config import DEFAULT_CONFIG, StrategyConfig
from telemetry import LoggingSink, TelemetrySink, event_from_effect

logger = logging.getLogger(__name__)


# ============================================================================
# STATS
# ============================================================================

@dataclass
class EngineStats:
    obs_detected:      int = 0
    obs_rejected:      int = 0
    obs_replaced:      int = 0
    total_signals:     int = 0      # limit orders resolved (fill / timeout / zone exit)
    filled:            int = 0
    skipped_ob_exit:   int = 0
    skipped_timeout:   int = 0
    filter_deferrals:  int = 0
    reversal_deferrals: int = 0
    rejections: Dict[str, int] = field(default_factory=dict)

    @property
    def fill_rate(self) -> Optional[float]:
        if self.total_signals == 0:
            return None
        return self.filled / self.total_signals * 100

    def to_dict(self) -> Dict:
        return {
            "obs_detected": self.obs_detected,
            "obs_rejected": self.obs_rejected,
            "obs_replaced": self.obs_replaced,
            "total_signals": self.total_signals,
            "filled": self.filled,
            "skipped_ob_exit": self.skipped_ob_exit,
            "skipped_timeout": self.skipped_timeout,
            "filter_deferrals": self.filter_deferrals,
            "reversal_deferrals": self.reversal_deferrals,
            "fill_rate": self.fill_rate,
            "rejections": dict(self.rejections),
        }


# ============================================================================
# ENGINE
# ============================================================================

class SymbolEngine:

    def __init__(self, symbol: str, cfg: StrategyConfig = DEFAULT_CONFIG,
                 account: Optional[AccountRiskManager] = None,
                 sink: Optional[TelemetrySink] = None,
                 regime: Optional[RegimeClassifier] = None,
                 auto_book: bool = True,
                 trade_filter: Optional[Callable[[Trade], bool]] = None):
        self.symbol = symbol
        self.cfg = cfg
        self.account = account or AccountRiskManager(enabled=cfg.enable_risk_management)
        self.sink = sink or LoggingSink()
        self.regime = regime or RegimeClassifier.for_config(cfg)
        self.auto_book = auto_book
        self.trade_filter = trade_filter

        self.history = CandleHistory.for_config(symbol, cfg)
        self.state = SymbolState()
        self.tracker = PhaseTracker(symbol)
        self.stats = EngineStats()
        self.trades: List[Trade] = []
        self.unconfirmed: List[Trade] = []

        logger.info(f"✅ SymbolEngine created for {symbol} ({cfg.timeframe})")

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def phase(self) -> str:
        return self.tracker.current_state

    @property
    def active_ob(self) -> Optional[OrderBlock]:
        lc = self.state.lifecycle
        return lc.ob if isinstance(lc, Active) else None

    @property
    def pending_order(self) -> Optional[LimitOrder]:
        lc = self.state.lifecycle
        return lc.order if isinstance(lc, Pending) else None

    @property
    def position(self) -> Optional[Position]:
        lc = self.state.lifecycle
        return lc.position if isinstance(lc, Open) else None

    # ── Feed ─────────────────────────────────────────────────────────────────

    def preload(self, candles: Iterable[Candle]) -> int:
        """Append history without running decisions (live bootstrap)."""
        n = 0
        for candle in candles:
            self.history.append(candle)
            n += 1
        logger.info(f"📥 [{self.symbol}] preloaded {n} candles")
        return n

    def on_candle(self, candle: Candle) -> List[object]:
        """Advance one closed candle; returns the lifecycle effects."""
        bar_index = self.history.append(candle)
        bar = Bar(
            symbol=self.symbol,
            candle=candle,
            bar_index=bar_index,
            history=self.history,
            account=self.account.snapshot(),
            regime_lookup=self._regime_lookup(candle),
        )
        self.state, effects = advance(self.state, bar, self.cfg)
        for effect in effects:
            self._apply(effect, bar)
        return effects

    def _regime_lookup(self, candle: Candle):
        def lookup():
            arrays = self.history.arrays(self.cfg.regime_window_bars)
            return self.regime.analyze(
                self.symbol, arrays["high"], arrays["low"], arrays["close"],
                now=candle.timestamp)
        return lookup

    # ── Effects ──────────────────────────────────────────────────────────────

    def _apply(self, effect, bar: Bar) -> None:
        if isinstance(effect, Transition):
            self.tracker.transition(effect.from_phase, effect.to_phase,
                                    bar.bar_index, bar.candle.timestamp, effect.reason)
        elif isinstance(effect, OBDetected):
            self.stats.obs_detected += 1
        elif isinstance(effect, OBRejected):
            self.stats.obs_rejected += 1
            key = effect.reason.split(" (")[0]
            self.stats.rejections[key] = self.stats.rejections.get(key, 0) + 1
        elif isinstance(effect, OBReplaced):
            self.stats.obs_replaced += 1
        elif isinstance(effect, LimitCancelled):
            self.stats.total_signals += 1
            if effect.reason == PHASE_OB_ZONE_EXIT:
                self.stats.skipped_ob_exit += 1
            else:
                self.stats.skipped_timeout += 1
        elif isinstance(effect, FillDeferred):
            if effect.reason == DEFERRED_NO_REVERSAL:
                self.stats.reversal_deferrals += 1
            else:
                self.stats.filter_deferrals += 1
        elif isinstance(effect, PositionOpened):
            self.stats.total_signals += 1
            self.stats.filled += 1
        elif isinstance(effect, TradeClosed):
            if self.auto_book:
                self.book_trade(effect.trade)
            else:
                self.unconfirmed.append(effect.trade)
            return

        self._emit(effect, bar.bar_index, bar.candle.timestamp)

    def _emit(self, effect, bar_index: int, timestamp: float) -> None:
        try:
            self.sink.emit(event_from_effect(self.symbol, bar_index, timestamp, effect))
        except Exception as e:
            logger.error(f"❌ [{self.symbol}] telemetry emit failed: {e}")

    # ── Booking ──────────────────────────────────────────────────────────────

    def book_trade(self, trade: Trade) -> bool:
        """
        Apply a closed trade to the account. Trades rejected by
        ``trade_filter`` still move capital but are neither logged nor
        counted towards the streaks. Returns True when the trade was logged.
        """
        if trade in self.unconfirmed:
            self.unconfirmed.remove(trade)
        counted = self.trade_filter(trade) if self.trade_filter else True
        self.account.record_exit(trade.pnl, trade.is_final, trade.is_win,
                                 update_streaks=counted)
        if not counted:
            return False
        self.trades.append(trade)
        self._emit(TradeClosed(trade, None), trade.exit_bar_index, trade.exit_time)
        return True

    def abandon_position(self, reason: str) -> None:
        """
        Drop the open position without a trade (entry never confirmed by the
        exchange). The re-entry cooldown starts from the last candle.
        """
        if not isinstance(self.state.lifecycle, Open):
            return
        bar_index = self.history.bar_index
        timestamp = self.history.last.timestamp
        logger.warning(f"⚠️ [{self.symbol}] position abandoned: {reason}")
        self.state = replace(self.state, lifecycle=Idle(), last_exit_bar=bar_index)
        for step in (Transition(PHASE_FILLED, PHASE_POSITION_CLOSED, reason),
                     Transition(PHASE_POSITION_CLOSED, PHASE_NONE)):
            self.tracker.transition(step.from_phase, step.to_phase,
                                    bar_index, timestamp, step.reason)
            self._emit(step, bar_index, timestamp)
