# ============================================================================
# position_manager.py
# ============================================================================
"""
Position Manager
================

ENTRY
  entry = limit × (1 ± maker_slippage) in the block's direction
  SL    = block boundary ∓ sl_buffer_pct; with the risk cap on, the stop
          distance is capped at ATR × max_risk_atr (it only ever shrinks)
  TP1   = entry ± risk × tp1_ratio
  TP2   = entry ± risk × reward_risk_ratio

EXIT PRIORITY (per candle)
  1. TP1 not yet taken: TP1 exits tp1_close_percent of the position and
     moves the stop to exactly the entry price. If the SL is touched on the
     same candle the level closer to the open wins (ties go to TP1).
  2. TP1 taken: TP2 and SL together; both touched → closer to open wins,
     ties go to TP2.
  3. No touch and bars held ≥ max_holding_bars → exit at the candle open,
     win/loss by the sign of the price move.

FEES
  entry fee = maker × entry notional of the exited fraction
  exit fee  = taker × exit notional
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from data_manager import Candle
from order_block import LimitOrder, fill_price
from strategy_config import StrategyConfig
from structure import LONG

logger = logging.getLogger(__name__)

EXIT_TP1       = "TP1"
EXIT_TP2       = "TP2"
EXIT_SL        = "SL"
EXIT_BREAKEVEN = "BREAKEVEN"
EXIT_TIME_STOP = "TIME_STOP"


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass(frozen=True)
class Position:
    symbol:          str
    direction:       str
    entry:           float
    stop_loss:       float
    take_profit1:    float
    take_profit2:    float
    entry_time:      float
    entry_bar_index: int
    margin:          float
    leverage:        float
    method:          str   = "ORB"
    entry_capital:   float = 0.0
    risk_capped:     bool  = False
    client_order_id: str   = ""
    remaining_size:  float = 1.0
    partial_exit_done: bool = False

    @property
    def is_long(self) -> bool:
        return self.direction == LONG

    @property
    def quantity(self) -> float:
        """Units of the full position (margin × leverage / entry)."""
        return self.margin * self.leverage / self.entry

    def bars_held(self, bar_index: int) -> int:
        return bar_index - self.entry_bar_index

    def price_move(self, price: float) -> float:
        return price - self.entry if self.is_long else self.entry - price

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "entry": self.entry,
            "stop_loss": self.stop_loss,
            "take_profit1": self.take_profit1,
            "take_profit2": self.take_profit2,
            "margin": self.margin,
            "remaining_size": self.remaining_size,
            "partial_exit_done": self.partial_exit_done,
        }


@dataclass(frozen=True)
class Trade:
    symbol:          str
    direction:       str
    entry_time:      float
    exit_time:       float
    entry:           float
    exit:            float
    size:            float     # fraction of the position closed
    position_size:   float     # units closed
    margin:          float     # margin attributed to the closed fraction
    stop_loss:       float
    take_profit:     float
    entry_fee:       float
    exit_fee:        float
    pnl:             float     # after fees
    pnl_percent:     float     # price move % of entry
    is_win:          bool
    method:          str
    exit_reason:     str
    is_final:        bool
    entry_bar_index: int
    exit_bar_index:  int

    @property
    def fees(self) -> float:
        return self.entry_fee + self.exit_fee

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "entry_time": self.entry_time,
            "exit_time": self.exit_time,
            "entry": self.entry,
            "exit": self.exit,
            "size": self.size,
            "position_size": self.position_size,
            "margin": self.margin,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "entry_fee": self.entry_fee,
            "exit_fee": self.exit_fee,
            "fees": self.fees,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "is_win": self.is_win,
            "method": self.method,
            "exit_reason": self.exit_reason,
            "is_final": self.is_final,
        }


@dataclass(frozen=True)
class ExitDecision:
    price:    float
    reason:   str
    fraction: float      # of the original position
    partial:  bool


# ============================================================================
# ENTRY
# ============================================================================

def entry_levels(direction: str, entry: float, ob_top: float, ob_bottom: float,
                 atr: Optional[float], cfg: StrategyConfig) -> Tuple[float, float, float, bool]:
    """(stop_loss, tp1, tp2, risk_capped) for a fill at ``entry``."""
    if direction == LONG:
        sl = ob_bottom * (1 - cfg.sl_buffer_pct)
        risk = entry - sl
    else:
        sl = ob_top * (1 + cfg.sl_buffer_pct)
        risk = sl - entry

    capped = False
    if cfg.enable_risk_cap and atr:
        max_risk = atr * cfg.max_risk_atr
        if risk > max_risk:
            risk = max_risk
            sl = entry - max_risk if direction == LONG else entry + max_risk
            capped = True

    if direction == LONG:
        return sl, entry + risk * cfg.tp1_ratio, entry + risk * cfg.reward_risk_ratio, capped
    return sl, entry - risk * cfg.tp1_ratio, entry - risk * cfg.reward_risk_ratio, capped


def open_position(symbol: str, order: LimitOrder, candle: Candle, bar_index: int,
                  atr: Optional[float], margin: float, capital: float,
                  cfg: StrategyConfig) -> Position:
    entry = fill_price(order, cfg)
    sl, tp1, tp2, capped = entry_levels(
        order.direction, entry, order.ob.top, order.ob.bottom, atr, cfg)
    return Position(
        symbol=symbol,
        direction=order.direction,
        entry=entry,
        stop_loss=sl,
        take_profit1=tp1,
        take_profit2=tp2,
        entry_time=candle.timestamp,
        entry_bar_index=bar_index,
        margin=margin,
        leverage=cfg.leverage,
        method=order.ob.method,
        entry_capital=capital,
        risk_capped=capped,
        client_order_id=order.client_order_id,
    )


# ============================================================================
# EXIT
# ============================================================================

def _hits(position: Position, candle: Candle, target: float) -> Tuple[bool, bool]:
    if position.is_long:
        return candle.high >= target, candle.low <= position.stop_loss
    return candle.low <= target, candle.high >= position.stop_loss


def _closer_to_open(candle: Candle, target: float, stop: float) -> str:
    """'SL' when the stop is strictly closer to the open, else 'TP'."""
    if abs(candle.open - stop) < abs(candle.open - target):
        return "SL"
    return "TP"


def _stop_reason(position: Position) -> str:
    if position.partial_exit_done and position.stop_loss == position.entry:
        return EXIT_BREAKEVEN
    return EXIT_SL


def evaluate_exit(position: Position, candle: Candle, bar_index: int,
                  cfg: StrategyConfig) -> Optional[ExitDecision]:
    remaining = position.remaining_size

    if not position.partial_exit_done:
        tp1_hit, sl_hit = _hits(position, candle, position.take_profit1)
        if tp1_hit and sl_hit and \
                _closer_to_open(candle, position.take_profit1, position.stop_loss) == "SL":
            return ExitDecision(position.stop_loss, EXIT_SL, remaining, False)
        if tp1_hit:
            fraction = min(cfg.tp1_close_percent, remaining)
            partial = cfg.partial_tp_enabled
            return ExitDecision(position.take_profit1, EXIT_TP1,
                                fraction if partial else remaining, partial)
        if sl_hit:
            return ExitDecision(position.stop_loss, EXIT_SL, remaining, False)
    else:
        tp2_hit, sl_hit = _hits(position, candle, position.take_profit2)
        if tp2_hit and sl_hit:
            if _closer_to_open(candle, position.take_profit2, position.stop_loss) == "SL":
                return ExitDecision(position.stop_loss, _stop_reason(position), remaining, False)
            return ExitDecision(position.take_profit2, EXIT_TP2, remaining, False)
        if tp2_hit:
            return ExitDecision(position.take_profit2, EXIT_TP2, remaining, False)
        if sl_hit:
            return ExitDecision(position.stop_loss, _stop_reason(position), remaining, False)

    if position.bars_held(bar_index) >= cfg.max_holding_bars:
        return ExitDecision(candle.open, EXIT_TIME_STOP, remaining, False)
    return None


def settle(position: Position, decision: ExitDecision, candle: Candle,
           bar_index: int, cfg: StrategyConfig) -> Tuple[Trade, Optional[Position]]:
    """Book one exit → (Trade, position after the exit or None)."""
    units = position.quantity * decision.fraction
    move = position.price_move(decision.price)
    entry_fee = units * position.entry * cfg.maker_fee
    exit_fee = units * decision.price * cfg.taker_fee
    pnl = units * move - entry_fee - exit_fee

    if decision.reason == EXIT_TIME_STOP:
        is_win = move > 0
    else:
        is_win = pnl > 0

    take_profit = (position.take_profit1 if decision.reason == EXIT_TP1
                   else position.take_profit2)
    trade = Trade(
        symbol=position.symbol,
        direction=position.direction,
        entry_time=position.entry_time,
        exit_time=candle.timestamp,
        entry=position.entry,
        exit=decision.price,
        size=decision.fraction,
        position_size=units,
        margin=position.margin * decision.fraction,
        stop_loss=position.stop_loss,
        take_profit=take_profit,
        entry_fee=entry_fee,
        exit_fee=exit_fee,
        pnl=pnl,
        pnl_percent=move / position.entry * 100,
        is_win=is_win,
        method=f"{position.method}-{decision.reason}",
        exit_reason=decision.reason,
        is_final=not decision.partial,
        entry_bar_index=position.entry_bar_index,
        exit_bar_index=bar_index,
    )

    if decision.partial:
        after = replace(
            position,
            remaining_size=1.0 - cfg.tp1_close_percent,
            stop_loss=position.entry,
            partial_exit_done=True,
        )
        logger.info(
            f"🎯 [{position.symbol}] TP1 partial {decision.fraction:.0%} @ "
            f"{decision.price:.6g} → SL to breakeven {position.entry:.6g}")
        return trade, after

    logger.info(
        f"{'✅' if is_win else '❌'} [{position.symbol}] {position.direction} "
        f"{decision.reason} @ {decision.price:.6g} pnl={pnl:+.2f}")
    return trade, None
