"""
order_block.py — Order Block detection, rejection filters, retest order
========================================================================

DETECTION (ORB)
  Bullish: close > open, range > ATR × orb_atr_mult,
           volume / vol_avg > orb_vol_mult, body ratio > min_body_ratio.
  Bearish: mirror. The zone is the candle body (use_body_only) or its range.

REJECTION (new candidates only, first failing reason wins)
  1. size       block smaller than ATR × ob_min_size_atr
  2. trend      wrong side of / too close to the long SMA, SMA slope against
                the block, or too few recent closes on the required side
  3. failed OB  midpoint within half a block of a recent losing retest

RETEST ORDER
  Once price has moved away from the block by size × a volatility-dependent
  multiplier, a limit order rests at the midpoint until it fills, times out
  or price leaves the zone.

Every value here is immutable; the lifecycle builds new values with
``dataclasses.replace`` instead of mutating in place.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from data_manager import Candle, CandleHistory
from strategy_config import StrategyConfig
from structure import LONG, SHORT

logger = logging.getLogger(__name__)

METHOD_ORB = "ORB"


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass(frozen=True)
class OrderBlock:
    top:          float
    bottom:       float
    type:         str             # LONG | SHORT
    bar_index:    int             # detection bar
    method:       str   = METHOD_ORB
    age:          int   = 0
    priced_moved_away: bool = False
    volume:       float = 0.0
    volume_ratio: float = 0.0
    detected_at:  float = 0.0     # candle timestamp
    filter_flags: Tuple[Tuple[str, bool], ...] = ()
    filter_score: Optional[float] = None

    def __post_init__(self):
        if self.top < self.bottom:
            raise ValueError(f"OrderBlock top {self.top} below bottom {self.bottom}")

    @property
    def size(self) -> float:
        return self.top - self.bottom

    @property
    def midpoint(self) -> float:
        return (self.top + self.bottom) / 2

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "top": self.top,
            "bottom": self.bottom,
            "midpoint": self.midpoint,
            "bar_index": self.bar_index,
            "age": self.age,
            "method": self.method,
            "volume_ratio": round(self.volume_ratio, 3),
            "filter_score": self.filter_score,
        }


@dataclass(frozen=True)
class LimitOrder:
    direction:         str
    limit_price:       float
    ob:                OrderBlock
    created_bar_index: int
    client_order_id:   str

    def age(self, bar_index: int) -> int:
        return bar_index - self.created_bar_index


def make_client_order_id(symbol: str, ob: OrderBlock) -> str:
    """Deterministic idempotency key: same block → same key on every retry."""
    return f"ob-{symbol}-{ob.type[0]}-{ob.bar_index}"


# ============================================================================
# FAILED OB MEMORY
# ============================================================================

@dataclass(frozen=True)
class FailedOBMemory:
    """Midpoints / entries of recently lost retests, as (price, bar_index)."""
    entries: Tuple[Tuple[float, int], ...] = ()

    def add(self, price: float, bar_index: int) -> "FailedOBMemory":
        return FailedOBMemory(self.entries + ((price, bar_index),))

    def prune(self, bar_index: int, retention_bars: int) -> "FailedOBMemory":
        kept = tuple(e for e in self.entries if bar_index - e[1] < retention_bars)
        if len(kept) == len(self.entries):
            return self
        return FailedOBMemory(kept)

    def recent_match(self, midpoint: float, size: float, bar_index: int,
                     lookback_bars: int, distance_mult: float) -> Optional[Tuple[float, int]]:
        for price, idx in self.entries:
            if abs(price - midpoint) < size * distance_mult and bar_index - idx < lookback_bars:
                return price, idx
        return None

    def __len__(self) -> int:
        return len(self.entries)


# ============================================================================
# DETECTION
# ============================================================================

def body_ratio(candle: Candle) -> float:
    return candle.body_percentage()


def detect_orb(candle: Candle, bar_index: int, atr: Optional[float],
               vol_avg: Optional[float], cfg: StrategyConfig) -> Optional[OrderBlock]:
    """Breakout candle → candidate block, or None."""
    if atr is None or vol_avg is None or atr <= 0:
        return None
    candle_range = candle.total_range()
    if candle_range <= 0:
        return None

    vol_ratio = candle.volume / vol_avg if vol_avg > 0 else 1.0
    strong = (candle_range > atr * cfg.orb_atr_mult
              and vol_ratio > cfg.orb_vol_mult
              and body_ratio(candle) > cfg.min_body_ratio)
    if not strong:
        return None

    if candle.is_bullish():
        direction = LONG
        top = candle.close if cfg.use_body_only else candle.high
        bottom = candle.open if cfg.use_body_only else candle.low
    elif candle.is_bearish():
        direction = SHORT
        top = candle.open if cfg.use_body_only else candle.high
        bottom = candle.close if cfg.use_body_only else candle.low
    else:
        return None

    return OrderBlock(
        top=top,
        bottom=bottom,
        type=direction,
        bar_index=bar_index,
        volume=candle.volume,
        volume_ratio=vol_ratio,
        detected_at=candle.timestamp,
    )


# ============================================================================
# REJECTION FILTERS
# ============================================================================

def size_rejection(ob: OrderBlock, atr: float, cfg: StrategyConfig) -> Optional[str]:
    if ob.size < atr * cfg.ob_min_size_atr:
        return "OB too small"
    return None


def trend_rejection(ob: OrderBlock, history: CandleHistory,
                    cfg: StrategyConfig) -> Optional[str]:
    """Long-SMA trend filter evaluated at the history's last candle."""
    sma = history.trend_sma
    if sma is None or sma <= 0:
        return "trend SMA unavailable"
    close = history.last.close
    label = ob.type

    if ob.type == LONG and close < sma:
        return f"{label}: price below trend SMA"
    if ob.type == SHORT and close > sma:
        return f"{label}: price above trend SMA"

    if abs(close - sma) / sma < cfg.trend_min_distance_pct:
        return f"{label}: too close to trend SMA"

    sma_before = history.sma_ago(cfg.trend_slope_lookback)
    if sma_before is not None and sma_before > 0:
        slope = (sma - sma_before) / sma_before
        if ob.type == LONG and slope < -cfg.trend_slope_threshold:
            return f"{label}: market in DOWNTREND"
        if ob.type == SHORT and slope > cfg.trend_slope_threshold:
            return f"{label}: market in UPTREND"

    window = history.recent_with_sma(cfg.trend_confirm_lookback)
    if ob.type == LONG:
        on_side = sum(1 for c, s in window if s is not None and c.close > s)
        side = "above"
    else:
        on_side = sum(1 for c, s in window if s is not None and c.close < s)
        side = "below"
    if on_side < cfg.trend_confirm_min_bars:
        return (f"{label}: only {on_side} bars {side} SMA "
                f"(need {cfg.trend_confirm_min_bars}+)")
    return None


def failed_ob_rejection(ob: OrderBlock, memory: FailedOBMemory, bar_index: int,
                        cfg: StrategyConfig) -> Optional[str]:
    match = memory.recent_match(ob.midpoint, ob.size, bar_index,
                                cfg.failed_ob_lookback_bars,
                                cfg.failed_ob_distance_mult)
    if match is not None:
        return f"Failed OB retry ({bar_index - match[1]} bars ago)"
    return None


def rejection_reason(ob: OrderBlock, history: CandleHistory, memory: FailedOBMemory,
                     atr: float, cfg: StrategyConfig) -> Optional[str]:
    return (size_rejection(ob, atr, cfg)
            or trend_rejection(ob, history, cfg)
            or failed_ob_rejection(ob, memory, ob.bar_index, cfg))


def should_replace(active: OrderBlock, candidate: OrderBlock,
                   vol_avg: float, cfg: StrategyConfig) -> bool:
    """Candidate volume ratio must beat the active block's by the configured factor."""
    if not cfg.enable_ob_replacement or vol_avg <= 0:
        return False
    active_ratio = active.volume / vol_avg
    candidate_ratio = candidate.volume / vol_avg
    return candidate_ratio > active_ratio * cfg.ob_replacement_vol_ratio


# ============================================================================
# ACTIVE BLOCK / RETEST
# ============================================================================

def aged(ob: OrderBlock, bar_index: int) -> OrderBlock:
    return replace(ob, age=bar_index - ob.bar_index)


def invalidation_reason(ob: OrderBlock, candle: Candle,
                        cfg: StrategyConfig) -> Optional[str]:
    if ob.age > cfg.ob_max_bars:
        return f"expired after {ob.age} bars"
    if ob.type == LONG and candle.low < ob.bottom:
        return "price traded below block"
    if ob.type == SHORT and candle.high > ob.top:
        return "price traded above block"
    return None


def min_away_multiplier(atr_pct: float, cfg: StrategyConfig) -> float:
    if atr_pct < cfg.rangebound_atr_pct:
        return cfg.min_away_mult_rangebound
    if atr_pct > cfg.trending_atr_pct:
        return cfg.min_away_mult_trending
    return cfg.min_away_mult_normal


def has_moved_away(ob: OrderBlock, candle: Candle, atr_pct: float,
                   cfg: StrategyConfig) -> bool:
    min_dist = ob.size * min_away_multiplier(atr_pct, cfg)
    if ob.type == LONG:
        return candle.close > ob.midpoint + min_dist
    return candle.close < ob.midpoint - min_dist


def left_zone(order: LimitOrder, candle: Candle, cfg: StrategyConfig) -> bool:
    buffer = order.ob.size * cfg.ob_zone_exit_buffer
    if order.direction == LONG:
        return candle.close < order.ob.bottom - buffer
    return candle.close > order.ob.top + buffer


def is_reversal(direction: str, candle: Candle) -> bool:
    if direction == LONG:
        return candle.close > candle.open
    return candle.close < candle.open


def fill_price(order: LimitOrder, cfg: StrategyConfig) -> float:
    if order.direction == LONG:
        return order.limit_price * (1 + cfg.maker_slippage)
    return order.limit_price * (1 - cfg.maker_slippage)
