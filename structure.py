"""
structure.py — Market structure predicates
===========================================
Independent boolean checks over a candle window. The window's last candle is
the bar being evaluated; swings only count once ``lookback`` bars have closed
on both sides of them, so no predicate looks ahead of the current bar.

  - swing highs / lows
  - break of structure (BOS)
  - liquidity sweep
  - EMA alignment
  - fair value gap (FVG) overlapping a block
"""

import logging
from typing import Dict, Sequence

import indicators
from data_manager import Candle

logger = logging.getLogger(__name__)

LONG = "LONG"
SHORT = "SHORT"

# Swings closer than this to the evaluated bar are ignored by BOS / sweep
_MIN_SWING_DISTANCE = 5


def find_swing_highs(candles: Sequence[Candle], lookback: int = 2) -> Dict[int, float]:
    swings = {}
    for i in range(lookback, len(candles) - lookback):
        high = candles[i].high
        if all(candles[i - j].high < high and candles[i + j].high < high
               for j in range(1, lookback + 1)):
            swings[i] = high
    return swings


def find_swing_lows(candles: Sequence[Candle], lookback: int = 2) -> Dict[int, float]:
    swings = {}
    for i in range(lookback, len(candles) - lookback):
        low = candles[i].low
        if all(candles[i - j].low > low and candles[i + j].low > low
               for j in range(1, lookback + 1)):
            swings[i] = low
    return swings


def break_of_structure(candles: Sequence[Candle], direction: str,
                       swing_lookback: int = 2, lookback: int = 30) -> bool:
    """
    True when price closed beyond the most recent confirmed swing high (LONG)
    or swing low (SHORT) at least once after that swing formed.
    """
    if len(candles) < 2 * swing_lookback + 2:
        return False
    window = list(candles)[-(lookback + 1):]
    index = len(window) - 1

    swings = (find_swing_highs(window, swing_lookback) if direction == LONG
              else find_swing_lows(window, swing_lookback))
    eligible = [i for i in swings if i < index - _MIN_SWING_DISTANCE]
    if not eligible:
        return False

    last = max(eligible)
    level = swings[last]
    for c in window[last + 1:]:
        if direction == LONG and c.close > level:
            return True
        if direction == SHORT and c.close < level:
            return True
    return False


def liquidity_sweep(candles: Sequence[Candle], direction: str,
                    swing_lookback: int = 2, lookback: int = 30,
                    recent_bars: int = 5) -> bool:
    """
    True when, within the last ``recent_bars`` candles, a wick pierced the
    nearest earlier swing low (LONG) / swing high (SHORT) and closed back on
    the correct side of it.
    """
    window = list(candles)[-(lookback + 1):]
    index = len(window) - 1
    if index < _MIN_SWING_DISTANCE:
        return False

    if direction == LONG:
        swings = find_swing_lows(window, swing_lookback)
    else:
        swings = find_swing_highs(window, swing_lookback)
    eligible = [i for i in swings if i <= index - _MIN_SWING_DISTANCE]
    if not eligible:
        return False
    level = swings[max(eligible)]

    for c in window[max(0, index - recent_bars + 1):]:
        if direction == LONG and c.low < level < c.close:
            return True
        if direction == SHORT and c.high > level > c.close:
            return True
    return False


def ema_alignment(closes: Sequence[float], direction: str,
                  fast: int = 8, mid: int = 21, slow: int = 55) -> bool:
    e_fast = indicators.ema(closes, fast)
    e_mid = indicators.ema(closes, mid)
    e_slow = indicators.ema(closes, slow)
    if e_fast is None or e_mid is None or e_slow is None:
        return False
    if direction == LONG:
        return e_fast > e_mid > e_slow
    return e_fast < e_mid < e_slow


def fair_value_gap(candles: Sequence[Candle], direction: str, ob_top: float,
                   ob_bottom: float, min_gap_pct: float = 0.05,
                   recent_bars: int = 5) -> bool:
    """
    Three-candle imbalance near the evaluated bar whose gap is at least
    ``min_gap_pct`` percent of price and overlaps [ob_bottom, ob_top].
    """
    window = list(candles)
    last = len(window) - 1
    for i in range(max(2, last - recent_bars + 1), last + 1):
        first, third = window[i - 2], window[i]
        if direction == LONG:
            gap_bottom, gap_top = first.high, third.low
        else:
            gap_bottom, gap_top = third.high, first.low
        if gap_top <= gap_bottom or third.close <= 0:
            continue
        if (gap_top - gap_bottom) / third.close * 100 < min_gap_pct:
            continue
        if min(gap_top, ob_top) > max(gap_bottom, ob_bottom):
            return True
    return False
