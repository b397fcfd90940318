"""
indicators.py — OHLCV indicator math
=====================================
Pure functions over price/volume sequences. Every function returns ``None``
(or an empty array) when there is not enough data rather than raising, so
callers can treat a missing value as "skip this candle".

ATR and ADX use Wilder smoothing; EMA is seeded with the first value of the
window; the order-flow proxy splits each candle's volume by where the close
sits inside the range.
"""

import math
from typing import Optional, Sequence, Tuple

import numpy as np


def true_ranges(highs: Sequence[float], lows: Sequence[float],
                closes: Sequence[float]) -> np.ndarray:
    """True range for every bar after the first."""
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    c = np.asarray(closes, dtype=float)
    if len(h) < 2:
        return np.empty(0)
    prev_close = c[:-1]
    return np.maximum.reduce([
        h[1:] - l[1:],
        np.abs(h[1:] - prev_close),
        np.abs(l[1:] - prev_close),
    ])


def wilder_smooth(values: Sequence[float], period: int) -> Optional[float]:
    """Simple mean of the first ``period`` values, then Wilder smoothing."""
    if period <= 0 or len(values) < period:
        return None
    avg = math.fsum(values[:period]) / period
    for v in values[period:]:
        avg = (avg * (period - 1) + v) / period
    return avg


def atr(highs: Sequence[float], lows: Sequence[float],
        closes: Sequence[float], period: int = 14) -> Optional[float]:
    trs = true_ranges(highs, lows, closes)
    return wilder_smooth(trs.tolist(), period)


def sma(values: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    return math.fsum(list(values)[-period:]) / period


def ema(values: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    arr = np.asarray(values, dtype=float)
    multiplier = 2.0 / (period + 1)
    value = arr[0]
    for price in arr[1:]:
        value = (price * multiplier) + (value * (1 - multiplier))
    return float(value)


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder RSI of the last bar."""
    if len(closes) < period + 1:
        return None
    diffs = np.diff(np.asarray(closes, dtype=float))
    gains = np.where(diffs > 0, diffs, 0.0)
    losses = np.where(diffs < 0, -diffs, 0.0)
    avg_gain = wilder_smooth(gains.tolist(), period)
    avg_loss = wilder_smooth(losses.tolist(), period)
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def adx(highs: Sequence[float], lows: Sequence[float],
        closes: Sequence[float], period: int = 14) -> Tuple[float, float, float]:
    """
    Average Directional Index with +DI / -DI.

    Returns (0, 0, 0) when fewer than ``2 * period`` bars are available.
    """
    n = len(highs)
    if n < 2 * period:
        return 0.0, 0.0, 0.0

    plus_dms = []
    minus_dms = []
    trs = []
    for i in range(1, n):
        h, ph = float(highs[i]), float(highs[i - 1])
        l, pl = float(lows[i]), float(lows[i - 1])
        pc = float(closes[i - 1])
        up = h - ph
        dn = pl - l
        plus_dms.append(up if (up > dn and up > 0) else 0.0)
        minus_dms.append(dn if (dn > up and dn > 0) else 0.0)
        trs.append(max(h - l, abs(h - pc), abs(l - pc)))

    sm_tr = sum(trs[:period])
    sm_pdm = sum(plus_dms[:period])
    sm_mdm = sum(minus_dms[:period])

    dx_list = []
    di_plus = di_minus = 0.0
    for i in range(period, len(trs)):
        sm_tr = sm_tr - sm_tr / period + trs[i]
        sm_pdm = sm_pdm - sm_pdm / period + plus_dms[i]
        sm_mdm = sm_mdm - sm_mdm / period + minus_dms[i]
        di_plus = (sm_pdm / sm_tr * 100) if sm_tr > 0 else 0.0
        di_minus = (sm_mdm / sm_tr * 100) if sm_tr > 0 else 0.0
        denom = di_plus + di_minus
        dx_list.append(abs(di_plus - di_minus) / denom * 100 if denom > 0 else 0.0)

    if not dx_list:
        return 0.0, 0.0, 0.0
    value = wilder_smooth(dx_list, min(period, len(dx_list)))
    return value, di_plus, di_minus


def bollinger_width(closes: Sequence[float], period: int = 20,
                    std_dev: float = 2.0) -> Optional[float]:
    """Upper band minus lower band over the last ``period`` closes."""
    if len(closes) < period:
        return None
    window = np.asarray(list(closes)[-period:], dtype=float)
    std = float(np.std(window))   # population std, as the bands are usually drawn
    return 2.0 * std_dev * std


def volume_deltas(highs: Sequence[float], lows: Sequence[float],
                  closes: Sequence[float], volumes: Sequence[float]) -> np.ndarray:
    """
    Per-candle buy/sell volume split from OHLCV only.

    buy share  = (close - low)  / range
    sell share = (high - close) / range
    delta      = volume × (buy share − sell share); zero-range candles give 0.
    """
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    c = np.asarray(closes, dtype=float)
    v = np.asarray(volumes, dtype=float)
    rng = h - l
    deltas = np.zeros(len(h))
    mask = rng > 0
    buy = (c[mask] - l[mask]) / rng[mask]
    sell = (h[mask] - c[mask]) / rng[mask]
    deltas[mask] = v[mask] * (buy - sell)
    return deltas


def cvd_trend(highs: Sequence[float], lows: Sequence[float],
              closes: Sequence[float], volumes: Sequence[float],
              trend_bars: int = 10) -> Optional[float]:
    """Change of the cumulative delta across the last ``trend_bars`` values."""
    deltas = volume_deltas(highs, lows, closes, volumes)
    if len(deltas) == 0:
        return None
    cvd = np.cumsum(deltas)
    recent = cvd[-trend_bars:]
    return float(recent[-1] - recent[0])
