"""
Candle Data Manager — per-symbol rolling OHLCV history
=======================================================

Pattern: validate → append → update rolling indicators.

Every symbol owns one CandleHistory. Backtest and live both push candles
through ``append()`` one at a time, so the indicator values any decision sees
are computed by exactly the same code in both modes.

Rolling indicators kept per bar:
  - ATR (Wilder, ``atr_period``)
  - volume average (``volume_avg_period``)
  - long trend SMA (``trend_sma_period``)
"""

import math
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


class CandleFeedError(ValueError):
    """Candle feed contract violated (ordering, duplicates, NaN fields)."""
    pass


# =====================================================================
# Candle model
# =====================================================================
@dataclass(frozen=True)
class Candle:
    timestamp: float  # seconds
    open: float
    high: float
    low: float
    close: float
    volume: float

    def is_bullish(self) -> bool:
        return self.close > self.open

    def is_bearish(self) -> bool:
        return self.close < self.open

    def body_size(self) -> float:
        return abs(self.close - self.open)

    def total_range(self) -> float:
        return self.high - self.low

    def body_percentage(self) -> float:
        r = self.total_range()
        return (self.body_size() / r) if r > 0 else 0.0

    def touches(self, price: float) -> bool:
        return self.low <= price <= self.high

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


def validate_candle(candle: Candle, previous: Optional[Candle]) -> None:
    """Raise CandleFeedError if the candle breaks the feed contract."""
    values = (candle.timestamp, candle.open, candle.high,
              candle.low, candle.close, candle.volume)
    if not all(math.isfinite(v) for v in values):
        raise CandleFeedError(f"Non-finite OHLCV field in candle {candle}")
    if candle.high < candle.low:
        raise CandleFeedError(f"high < low in candle {candle}")
    if previous is not None and candle.timestamp <= previous.timestamp:
        raise CandleFeedError(
            f"Out-of-order or duplicate timestamp: {candle.timestamp} "
            f"after {previous.timestamp}")


# =====================================================================
# Rolling history
# =====================================================================
class CandleHistory:
    """
    Bounded OHLCV history with incrementally maintained indicators.

    ``bar_index`` is absolute (number of candles ever appended − 1), so it
    keeps counting after old candles fall out of the rolling window.
    """

    def __init__(self, symbol: str, atr_period: int = 14,
                 volume_avg_period: int = 50, trend_sma_period: int = 600,
                 maxlen: int = 1200) -> None:
        self.symbol = symbol
        self.atr_period = atr_period
        self.volume_avg_period = volume_avg_period
        self.trend_sma_period = trend_sma_period
        maxlen = max(maxlen, trend_sma_period + 100)

        self.candles: Deque[Candle] = deque(maxlen=maxlen)
        self._atr_values: Deque[Optional[float]] = deque(maxlen=maxlen)
        self._sma_values: Deque[Optional[float]] = deque(maxlen=maxlen)
        self._vol_avg_values: Deque[Optional[float]] = deque(maxlen=maxlen)

        self._volume_window: Deque[float] = deque(maxlen=volume_avg_period)
        self._close_window: Deque[float] = deque(maxlen=trend_sma_period)
        self._seed_trs: List[float] = []
        self._atr: Optional[float] = None
        self._count = 0

    @classmethod
    def for_config(cls, symbol: str, cfg) -> "CandleHistory":
        return cls(symbol,
                   atr_period=cfg.atr_period,
                   volume_avg_period=cfg.volume_avg_period,
                   trend_sma_period=cfg.trend_sma_period,
                   maxlen=cfg.history_maxlen)

    # -----------------------------------------------------------------
    # Append
    # -----------------------------------------------------------------
    def append(self, candle: Candle) -> int:
        previous = self.candles[-1] if self.candles else None
        validate_candle(candle, previous)

        if previous is not None:
            tr = max(candle.high - candle.low,
                     abs(candle.high - previous.close),
                     abs(candle.low - previous.close))
            if self._atr is None:
                self._seed_trs.append(tr)
                if len(self._seed_trs) == self.atr_period:
                    self._atr = math.fsum(self._seed_trs) / self.atr_period
                    self._seed_trs = []
            else:
                self._atr = (self._atr * (self.atr_period - 1) + tr) / self.atr_period

        self._volume_window.append(candle.volume)
        self._close_window.append(candle.close)

        vol_avg = (math.fsum(self._volume_window) / self.volume_avg_period
                   if len(self._volume_window) == self.volume_avg_period else None)
        sma = (math.fsum(self._close_window) / self.trend_sma_period
               if len(self._close_window) == self.trend_sma_period else None)

        self.candles.append(candle)
        self._atr_values.append(self._atr)
        self._vol_avg_values.append(vol_avg)
        self._sma_values.append(sma)
        self._count += 1
        return self.bar_index

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.candles)

    @property
    def bar_index(self) -> int:
        return self._count - 1

    @property
    def last(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    @property
    def atr(self) -> Optional[float]:
        return self._atr_values[-1] if self._atr_values else None

    @property
    def volume_avg(self) -> Optional[float]:
        return self._vol_avg_values[-1] if self._vol_avg_values else None

    @property
    def trend_sma(self) -> Optional[float]:
        return self._sma_values[-1] if self._sma_values else None

    def sma_ago(self, bars_ago: int) -> Optional[float]:
        if bars_ago < 0 or bars_ago >= len(self._sma_values):
            return None
        return self._sma_values[-1 - bars_ago]

    def atr_percent(self) -> Optional[float]:
        atr_value = self.atr
        last = self.last
        if atr_value is None or last is None or last.close <= 0:
            return None
        return atr_value / last.close * 100

    def recent(self, n: int) -> List[Candle]:
        if n <= 0:
            return []
        start = max(0, len(self.candles) - n)
        return [self.candles[i] for i in range(start, len(self.candles))]

    def recent_with_sma(self, n: int) -> List[tuple]:
        """Last ``n`` (candle, sma) pairs, oldest first."""
        start = max(0, len(self.candles) - n)
        return [(self.candles[i], self._sma_values[i])
                for i in range(start, len(self.candles))]

    def arrays(self, n: Optional[int] = None) -> Dict[str, np.ndarray]:
        """numpy arrays of the last ``n`` candles (all when None)."""
        window = self.recent(n) if n else list(self.candles)
        return {
            "open": np.array([c.open for c in window], dtype=float),
            "high": np.array([c.high for c in window], dtype=float),
            "low": np.array([c.low for c in window], dtype=float),
            "close": np.array([c.close for c in window], dtype=float),
            "volume": np.array([c.volume for c in window], dtype=float),
        }
