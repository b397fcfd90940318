"""
regime_engine.py — Market Regime Classifier
============================================
Weighted scoring over three volatility / trend readings:

    ADX(14)                    weight 40
    ATR(14) as % of price      weight 30
    BB(20, 2σ) width % price   weight 30

Each reading adds points to the RANGING / TRENDING / VOLATILE buckets via
fixed breakpoints. The bucket with the highest total wins; its score is the
confidence (0–100). Ties resolve RANGING → TRENDING → VOLATILE.

Results are cached per symbol through an injected RegimeCache so that the
classifier runs without any cache backend in tests, and so backtests can
drive the TTL from candle time instead of the wall clock.
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

import indicators

logger = logging.getLogger(__name__)

# ── Regime labels ─────────────────────────────────────────────────────────────
REGIME_RANGING  = "RANGING"
REGIME_TRENDING = "TRENDING"
REGIME_VOLATILE = "VOLATILE"

# ── Breakpoints: (upper bound, ranging, trending, volatile) ──────────────────
_ADX_BANDS = (
    (20.0, 40, 0, 0),
    (25.0, 30, 10, 0),
    (35.0, 0, 40, 0),
    (50.0, 0, 30, 10),
    (float("inf"), 0, 0, 40),
)
_ATR_PCT_BANDS = (
    (1.0, 30, 0, 0),
    (2.0, 15, 15, 0),
    (3.5, 0, 30, 0),
    (5.0, 0, 15, 15),
    (float("inf"), 0, 0, 30),
)
_BB_WIDTH_BANDS = (
    (2.0, 30, 0, 0),
    (4.0, 15, 15, 0),
    (6.0, 0, 30, 0),
    (8.0, 0, 15, 15),
    (float("inf"), 0, 0, 30),
)

# Strategy types accepted by is_suitable()
STRATEGY_BREAKOUT = "breakout"
STRATEGY_TREND    = "trend"
STRATEGY_REVERSAL = "reversal"


# ============================================================================
# REGIME SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class MarketRegime:
    """Cached classification for one symbol."""
    regime:              str
    confidence:          float
    adx_value:           float
    atr_percentile:      float   # ATR as % of price
    bb_width_percentile: float   # BB width as % of price
    computed_at:         float   # seconds, cache clock

    def is_suitable(self, strategy_type: str) -> bool:
        if strategy_type == STRATEGY_TREND:
            return self.regime == REGIME_TRENDING and self.confidence > 50
        if strategy_type == STRATEGY_REVERSAL:
            return self.regime == REGIME_RANGING and self.confidence > 50
        if strategy_type == STRATEGY_BREAKOUT:
            return self.confidence > 40
        return True


# ============================================================================
# CACHE
# ============================================================================

class RegimeCache(Protocol):
    """get / set capability the classifier is given."""

    def get(self, key: str, now: Optional[float] = None) -> Optional[MarketRegime]: ...

    def set(self, key: str, value: MarketRegime, ttl: float,
            now: Optional[float] = None) -> None: ...


class InMemoryRegimeCache:
    """
    Thread-safe TTL dict. ``clock`` returns seconds; the default is wall time,
    backtests pass candle time via ``now=`` on each lookup instead.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[MarketRegime, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, now: Optional[float] = None) -> Optional[MarketRegime]:
        now = self._clock() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: MarketRegime, ttl: float,
            now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            self._entries[key] = (value, now + ttl)


# ============================================================================
# SCORING
# ============================================================================

def _score(value: float, bands) -> Tuple[int, int, int]:
    for upper, ranging, trending, volatile in bands:
        if value < upper:
            return ranging, trending, volatile
    return 0, 0, 0


def score_regime(adx_value: float, atr_pct: float,
                 bb_width_pct: float) -> Dict[str, int]:
    scores = {REGIME_RANGING: 0, REGIME_TRENDING: 0, REGIME_VOLATILE: 0}
    for value, bands in ((adx_value, _ADX_BANDS),
                         (atr_pct, _ATR_PCT_BANDS),
                         (bb_width_pct, _BB_WIDTH_BANDS)):
        r, t, v = _score(value, bands)
        scores[REGIME_RANGING] += r
        scores[REGIME_TRENDING] += t
        scores[REGIME_VOLATILE] += v
    return scores


def pick_regime(scores: Dict[str, int]) -> Tuple[str, float]:
    best = max(scores.values())
    for label in (REGIME_RANGING, REGIME_TRENDING, REGIME_VOLATILE):
        if scores[label] == best:
            return label, float(min(100, max(0, best)))
    return REGIME_RANGING, 0.0


# ============================================================================
# CLASSIFIER
# ============================================================================

class RegimeClassifier:
    """
        classifier = RegimeClassifier(cache=InMemoryRegimeCache())
        regime = classifier.analyze("BTCUSDT", highs, lows, closes, now=ts)
    """

    def __init__(self, cache: Optional[RegimeCache] = None,
                 ttl_sec: float = 900, adx_period: int = 14,
                 atr_period: int = 14, bb_period: int = 20,
                 bb_std_dev: float = 2.0):
        self._cache = cache if cache is not None else InMemoryRegimeCache()
        self._ttl = ttl_sec
        self._adx_period = adx_period
        self._atr_period = atr_period
        self._bb_period = bb_period
        self._bb_std_dev = bb_std_dev

    @classmethod
    def for_config(cls, cfg, cache: Optional[RegimeCache] = None) -> "RegimeClassifier":
        return cls(cache=cache, ttl_sec=cfg.regime_cache_ttl_sec,
                   adx_period=cfg.adx_period, atr_period=cfg.atr_period,
                   bb_period=cfg.bb_period, bb_std_dev=cfg.bb_std_dev)

    def classify(self, highs: Sequence[float], lows: Sequence[float],
                 closes: Sequence[float], now: float) -> Optional[MarketRegime]:
        """Uncached classification; None when the window is too short."""
        if len(closes) < max(self._atr_period + 1, self._bb_period):
            return None
        price = float(closes[-1])
        if price <= 0:
            return None

        adx_value, _, _ = indicators.adx(highs, lows, closes, self._adx_period)
        atr_value = indicators.atr(highs, lows, closes, self._atr_period) or 0.0
        bb_width = indicators.bollinger_width(
            closes, self._bb_period, self._bb_std_dev) or 0.0

        atr_pct = atr_value / price * 100
        bb_pct = bb_width / price * 100
        scores = score_regime(adx_value, atr_pct, bb_pct)
        regime, confidence = pick_regime(scores)

        logger.debug(
            f"📊 REGIME={regime} conf={confidence:.0f} ADX={adx_value:.1f} "
            f"ATR%={atr_pct:.2f} BBW%={bb_pct:.2f}")
        return MarketRegime(
            regime=regime,
            confidence=confidence,
            adx_value=adx_value,
            atr_percentile=atr_pct,
            bb_width_percentile=bb_pct,
            computed_at=now,
        )

    def analyze(self, symbol: str, highs: Sequence[float], lows: Sequence[float],
                closes: Sequence[float], now: Optional[float] = None) -> Optional[MarketRegime]:
        """Cached classification keyed by symbol."""
        key = f"market_regime:{symbol}"
        cached = self._cache.get(key, now=now)
        if cached is not None:
            return cached

        now_value = now if now is not None else time.time()
        result = self.classify(highs, lows, closes, now_value)
        if result is not None:
            self._cache.set(key, result, self._ttl, now=now)
        return result
