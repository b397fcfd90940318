"""
filters.py — Entry Filter Bank
===============================
Every filter is a pure predicate ``fn(ctx, cfg) -> bool`` over a FilterContext
(candle window ending at the evaluated bar, current ATR, block geometry and
direction). A FilterBank AND-composes a configured subset of them and stops
at the first failure.

Registered filters
------------------
  atr_range        ATR % of price inside [atr_filter_min_pct, atr_filter_max_pct]
  order_flow       CVD proxy trend over the last cvd_trend_bars agrees with direction
  bos              break of structure in the trade direction
  liquidity_sweep  wick through the nearest swing extreme, close back inside
  ema_alignment    EMA fast/mid/slow fully ordered in the trade direction
  fvg              fair value gap overlapping the block
  adx_strong       ADX ≥ adx_strong_level
  adx_weak         ADX < adx_weak_level
  rsi              no LONG when overbought, no SHORT when oversold
  rsi_contrarian   LONG only when oversold, SHORT only when overbought
  market_regime    regime suitable for regime_strategy_type

The confluence score (0–100, 25 per BOS / sweep / EMA / FVG) is recorded on
every new block regardless of which filters gate it.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

import indicators
import structure
from data_manager import Candle
from strategy_config import ConfigError, StrategyConfig

logger = logging.getLogger(__name__)


@dataclass
class FilterContext:
    symbol: str
    direction: str                  # LONG | SHORT
    candles: Sequence[Candle]       # window ending at the evaluated bar
    atr: Optional[float]
    ob_top: float
    ob_bottom: float
    regime_lookup: Optional[Callable[[], object]] = None
    _cache: Dict[str, object] = field(default_factory=dict, repr=False)

    @property
    def price(self) -> float:
        return self.candles[-1].close

    def series(self, name: str) -> np.ndarray:
        if name not in self._cache:
            self._cache[name] = np.array(
                [getattr(c, name) for c in self.candles], dtype=float)
        return self._cache[name]

    def cached(self, key: str, compute: Callable[[], object]):
        if key not in self._cache:
            self._cache[key] = compute()
        return self._cache[key]


@dataclass(frozen=True)
class FilterResult:
    passed: bool
    failed: Optional[str] = None
    flags: Tuple[Tuple[str, bool], ...] = ()

    @property
    def reason(self) -> Optional[str]:
        return f"filter failed: {self.failed}" if self.failed else None


# ============================================================================
# PREDICATES
# ============================================================================

def atr_range(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    if ctx.atr is None or ctx.price <= 0:
        return True   # not enough data
    atr_pct = ctx.atr / ctx.price * 100
    return cfg.atr_filter_min_pct <= atr_pct <= cfg.atr_filter_max_pct


def order_flow(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    n = cfg.cvd_lookback + 1
    if len(ctx.candles) < n:
        return True   # not enough data
    trend = indicators.cvd_trend(
        ctx.series("high")[-n:], ctx.series("low")[-n:],
        ctx.series("close")[-n:], ctx.series("volume")[-n:],
        cfg.cvd_trend_bars)
    if trend is None:
        return True
    return trend > 0 if ctx.direction == structure.LONG else trend < 0


def bos(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return structure.break_of_structure(
        ctx.candles, ctx.direction, cfg.swing_lookback, cfg.bos_lookback)


def liquidity_sweep(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return structure.liquidity_sweep(
        ctx.candles, ctx.direction, cfg.swing_lookback,
        cfg.sweep_lookback, cfg.sweep_recent_bars)


def ema_alignment(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return structure.ema_alignment(
        ctx.series("close"), ctx.direction, cfg.ema_fast, cfg.ema_mid, cfg.ema_slow)


def fvg(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return structure.fair_value_gap(
        ctx.candles, ctx.direction, ctx.ob_top, ctx.ob_bottom,
        cfg.fvg_min_gap_pct, cfg.fvg_recent_bars)


def _adx(ctx: FilterContext, cfg: StrategyConfig) -> float:
    value = ctx.cached("adx", lambda: indicators.adx(
        ctx.series("high"), ctx.series("low"), ctx.series("close"), cfg.adx_period))
    return value[0]


def adx_strong(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return _adx(ctx, cfg) >= cfg.adx_strong_level


def adx_weak(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    return _adx(ctx, cfg) < cfg.adx_weak_level


def _rsi(ctx: FilterContext, cfg: StrategyConfig) -> Optional[float]:
    return ctx.cached("rsi", lambda: indicators.rsi(ctx.series("close"), cfg.rsi_period))


def rsi(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    value = _rsi(ctx, cfg)
    if value is None:
        return True
    if ctx.direction == structure.LONG:
        return value < cfg.rsi_overbought
    return value > cfg.rsi_oversold


def rsi_contrarian(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    value = _rsi(ctx, cfg)
    if value is None:
        return False
    if ctx.direction == structure.LONG:
        return value <= cfg.rsi_oversold
    return value >= cfg.rsi_overbought


def market_regime(ctx: FilterContext, cfg: StrategyConfig) -> bool:
    if ctx.regime_lookup is None:
        return True
    regime = ctx.regime_lookup()
    if regime is None:
        return True   # not enough data
    return regime.is_suitable(cfg.regime_strategy_type)


FILTERS: Dict[str, Callable[[FilterContext, StrategyConfig], bool]] = {
    "atr_range": atr_range,
    "order_flow": order_flow,
    "bos": bos,
    "liquidity_sweep": liquidity_sweep,
    "ema_alignment": ema_alignment,
    "fvg": fvg,
    "adx_strong": adx_strong,
    "adx_weak": adx_weak,
    "rsi": rsi,
    "rsi_contrarian": rsi_contrarian,
    "market_regime": market_regime,
}

CONFLUENCE_FILTERS = ("bos", "liquidity_sweep", "ema_alignment", "fvg")


# ============================================================================
# BANK
# ============================================================================

class FilterBank:
    """AND-composition of named filters with short-circuit."""

    def __init__(self, names: Sequence[str], cfg: StrategyConfig):
        unknown = [n for n in names if n not in FILTERS]
        if unknown:
            raise ConfigError(f"Unknown filters: {', '.join(unknown)}")
        self.names: List[str] = list(names)
        self.cfg = cfg

    def __bool__(self) -> bool:
        return bool(self.names)

    def evaluate(self, ctx: FilterContext) -> FilterResult:
        flags = []
        for name in self.names:
            ok = bool(FILTERS[name](ctx, self.cfg))
            flags.append((name, ok))
            if not ok:
                logger.debug(f"[{ctx.symbol}] {ctx.direction} filter '{name}' failed")
                return FilterResult(passed=False, failed=name, flags=tuple(flags))
        return FilterResult(passed=True, flags=tuple(flags))


def confluence(ctx: FilterContext, cfg: StrategyConfig) -> Tuple[Dict[str, bool], float]:
    """Pass flags of the structure filters and a 0–100 score (25 each)."""
    flags = {name: bool(FILTERS[name](ctx, cfg)) for name in CONFLUENCE_FILTERS}
    score = 25.0 * sum(flags.values())
    return flags, score
