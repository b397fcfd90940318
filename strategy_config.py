"""
strategy_config.py — Per-run strategy parameters
=================================================
Immutable bundle of every knob the engine reads. Defaults come from config.py;
backtests and comparison runs override individual fields with
``StrategyConfig.with_overrides(...)``.
"""

from dataclasses import dataclass, fields, replace
from typing import Tuple

import config


class ConfigError(ValueError):
    """Raised on unknown override keys or inconsistent values."""
    pass


@dataclass(frozen=True)
class StrategyConfig:
    # Detection
    orb_atr_mult:       float = config.ORB_ATR_MULT
    orb_vol_mult:       float = config.ORB_VOL_MULT
    min_body_ratio:     float = config.MIN_BODY_RATIO
    use_body_only:      bool  = config.USE_BODY_ONLY
    ob_max_bars:        int   = config.OB_MAX_BARS
    ob_min_size_atr:    float = config.OB_MIN_SIZE_ATR
    enable_ob_replacement:    bool  = config.ENABLE_OB_REPLACEMENT
    ob_replacement_vol_ratio: float = config.OB_REPLACEMENT_VOL_RATIO

    # Indicators
    atr_period:         int = config.ATR_PERIOD
    volume_avg_period:  int = config.VOLUME_AVG_PERIOD
    trend_sma_period:   int = config.TREND_SMA_PERIOD
    history_maxlen:     int = config.HISTORY_MAXLEN

    # Trend filter
    trend_min_distance_pct: float = config.TREND_MIN_DISTANCE_PCT
    trend_slope_lookback:   int   = config.TREND_SLOPE_LOOKBACK
    trend_slope_threshold:  float = config.TREND_SLOPE_THRESHOLD
    trend_confirm_lookback: int   = config.TREND_CONFIRM_LOOKBACK
    trend_confirm_min_bars: int   = config.TREND_CONFIRM_MIN_BARS

    # Failed OB memory
    failed_ob_retention_bars: int   = config.FAILED_OB_RETENTION_BARS
    failed_ob_lookback_bars:  int   = config.FAILED_OB_LOOKBACK_BARS
    failed_ob_distance_mult:  float = config.FAILED_OB_DISTANCE_MULT

    # Moved-away confirmation
    min_away_mult_rangebound: float = config.MIN_AWAY_MULT_RANGEBOUND
    min_away_mult_normal:     float = config.MIN_AWAY_MULT_NORMAL
    min_away_mult_trending:   float = config.MIN_AWAY_MULT_TRENDING
    rangebound_atr_pct:       float = config.RANGEBOUND_ATR_PCT
    trending_atr_pct:         float = config.TRENDING_ATR_PCT

    # Limit order
    timeframe:              str   = "5m"
    order_validity_bars_5m:  int  = config.ORDER_VALIDITY_BARS_5M
    order_validity_bars_15m: int  = config.ORDER_VALIDITY_BARS_15M
    ob_zone_exit_buffer:    float = config.OB_ZONE_EXIT_BUFFER
    require_reversal:       bool  = config.REQUIRE_REVERSAL
    maker_slippage:         float = config.MAKER_SLIPPAGE

    # Risk geometry
    sl_buffer_pct:      float = config.SL_BUFFER_PCT
    tp1_ratio:          float = config.TP1_RATIO
    reward_risk_ratio:  float = config.REWARD_RISK_RATIO
    tp1_close_percent:  float = config.TP1_CLOSE_PERCENT
    enable_risk_cap:    bool  = config.ENABLE_RISK_CAP
    max_risk_atr:       float = config.MAX_RISK_ATR

    # Position management
    max_holding_bars:       int = config.MAX_HOLDING_BARS
    reentry_cooldown_bars:  int = config.REENTRY_COOLDOWN_BARS

    # Fees / leverage / sizing
    leverage:               float = config.LEVERAGE
    maker_fee:              float = config.MAKER_FEE
    taker_fee:              float = config.TAKER_FEE
    capital_usage_fraction: float = config.CAPITAL_USAGE_FRACTION
    min_margin:             float = config.MIN_MARGIN_PER_TRADE
    max_margin:             float = config.MAX_MARGIN_PER_TRADE
    enable_risk_management: bool  = config.ENABLE_RISK_MANAGEMENT

    # Filter bank
    candidate_filters:  Tuple[str, ...] = tuple(config.CANDIDATE_FILTERS)
    entry_filters:      Tuple[str, ...] = tuple(config.ENTRY_FILTERS)
    atr_filter_min_pct: float = config.ATR_FILTER_MIN_PCT
    atr_filter_max_pct: float = config.ATR_FILTER_MAX_PCT
    cvd_lookback:       int   = config.CVD_LOOKBACK
    cvd_trend_bars:     int   = config.CVD_TREND_BARS
    swing_lookback:     int   = config.SWING_LOOKBACK
    bos_lookback:       int   = config.BOS_LOOKBACK
    sweep_lookback:     int   = config.SWEEP_LOOKBACK
    sweep_recent_bars:  int   = config.SWEEP_RECENT_BARS
    ema_fast:           int   = config.EMA_FAST
    ema_mid:            int   = config.EMA_MID
    ema_slow:           int   = config.EMA_SLOW
    fvg_min_gap_pct:    float = config.FVG_MIN_GAP_PCT
    fvg_recent_bars:    int   = config.FVG_RECENT_BARS
    filter_window_bars: int   = config.FILTER_WINDOW_BARS
    adx_period:         int   = config.ADX_PERIOD
    adx_strong_level:   float = config.ADX_STRONG_LEVEL
    adx_weak_level:     float = config.ADX_WEAK_LEVEL
    rsi_period:         int   = config.RSI_PERIOD
    rsi_overbought:     float = config.RSI_OVERBOUGHT
    rsi_oversold:       float = config.RSI_OVERSOLD
    regime_strategy_type: str = config.REGIME_STRATEGY_TYPE

    # Market regime
    regime_cache_ttl_sec: float = config.REGIME_CACHE_TTL_SEC
    regime_window_bars:   int   = config.REGIME_WINDOW_BARS
    bb_period:            int   = config.BB_PERIOD
    bb_std_dev:           float = config.BB_STD_DEV

    def __post_init__(self):
        if not 0.0 < self.tp1_close_percent <= 1.0:
            raise ConfigError(
                f"tp1_close_percent must be in (0, 1], got {self.tp1_close_percent}")
        if self.timeframe not in ("5m", "15m"):
            raise ConfigError(f"Unsupported timeframe: {self.timeframe}")
        if self.min_margin > self.max_margin:
            raise ConfigError("min_margin must not exceed max_margin")

    @property
    def order_validity_bars(self) -> int:
        if self.timeframe == "15m":
            return self.order_validity_bars_15m
        return self.order_validity_bars_5m

    @property
    def partial_tp_enabled(self) -> bool:
        return self.tp1_close_percent < 1.0

    @property
    def min_history_bars(self) -> int:
        """Bars needed before detection can run."""
        return max(self.trend_sma_period + self.trend_slope_lookback,
                   self.volume_avg_period, self.atr_period + 1)

    def with_overrides(self, **overrides) -> "StrategyConfig":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"Unknown strategy parameters: {', '.join(unknown)}")
        for key in ("candidate_filters", "entry_filters"):
            if key in overrides:
                overrides[key] = tuple(overrides[key])
        return replace(self, **overrides)


DEFAULT_CONFIG = StrategyConfig()
