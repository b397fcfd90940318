"""
config.py — Single source of truth for engine parameters.
Naming: UPPER_SNAKE_CASE throughout. StrategyConfig reads its defaults here.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ─────────────────────────────────────────────
# TELEMETRY / NOTIFICATIONS
# ─────────────────────────────────────────────
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID   = os.getenv("TELEGRAM_CHAT_ID")
TELEGRAM_ENABLED   = bool(TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)

# ─────────────────────────────────────────────
# ACCOUNT / LEVERAGE
# ─────────────────────────────────────────────
INITIAL_CAPITAL = float(os.getenv("INITIAL_CAPITAL", "10000"))
LEVERAGE        = 20
MAKER_FEE       = 0.0004    # 0.04%
TAKER_FEE       = 0.00075   # 0.075%
MAKER_SLIPPAGE  = 0.0001    # 0.01% applied to limit fills

# ─────────────────────────────────────────────
# POSITION SIZING
# ─────────────────────────────────────────────
CAPITAL_USAGE_FRACTION = 0.10       # margin = 10% of capital
MIN_MARGIN_PER_TRADE   = 15.0       # USDT floor, applied before and after multiplier
MAX_MARGIN_PER_TRADE   = 10_000.0   # USDT ceiling

# ─────────────────────────────────────────────
# RISK LADDER (consecutive-result sizing)
# ─────────────────────────────────────────────
ENABLE_RISK_MANAGEMENT    = True
LOSS_STREAK_HALF          = 5       # ≥5 losses → multiplier ≤ 0.5
LOSS_STREAK_QUARTER       = 10      # ≥10 losses → multiplier ≤ 0.25
HALF_SIZE_MULTIPLIER      = 0.5
QUARTER_SIZE_MULTIPLIER   = 0.25
WIN_STREAK_RESET          = 3       # 3 wins → multiplier back to 1.0

# ─────────────────────────────────────────────
# INDICATORS
# ─────────────────────────────────────────────
ATR_PERIOD          = 14
VOLUME_AVG_PERIOD   = 50
TREND_SMA_PERIOD    = 600           # SMA50 on 1h expressed in 5m bars
HISTORY_MAXLEN      = 1200          # rolling candles kept per symbol
WARMUP_BARS         = 700           # bars loaded before live decisions

# ─────────────────────────────────────────────
# ORDER BLOCK DETECTION (ORB)
# ─────────────────────────────────────────────
ORB_ATR_MULT          = 1.0         # candle range > ATR × 1.0
ORB_VOL_MULT          = 1.5         # volume > 1.5 × 50-bar average
MIN_BODY_RATIO        = 0.5
USE_BODY_ONLY         = True        # OB zone = body, not wick range
OB_MAX_BARS           = 60
OB_MIN_SIZE_ATR       = 0.5         # OB smaller than 0.5 ATR is rejected
ENABLE_OB_REPLACEMENT = True
OB_REPLACEMENT_VOL_RATIO = 1.5

# ─────────────────────────────────────────────
# TREND FILTER (long SMA)
# ─────────────────────────────────────────────
TREND_MIN_DISTANCE_PCT  = 0.02      # price ≥ 2% from SMA
TREND_SLOPE_LOOKBACK    = 20
TREND_SLOPE_THRESHOLD   = 0.02      # slope beyond ±2% = trending
TREND_CONFIRM_LOOKBACK  = 20
TREND_CONFIRM_MIN_BARS  = 10        # bars on the required side of SMA

# ─────────────────────────────────────────────
# FAILED OB MEMORY
# ─────────────────────────────────────────────
FAILED_OB_RETENTION_BARS = 50
FAILED_OB_LOOKBACK_BARS  = 20
FAILED_OB_DISTANCE_MULT  = 0.5      # × OB size

# ─────────────────────────────────────────────
# MOVED-AWAY CONFIRMATION (by ATR%)
# ─────────────────────────────────────────────
MIN_AWAY_MULT_RANGEBOUND = 0.2      # ATR% < 1.0
MIN_AWAY_MULT_NORMAL     = 0.8      # 1.0 ≤ ATR% ≤ 2.0
MIN_AWAY_MULT_TRENDING   = 2.0      # ATR% > 2.0
RANGEBOUND_ATR_PCT       = 1.0
TRENDING_ATR_PCT         = 2.0

# ─────────────────────────────────────────────
# LIMIT ORDER
# ─────────────────────────────────────────────
ORDER_VALIDITY_BARS_5M  = 3
ORDER_VALIDITY_BARS_15M = 3
OB_ZONE_EXIT_BUFFER     = 0.5       # × OB size beyond the boundary
REQUIRE_REVERSAL        = True

# ─────────────────────────────────────────────
# RISK GEOMETRY
# ─────────────────────────────────────────────
SL_BUFFER_PCT     = 0.005           # 0.5% beyond the OB boundary
TP1_RATIO         = 0.8             # TP1 = 0.8R
REWARD_RISK_RATIO = 4.0             # TP2 = 4R
TP1_CLOSE_PERCENT = 1.0             # 1.0 = close everything at TP1
ENABLE_RISK_CAP   = False
MAX_RISK_ATR      = 2.0

# ─────────────────────────────────────────────
# POSITION MANAGEMENT
# ─────────────────────────────────────────────
MAX_HOLDING_BARS      = 48
REENTRY_COOLDOWN_BARS = 6

# ─────────────────────────────────────────────
# FILTER BANK
# ─────────────────────────────────────────────
CANDIDATE_FILTERS = ()                          # applied to new OBs
ENTRY_FILTERS     = ("atr_range", "order_flow") # applied just before fill

ATR_FILTER_MIN_PCT = 0.4
ATR_FILTER_MAX_PCT = 3.0
CVD_LOOKBACK       = 20
CVD_TREND_BARS     = 10

SWING_LOOKBACK     = 2
BOS_LOOKBACK       = 30
SWEEP_LOOKBACK     = 30
SWEEP_RECENT_BARS  = 5
EMA_FAST           = 8
EMA_MID            = 21
EMA_SLOW           = 55
FVG_MIN_GAP_PCT    = 0.05
FVG_RECENT_BARS    = 5
FILTER_WINDOW_BARS = 200            # candles handed to structure / regime filters

ADX_PERIOD          = 14
ADX_STRONG_LEVEL    = 25.0
ADX_WEAK_LEVEL      = 20.0
RSI_PERIOD          = 14
RSI_OVERBOUGHT      = 70.0
RSI_OVERSOLD        = 30.0
REGIME_STRATEGY_TYPE = "breakout"   # breakout | trend | reversal

# ─────────────────────────────────────────────
# MARKET REGIME
# ─────────────────────────────────────────────
REGIME_CACHE_TTL_SEC = 900          # 15 minutes
REGIME_WINDOW_BARS   = 100
BB_PERIOD            = 20
BB_STD_DEV           = 2.0

# ─────────────────────────────────────────────
# ORDER SUBMISSION (live)
# ─────────────────────────────────────────────
ORDER_MAX_RETRIES          = 3
ORDER_RETRY_INITIAL_DELAY  = 1.0
ORDER_RETRY_MAX_DELAY      = 30.0
CIRCUIT_FAILURE_THRESHOLD  = 5
CIRCUIT_TIMEOUT_SECONDS    = 60.0
CIRCUIT_HALF_OPEN_CALLS    = 2

# ─────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE  = os.getenv("LOG_FILE", "ob_engine.log")
