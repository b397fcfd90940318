"""
Risk Manager — streak-based position sizing
============================================
RiskManagementState is a plain value: ``apply_exit`` takes the old state and
a full-exit result and returns the new one. AccountRiskManager is the single
writer that owns the account's capital and current state when several
symbols share one pool of capital.

Ladder
  loss  → losses+1, wins=0; ≥10 losses clamp multiplier to ≤0.25,
          ≥5 losses clamp to ≤0.5 (a clamp is never loosened by losses)
  win   → wins+1, losses=0; ≥3 wins reset multiplier to 1.0
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional

import config
from strategy_config import StrategyConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskManagementState:
    consecutive_losses:       int   = 0
    consecutive_wins:         int   = 0
    position_size_multiplier: float = 1.0

    def to_dict(self) -> Dict:
        return {
            "consecutive_losses": self.consecutive_losses,
            "consecutive_wins": self.consecutive_wins,
            "position_size_multiplier": self.position_size_multiplier,
        }


def apply_exit(state: RiskManagementState, is_win: bool) -> RiskManagementState:
    """New risk state after one full exit."""
    if is_win:
        wins = state.consecutive_wins + 1
        multiplier = state.position_size_multiplier
        if wins >= config.WIN_STREAK_RESET:
            multiplier = 1.0
        return RiskManagementState(0, wins, multiplier)

    losses = state.consecutive_losses + 1
    multiplier = state.position_size_multiplier
    if losses >= config.LOSS_STREAK_QUARTER:
        multiplier = min(multiplier, config.QUARTER_SIZE_MULTIPLIER)
    elif losses >= config.LOSS_STREAK_HALF:
        multiplier = min(multiplier, config.HALF_SIZE_MULTIPLIER)
    return RiskManagementState(losses, 0, multiplier)


def compute_margin(capital: float, state: RiskManagementState,
                   cfg: StrategyConfig) -> float:
    """
    clamp(capital × fraction, min, max) × multiplier, floored at min_margin.
    The multiplier is ignored when risk management is disabled.
    """
    margin = capital * cfg.capital_usage_fraction
    margin = max(cfg.min_margin, min(margin, cfg.max_margin))
    if cfg.enable_risk_management:
        margin = max(cfg.min_margin, margin * state.position_size_multiplier)
    return margin


@dataclass(frozen=True)
class AccountSnapshot:
    capital: float
    risk:    RiskManagementState


class AccountRiskManager:
    """Serialises capital and streak updates for one trading account."""

    def __init__(self, initial_capital: float = config.INITIAL_CAPITAL,
                 state: Optional[RiskManagementState] = None,
                 enabled: bool = config.ENABLE_RISK_MANAGEMENT):
        self._lock = threading.RLock()
        self.initial_capital = initial_capital
        self._capital = initial_capital
        self._state = state or RiskManagementState()
        self.enabled = enabled

        logger.info(
            f"✅ AccountRiskManager initialized: capital=${initial_capital:,.2f} "
            f"risk_management={'ON' if enabled else 'OFF'}")

    @property
    def capital(self) -> float:
        with self._lock:
            return self._capital

    @property
    def state(self) -> RiskManagementState:
        with self._lock:
            return self._state

    def snapshot(self) -> AccountSnapshot:
        with self._lock:
            return AccountSnapshot(self._capital, self._state)

    def record_exit(self, pnl: float, is_final: bool, is_win: bool,
                    update_streaks: bool = True) -> RiskManagementState:
        """Book realised PnL; full exits also advance the streak counters."""
        with self._lock:
            self._capital += pnl
            if is_final and update_streaks and self.enabled:
                old = self._state
                self._state = apply_exit(old, is_win)
                if self._state.position_size_multiplier != old.position_size_multiplier:
                    logger.warning(
                        f"⚖️ Size multiplier {old.position_size_multiplier:.2f} → "
                        f"{self._state.position_size_multiplier:.2f} "
                        f"(losses={self._state.consecutive_losses} "
                        f"wins={self._state.consecutive_wins})")
            return self._state

    def reset(self, state: Optional[RiskManagementState] = None) -> None:
        with self._lock:
            self._state = replace(state) if state else RiskManagementState()
