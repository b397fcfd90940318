"""
lifecycle.py — Pure per-candle transition function
===================================================

    new_state, effects = advance(state, bar, cfg)

``advance`` never mutates its inputs and never performs I/O; everything the
outside world should hear about (detections, rejections, phase transitions,
fills, trades) comes back as an effect. Backtest and live both call it once
per closed candle, so both produce the same decisions from the same candles.

Per candle
----------
  Open     → exit check (TP1 / TP2 / SL / time stop). A full exit returns to
             Idle and the same candle continues as Idle (cooldown applies).
  Pending  → zone exit, timeout, touch + reversal + entry filters, fill.
  Active   → age / invalidate, detection + replacement, moved-away → Pending.
  Idle     → cooldown, warm-up, detection + rejection → Active.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, ClassVar, List, Optional, Tuple

import order_block as obm
import position_manager as pm
from data_manager import Candle, CandleHistory
from filters import FilterBank, FilterContext, confluence
from order_block import LimitOrder, OrderBlock
from risk_manager import AccountSnapshot, compute_margin
from state_machine import (
    Active, Idle, Open, Pending, SymbolState,
    PHASE_ACTIVE, PHASE_FILLED, PHASE_INVALIDATED, PHASE_LIMIT_PENDING,
    PHASE_MOVED_AWAY, PHASE_NONE, PHASE_OB_ZONE_EXIT, PHASE_POSITION_CLOSED,
    PHASE_TIMED_OUT,
)
from strategy_config import StrategyConfig

logger = logging.getLogger(__name__)


# ============================================================================
# INPUT
# ============================================================================

@dataclass(frozen=True)
class Bar:
    """One closed candle plus the read-only context decisions need."""
    symbol:        str
    candle:        Candle
    bar_index:     int
    history:       CandleHistory      # already contains ``candle``
    account:       AccountSnapshot
    regime_lookup: Optional[Callable[[], object]] = None

    @property
    def atr(self) -> Optional[float]:
        return self.history.atr

    @property
    def vol_avg(self) -> Optional[float]:
        return self.history.volume_avg

    @property
    def atr_pct(self) -> Optional[float]:
        return self.history.atr_percent()


# ============================================================================
# EFFECTS
# ============================================================================

@dataclass(frozen=True)
class Transition:
    kind: ClassVar[str] = "transition"
    from_phase: str
    to_phase:   str
    reason:     Optional[str] = None


@dataclass(frozen=True)
class OBDetected:
    kind: ClassVar[str] = "ob_detected"
    ob: OrderBlock


@dataclass(frozen=True)
class OBRejected:
    kind: ClassVar[str] = "ob_rejected"
    ob:     OrderBlock
    reason: str


@dataclass(frozen=True)
class OBReplaced:
    kind: ClassVar[str] = "ob_replaced"
    old: OrderBlock
    new: OrderBlock


@dataclass(frozen=True)
class LimitPlaced:
    kind: ClassVar[str] = "limit_placed"
    order: LimitOrder


@dataclass(frozen=True)
class LimitCancelled:
    kind: ClassVar[str] = "limit_cancelled"
    order:  LimitOrder
    reason: str          # TIMED_OUT | OB_ZONE_EXIT


@dataclass(frozen=True)
class FillDeferred:
    kind: ClassVar[str] = "fill_deferred"
    order:  LimitOrder
    reason: str


@dataclass(frozen=True)
class PositionOpened:
    kind: ClassVar[str] = "position_opened"
    position: pm.Position


@dataclass(frozen=True)
class StopMoved:
    kind: ClassVar[str] = "stop_moved"
    position: pm.Position


@dataclass(frozen=True)
class TradeClosed:
    kind: ClassVar[str] = "trade_closed"
    trade:    pm.Trade
    position: pm.Position    # as it was before this exit


DEFERRED_NO_REVERSAL = "no reversal candle"


# ============================================================================
# TRANSITION FUNCTION
# ============================================================================

def advance(state: SymbolState, bar: Bar,
            cfg: StrategyConfig) -> Tuple[SymbolState, List[object]]:
    effects: List[object] = []

    memory = state.failed_obs.prune(bar.bar_index, cfg.failed_ob_retention_bars)
    if memory is not state.failed_obs:
        state = replace(state, failed_obs=memory)

    lifecycle = state.lifecycle
    if isinstance(lifecycle, Open):
        state = _step_open(state, lifecycle, bar, cfg, effects)
        if not isinstance(state.lifecycle, Idle):
            return state, effects
        return _step_idle(state, bar, cfg, effects), effects

    if isinstance(lifecycle, Pending):
        return _step_pending(state, lifecycle, bar, cfg, effects), effects

    if isinstance(lifecycle, Active):
        return _step_active(state, lifecycle, bar, cfg, effects), effects

    return _step_idle(state, bar, cfg, effects), effects


def in_cooldown(state: SymbolState, bar_index: int, cfg: StrategyConfig) -> bool:
    return bar_index - state.last_exit_bar < cfg.reentry_cooldown_bars


def warmed_up(bar: Bar, cfg: StrategyConfig) -> bool:
    return (len(bar.history) >= cfg.min_history_bars
            and bar.atr is not None
            and bar.vol_avg is not None
            and bar.history.trend_sma is not None)


# ── Idle ─────────────────────────────────────────────────────────────────────

def _step_idle(state: SymbolState, bar: Bar, cfg: StrategyConfig,
               effects: List[object]) -> SymbolState:
    if in_cooldown(state, bar.bar_index, cfg) or not warmed_up(bar, cfg):
        return state

    candidate = _screened_candidate(state, bar, cfg, effects)
    if candidate is None:
        return state

    effects.append(OBDetected(candidate))
    effects.append(Transition(PHASE_NONE, PHASE_ACTIVE, "ORB detected"))
    return replace(state, lifecycle=Active(candidate))


def _screened_candidate(state: SymbolState, bar: Bar, cfg: StrategyConfig,
                        effects: List[object]) -> Optional[OrderBlock]:
    """Detect a block on this candle and run the rejection filters on it."""
    candidate = obm.detect_orb(bar.candle, bar.bar_index, bar.atr, bar.vol_avg, cfg)
    if candidate is None:
        return None

    reason = obm.rejection_reason(candidate, bar.history, state.failed_obs, bar.atr, cfg)
    if reason is None:
        ctx = FilterContext(
            symbol=bar.symbol,
            direction=candidate.type,
            candles=bar.history.recent(cfg.filter_window_bars),
            atr=bar.atr,
            ob_top=candidate.top,
            ob_bottom=candidate.bottom,
            regime_lookup=bar.regime_lookup,
        )
        flags, score = confluence(ctx, cfg)
        bank = FilterBank(cfg.candidate_filters, cfg)
        result = bank.evaluate(ctx)
        candidate = replace(
            candidate,
            filter_flags=tuple(sorted({**flags, **dict(result.flags)}.items())),
            filter_score=score,
        )
        reason = result.reason

    if reason is not None:
        effects.append(OBRejected(candidate, reason))
        return None
    return candidate


# ── Active ───────────────────────────────────────────────────────────────────

def _step_active(state: SymbolState, lifecycle: Active, bar: Bar,
                 cfg: StrategyConfig, effects: List[object]) -> SymbolState:
    ob = obm.aged(lifecycle.ob, bar.bar_index)

    reason = obm.invalidation_reason(ob, bar.candle, cfg)
    if reason is not None:
        effects.append(Transition(PHASE_ACTIVE, PHASE_INVALIDATED, reason))
        effects.append(Transition(PHASE_INVALIDATED, PHASE_NONE))
        return _step_idle(replace(state, lifecycle=Idle()), bar, cfg, effects)

    if warmed_up(bar, cfg):
        candidate = _screened_candidate(state, bar, cfg, effects)
        if candidate is not None:
            if obm.should_replace(ob, candidate, bar.vol_avg, cfg):
                effects.append(OBReplaced(ob, candidate))
                effects.append(Transition(PHASE_ACTIVE, PHASE_ACTIVE, "replaced by stronger block"))
                return replace(state, lifecycle=Active(candidate))
            effects.append(OBRejected(candidate, "active block kept"))

    atr_pct = bar.atr_pct
    if atr_pct is not None and obm.has_moved_away(ob, bar.candle, atr_pct, cfg):
        ob = replace(ob, priced_moved_away=True)
        order = LimitOrder(
            direction=ob.type,
            limit_price=ob.midpoint,
            ob=ob,
            created_bar_index=bar.bar_index,
            client_order_id=obm.make_client_order_id(bar.symbol, ob),
        )
        effects.append(Transition(PHASE_ACTIVE, PHASE_MOVED_AWAY))
        effects.append(Transition(PHASE_MOVED_AWAY, PHASE_LIMIT_PENDING))
        effects.append(LimitPlaced(order))
        return replace(state, lifecycle=Pending(order))

    return replace(state, lifecycle=Active(ob))


# ── Pending ──────────────────────────────────────────────────────────────────

def _step_pending(state: SymbolState, lifecycle: Pending, bar: Bar,
                  cfg: StrategyConfig, effects: List[object]) -> SymbolState:
    order = lifecycle.order
    candle = bar.candle
    age = order.age(bar.bar_index)

    if age > 0 and obm.left_zone(order, candle, cfg):
        effects.append(LimitCancelled(order, PHASE_OB_ZONE_EXIT))
        effects.append(Transition(PHASE_LIMIT_PENDING, PHASE_OB_ZONE_EXIT))
        effects.append(Transition(PHASE_OB_ZONE_EXIT, PHASE_NONE))
        return replace(
            state,
            lifecycle=Idle(),
            failed_obs=state.failed_obs.add(order.limit_price, order.created_bar_index),
        )

    touched = candle.touches(order.limit_price)
    if not touched:
        if age >= cfg.order_validity_bars:
            effects.append(LimitCancelled(order, PHASE_TIMED_OUT))
            effects.append(Transition(PHASE_LIMIT_PENDING, PHASE_TIMED_OUT))
            effects.append(Transition(PHASE_TIMED_OUT, PHASE_NONE))
            return replace(state, lifecycle=Idle())
        return state

    if cfg.require_reversal and not obm.is_reversal(order.direction, candle):
        effects.append(FillDeferred(order, DEFERRED_NO_REVERSAL))
        return state

    bank = FilterBank(cfg.entry_filters, cfg)
    if bank:
        ctx = FilterContext(
            symbol=bar.symbol,
            direction=order.direction,
            candles=bar.history.recent(cfg.filter_window_bars),
            atr=bar.atr,
            ob_top=order.ob.top,
            ob_bottom=order.ob.bottom,
            regime_lookup=bar.regime_lookup,
        )
        result = bank.evaluate(ctx)
        if not result.passed:
            effects.append(FillDeferred(order, result.reason))
            return state

    margin = compute_margin(bar.account.capital, bar.account.risk, cfg)
    position = pm.open_position(
        bar.symbol, order, candle, bar.bar_index, bar.atr, margin,
        bar.account.capital, cfg)
    effects.append(Transition(PHASE_LIMIT_PENDING, PHASE_FILLED))
    effects.append(PositionOpened(position))
    return replace(state, lifecycle=Open(position))


# ── Open ─────────────────────────────────────────────────────────────────────

def _step_open(state: SymbolState, lifecycle: Open, bar: Bar,
               cfg: StrategyConfig, effects: List[object]) -> SymbolState:
    position = lifecycle.position
    decision = pm.evaluate_exit(position, bar.candle, bar.bar_index, cfg)
    if decision is None:
        return state

    trade, after = pm.settle(position, decision, bar.candle, bar.bar_index, cfg)
    effects.append(TradeClosed(trade, position))

    if after is not None:
        effects.append(StopMoved(after))
        return replace(state, lifecycle=Open(after))

    failed_obs = state.failed_obs
    if trade.pnl < 0:
        failed_obs = failed_obs.add(position.entry, bar.bar_index)
    effects.append(Transition(PHASE_FILLED, PHASE_POSITION_CLOSED, trade.exit_reason))
    effects.append(Transition(PHASE_POSITION_CLOSED, PHASE_NONE))
    return SymbolState(lifecycle=Idle(), failed_obs=failed_obs,
                       last_exit_bar=bar.bar_index)
