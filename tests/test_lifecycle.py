
import pytest

from builders import (
    MOVED_AWAY_BAR, OB_BAR, RETEST_BAR, flat_above, long_setup, noisy_tape, retest_setup,
)
from lifecycle import (
    DEFERRED_NO_REVERSAL, FillDeferred, LimitCancelled, LimitPlaced, OBDetected,
    OBRejected, OBReplaced, PositionOpened, StopMoved, TradeClosed, Transition,
    in_cooldown,
)
from position_manager import EXIT_BREAKEVEN, EXIT_SL, EXIT_TP1
from risk_manager import AccountRiskManager, RiskManagementState
from state_machine import (
    PHASE_ACTIVE, PHASE_FILLED, PHASE_INVALIDATED, PHASE_LIMIT_PENDING,
    PHASE_MOVED_AWAY, PHASE_NONE, PHASE_OB_ZONE_EXIT, PHASE_TIMED_OUT,
)
from strategy import SymbolEngine
from structure import LONG
from telemetry import MemorySink


def _engine(cfg, risk_state=None) -> SymbolEngine:
    account = AccountRiskManager(10_000.0, risk_state, enabled=cfg.enable_risk_management)
    return SymbolEngine("TEST", cfg, account=account, sink=MemorySink())


def _run(engine, candles):
    return [engine.on_candle(c) for c in candles]


def _of(effects, kind):
    return [e for e in effects if isinstance(e, kind)]


def test_bullish_retest_fills_at_midpoint_plus_slippage(cfg) -> None:
    tape, p = retest_setup()
    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    assert all(not e for e in effects[:OB_BAR])
    assert len(_of(effects[OB_BAR], OBDetected)) == 1

    placed = _of(effects[MOVED_AWAY_BAR], LimitPlaced)
    assert len(placed) == 1
    assert placed[0].order.limit_price == pytest.approx(p + 0.81)
    assert placed[0].order.client_order_id == f"ob-TEST-L-{OB_BAR}"

    opened = _of(effects[RETEST_BAR], PositionOpened)
    assert len(opened) == 1
    position = opened[0].position
    assert position.direction == LONG
    assert position.entry == pytest.approx((p + 0.81) * (1 + cfg.maker_slippage))
    assert position.entry_bar_index == RETEST_BAR

    assert engine.phase == PHASE_FILLED
    assert [t.to_state for t in engine.tracker.get_history()] == [
        PHASE_ACTIVE, PHASE_MOVED_AWAY, PHASE_LIMIT_PENDING, PHASE_FILLED]
    assert engine.stats.filled == 1
    assert engine.stats.fill_rate == 100.0


def test_bearish_retest_defers_then_times_out(cfg) -> None:
    tape, p = long_setup()
    flat_above(tape, p, 3)
    tape.add(p + 1.25, p + 1.3, p + 0.7, p + 0.95)
    flat_above(tape, p, cfg.order_validity_bars)

    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    deferred = _of(effects[RETEST_BAR], FillDeferred)
    assert [d.reason for d in deferred] == [DEFERRED_NO_REVERSAL]
    assert not any(_of(e, PositionOpened) for e in effects)

    cancelled = [c for e in effects for c in _of(e, LimitCancelled)]
    assert [c.reason for c in cancelled] == [PHASE_TIMED_OUT]
    assert engine.phase == PHASE_NONE
    assert engine.stats.skipped_timeout == 1
    assert engine.stats.reversal_deferrals == 1
    assert engine.stats.total_signals == 1
    assert engine.stats.filled == 0


def test_entry_filter_failure_defers_fill(cfg) -> None:
    tape, _ = retest_setup()
    engine = _engine(cfg.with_overrides(entry_filters=("atr_range",), atr_filter_min_pct=5.0))
    effects = _run(engine, tape.candles)

    deferred = _of(effects[RETEST_BAR], FillDeferred)
    assert [d.reason for d in deferred] == ["filter failed: atr_range"]
    assert engine.position is None
    assert engine.stats.filter_deferrals == 1


def test_zone_exit_cancels_order_and_remembers_failed_block(cfg) -> None:
    tape, p = long_setup()
    flat_above(tape, p, 1)
    tape.add(p + 0.5, p + 0.6, p - 1.1, p - 1.0)

    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    cancelled = _of(effects[-1], LimitCancelled)
    assert [c.reason for c in cancelled] == [PHASE_OB_ZONE_EXIT]
    assert engine.phase == PHASE_NONE
    assert engine.state.failed_obs.entries == ((pytest.approx(p + 0.81), MOVED_AWAY_BAR),)
    assert engine.stats.skipped_ob_exit == 1


def test_active_block_invalidated_when_price_trades_through(cfg) -> None:
    tape, p = long_setup()
    tape.add(p + 1.0, p + 1.2, p - 0.2, p + 0.3)

    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    transitions = [(t.from_phase, t.to_phase) for t in _of(effects[-1], Transition)]
    assert transitions == [(PHASE_ACTIVE, PHASE_INVALIDATED), (PHASE_INVALIDATED, PHASE_NONE)]
    assert engine.active_ob is None


def test_stronger_block_replaces_active_one(cfg) -> None:
    tape, p = long_setup()
    tape.add(p + 1.7, p + 3.5, p + 1.6, p + 3.4, v=1000.0)

    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    assert len(_of(effects[-1], OBReplaced)) == 1
    assert engine.active_ob.bar_index == OB_BAR + 1
    assert engine.phase == PHASE_ACTIVE
    assert engine.stats.obs_replaced == 1


def test_weaker_candidate_keeps_active_block(cfg) -> None:
    tape, p = long_setup()
    tape.add(p + 1.7, p + 3.5, p + 1.6, p + 3.4, v=250.0)

    engine = _engine(cfg)
    effects = _run(engine, tape.candles)

    rejected = _of(effects[-1], OBRejected)
    assert [r.reason for r in rejected] == ["active block kept"]
    placed = _of(effects[-1], LimitPlaced)
    assert placed[0].order.ob.bar_index == OB_BAR


def test_partial_exit_breakeven_and_size_conservation(cfg) -> None:
    cfg = cfg.with_overrides(tp1_close_percent=0.5)
    tape, p = retest_setup()
    engine = _engine(cfg)
    _run(engine, tape.candles)
    position = engine.position

    tp1_effects = engine.on_candle(
        tape.add(p + 1.3, position.take_profit1 + 0.05, p + 1.2, p + 1.6))
    first = _of(tp1_effects, TradeClosed)[0].trade
    assert first.exit_reason == EXIT_TP1
    assert first.is_final is False
    assert first.size == pytest.approx(0.5)
    assert len(_of(tp1_effects, StopMoved)) == 1
    assert engine.position.stop_loss == position.entry
    assert engine.position.remaining_size == pytest.approx(0.5)
    assert engine.phase == PHASE_FILLED

    be_effects = engine.on_candle(
        tape.add(p + 1.5, p + 1.7, position.entry - 0.1, p + 1.0))
    second = _of(be_effects, TradeClosed)[0].trade
    assert second.exit_reason == EXIT_BREAKEVEN
    assert second.exit == position.entry
    assert second.is_final is True

    assert sum(t.size for t in engine.trades) == pytest.approx(1.0)
    assert sum(t.position_size for t in engine.trades) == pytest.approx(position.quantity)
    assert engine.account.capital == pytest.approx(10_000.0 + first.pnl + second.pnl)
    assert engine.phase == PHASE_NONE


def test_no_detection_during_reentry_cooldown(cfg) -> None:
    tape, p = retest_setup()
    engine = _engine(cfg)
    _run(engine, tape.candles)
    position = engine.position

    engine.on_candle(tape.add(p + 1.3, position.take_profit1 + 0.05, p + 1.2, p + 1.6))
    exit_bar = engine.history.bar_index
    assert engine.state.last_exit_bar == exit_bar

    flat_above(tape, p, 1)
    engine.on_candle(tape.candles[-1])
    strong = engine.on_candle(tape.add(p + 1.7, p + 3.7, p + 1.6, p + 3.6, v=600.0))
    assert not _of(strong, OBDetected)
    assert not _of(strong, OBRejected)

    assert in_cooldown(engine.state, exit_bar + cfg.reentry_cooldown_bars - 1, cfg)
    assert not in_cooldown(engine.state, exit_bar + cfg.reentry_cooldown_bars, cfg)


def test_fill_margin_uses_current_risk_multiplier(cfg) -> None:
    tape, _ = retest_setup()
    engine = _engine(cfg, RiskManagementState(5, 0, 0.5))
    _run(engine, tape.candles)

    assert engine.position.margin == pytest.approx(10_000.0 * cfg.capital_usage_fraction * 0.5)


def test_identical_candles_give_identical_decisions(cfg) -> None:
    tape = noisy_tape(7)
    first, second = _engine(cfg), _engine(cfg)
    _run(first, tape.candles)
    _run(second, tape.candles)

    assert first.trades == second.trades
    assert first.stats.to_dict() == second.stats.to_dict()
    assert first.account.capital == second.account.capital
    assert first.tracker.get_history() == second.tracker.get_history()


def test_single_lifecycle_variant_per_candle(cfg) -> None:
    tape = noisy_tape(11)
    engine = _engine(cfg.with_overrides(tp1_close_percent=0.5))
    for candle in tape.candles:
        engine.on_candle(candle)
        held = [x for x in (engine.active_ob, engine.pending_order, engine.position)
                if x is not None]
        assert len(held) <= 1
        assert engine.phase == engine.state.phase


def test_losing_exit_blocks_retry_of_same_zone(cfg) -> None:
    tape, p = retest_setup()
    engine = _engine(cfg)
    _run(engine, tape.candles)
    position = engine.position

    sl = position.stop_loss
    stopped = engine.on_candle(tape.add(p + 1.0, p + 1.1, sl - 0.1, sl - 0.05))
    assert _of(stopped, TradeClosed)[0].trade.exit_reason == EXIT_SL
    exit_bar = engine.history.bar_index
    assert engine.state.failed_obs.entries == ((position.entry, exit_bar),)

    tape.trend(cfg.reentry_cooldown_bars)
    _run(engine, tape.candles[-cfg.reentry_cooldown_bars:])
    retry = engine.on_candle(tape.add(p - 0.4, p + 2.3, p - 0.5, p + 2.2, v=300.0))

    rejected = _of(retry, OBRejected)
    assert [r.reason for r in rejected] == [
        f"Failed OB retry ({cfg.reentry_cooldown_bars + 1} bars ago)"]
    assert engine.phase == PHASE_NONE
