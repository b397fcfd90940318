import pytest

from builders import make_candle
from position_manager import (
    EXIT_BREAKEVEN, EXIT_SL, EXIT_TIME_STOP, EXIT_TP1, EXIT_TP2,
    Position, entry_levels, evaluate_exit, settle,
)
from structure import LONG, SHORT


def _long(**kw) -> Position:
    base = dict(
        symbol="TEST", direction=LONG, entry=100.0, stop_loss=99.0,
        take_profit1=100.8, take_profit2=104.0, entry_time=0.0,
        entry_bar_index=10, margin=1000.0, leverage=20,
    )
    base.update(kw)
    return Position(**base)


def test_entry_levels_long_and_short(cfg) -> None:
    sl, tp1, tp2, capped = entry_levels(LONG, 100.0, 100.5, 99.5, None, cfg)
    risk = 100.0 - 99.5 * (1 - cfg.sl_buffer_pct)
    assert sl == pytest.approx(99.5 * (1 - cfg.sl_buffer_pct))
    assert tp1 == pytest.approx(100.0 + risk * cfg.tp1_ratio)
    assert tp2 == pytest.approx(100.0 + risk * cfg.reward_risk_ratio)
    assert capped is False

    sl, tp1, tp2, _ = entry_levels(SHORT, 100.0, 100.5, 99.5, None, cfg)
    assert sl == pytest.approx(100.5 * (1 + cfg.sl_buffer_pct))
    assert tp1 < 100.0 < sl


def test_risk_cap_only_shrinks_stop_distance(cfg) -> None:
    capped_cfg = cfg.with_overrides(enable_risk_cap=True, max_risk_atr=1.0)
    sl, _, _, capped = entry_levels(LONG, 100.0, 100.5, 97.0, 0.5, capped_cfg)
    assert capped is True
    assert sl == pytest.approx(99.5)

    sl, _, _, capped = entry_levels(LONG, 100.0, 100.5, 99.9, 5.0, capped_cfg)
    assert capped is False
    assert sl == pytest.approx(99.9 * (1 - cfg.sl_buffer_pct))


def test_same_candle_tp1_and_sl_open_closer_to_stop(cfg) -> None:
    candle = make_candle(11, 99.2, 101.0, 98.9, 99.5)
    decision = evaluate_exit(_long(), candle, 11, cfg)
    assert decision.reason == EXIT_SL
    assert decision.price == 99.0


def test_same_candle_tie_goes_to_take_profit(cfg) -> None:
    candle = make_candle(11, 100.0, 101.0, 99.0, 100.5)
    position = _long(take_profit1=101.0, stop_loss=99.0)
    assert evaluate_exit(position, candle, 11, cfg).reason == EXIT_TP1


def test_after_partial_tp2_and_breakeven(cfg) -> None:
    position = _long(stop_loss=100.0, partial_exit_done=True, remaining_size=0.5)

    hit_tp2 = evaluate_exit(position, make_candle(12, 101.0, 104.5, 100.5, 104.0), 12, cfg)
    assert (hit_tp2.reason, hit_tp2.fraction) == (EXIT_TP2, 0.5)

    hit_be = evaluate_exit(position, make_candle(12, 101.0, 101.5, 99.8, 100.2), 12, cfg)
    assert hit_be.reason == EXIT_BREAKEVEN
    assert hit_be.price == 100.0


def test_partial_disabled_closes_everything_at_tp1(cfg) -> None:
    decision = evaluate_exit(_long(), make_candle(11, 100.2, 101.0, 99.9, 100.9), 11, cfg)
    assert decision.reason == EXIT_TP1
    assert decision.partial is False
    assert decision.fraction == 1.0


def test_settle_partial_moves_stop_to_entry(cfg) -> None:
    cfg = cfg.with_overrides(tp1_close_percent=0.6)
    position = _long()
    candle = make_candle(11, 100.2, 101.0, 99.9, 100.9)
    trade, after = settle(position, evaluate_exit(position, candle, 11, cfg), candle, 11, cfg)

    assert trade.is_final is False
    assert trade.size == pytest.approx(0.6)
    assert after.stop_loss == position.entry
    assert after.remaining_size == pytest.approx(0.4)
    assert after.partial_exit_done is True


def test_settle_fees_and_pnl(cfg) -> None:
    position = _long()
    candle = make_candle(11, 100.2, 101.0, 99.9, 100.9)
    trade, after = settle(position, evaluate_exit(position, candle, 11, cfg), candle, 11, cfg)

    units = 1000.0 * 20 / 100.0
    assert after is None
    assert trade.entry_fee == pytest.approx(units * 100.0 * cfg.maker_fee)
    assert trade.exit_fee == pytest.approx(units * 100.8 * cfg.taker_fee)
    assert trade.pnl == pytest.approx(units * 0.8 - trade.fees)
    assert trade.is_win is True


def test_time_stop_at_open_scored_by_price_move(cfg) -> None:
    position = _long()
    quiet = make_candle(0, 100.01, 100.3, 99.7, 100.1)
    exit_bar = position.entry_bar_index + cfg.max_holding_bars

    assert evaluate_exit(position, quiet, exit_bar - 1, cfg) is None

    decision = evaluate_exit(position, quiet, exit_bar, cfg)
    assert decision.reason == EXIT_TIME_STOP
    assert decision.price == 100.01

    trade, _ = settle(position, decision, quiet, exit_bar, cfg)
    assert trade.pnl < 0          # fees exceed the tiny move
    assert trade.is_win is True


def test_time_stop_uses_remaining_size(cfg) -> None:
    position = _long(stop_loss=100.0, partial_exit_done=True, remaining_size=0.5)
    candle = make_candle(0, 100.4, 100.6, 100.2, 100.5)
    decision = evaluate_exit(position, candle, 10 + cfg.max_holding_bars, cfg)
    assert decision.reason == EXIT_TIME_STOP
    assert decision.fraction == 0.5


def test_short_position_stop_hit(cfg) -> None:
    position = _long(direction=SHORT, stop_loss=101.0, take_profit1=99.2, take_profit2=96.0)
    decision = evaluate_exit(position, make_candle(11, 100.5, 101.2, 100.1, 101.0), 11, cfg)
    assert decision.reason == EXIT_SL
    trade, _ = settle(position, decision, make_candle(11, 100.5, 101.2, 100.1, 101.0), 11, cfg)
    assert trade.pnl < 0
    assert trade.is_win is False
