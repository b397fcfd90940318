import pytest

from backtest import max_drawdown, run_backtest, summarize
from builders import OB_BAR, noisy_tape, retest_setup
from position_manager import EXIT_TP1, Trade
from risk_manager import RiskManagementState


def _trade(pnl: float, is_win=None, fees: float = 1.0) -> Trade:
    return Trade(
        symbol="TEST", direction="LONG", entry_time=0.0, exit_time=1.0,
        entry=100.0, exit=100.0, size=1.0, position_size=1.0, margin=100.0,
        stop_loss=99.0, take_profit=101.0, entry_fee=fees / 2, exit_fee=fees / 2,
        pnl=pnl, pnl_percent=0.0, is_win=pnl > 0 if is_win is None else is_win,
        method="ORB", exit_reason="SL", is_final=True, entry_bar_index=0,
        exit_bar_index=1,
    )


def _winning_tape():
    tape, p = retest_setup()
    tape.add(p + 1.3, p + 2.5, p + 1.2, p + 2.3)
    return tape


def test_max_drawdown_from_running_peak() -> None:
    assert max_drawdown(100.0, [10.0, -22.0, 5.0]) == pytest.approx(20.0)
    assert max_drawdown(100.0, [5.0, 5.0]) == 0.0
    assert max_drawdown(100.0, []) == 0.0


def test_summarize_metrics() -> None:
    trades = [_trade(30.0), _trade(-10.0), _trade(-5.0), _trade(-0.5, is_win=True)]
    m = summarize(trades, 1_000.0, 1_014.5)

    assert (m["total_trades"], m["wins"], m["losses"]) == (4, 2, 2)
    assert m["win_rate"] == 50.0
    assert m["total_pnl"] == pytest.approx(14.5)
    assert m["total_return"] == pytest.approx(1.45)
    assert m["profit_factor"] == pytest.approx(30.0 / 15.5)
    assert m["avg_win"] == pytest.approx(14.75)
    assert m["avg_loss"] == pytest.approx(-7.5)
    assert (m["largest_win"], m["largest_loss"]) == (30.0, -10.0)
    assert m["total_fees"] == pytest.approx(4.0)


def test_summarize_without_losses() -> None:
    m = summarize([_trade(5.0)], 100.0, 105.0)
    assert m["profit_factor"] is None
    empty = summarize([], 100.0, 100.0)
    assert empty["win_rate"] == 0.0
    assert empty["largest_win"] == 0.0


def test_backtest_books_the_retest_trade(cfg) -> None:
    tape = _winning_tape()
    result = run_backtest("TEST", tape.candles, cfg, initial_capital=10_000.0)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason == EXIT_TP1
    assert trade.is_win is True
    assert result.final_capital == pytest.approx(10_000.0 + trade.pnl)
    assert result.metrics["total_trades"] == 1
    assert result.stats.filled == 1
    assert result.risk_state == RiskManagementState(0, 1, 1.0)
    assert result.to_dict()["trades"][0]["exit_reason"] == EXIT_TP1
    assert result.summary()["bars"] == len(tape)


def test_trade_window_moves_capital_but_skips_log(cfg) -> None:
    tape = _winning_tape()
    result = run_backtest("TEST", tape.candles, cfg, initial_capital=10_000.0,
                          start=tape.candles[-1].timestamp)

    assert result.trades == []
    assert result.final_capital > 10_000.0
    assert result.risk_state == RiskManagementState()
    assert result.metrics["total_pnl"] == pytest.approx(result.final_capital - 10_000.0)


def test_warmup_candles_make_no_decisions(cfg) -> None:
    tape = _winning_tape()
    assert run_backtest("TEST", tape.candles, cfg).stats.obs_detected == 1

    warmed = run_backtest("TEST", tape.candles, cfg, warmup_bars=OB_BAR + 1)
    assert warmed.stats.obs_detected == 0
    assert warmed.trades == []


def test_repeat_runs_are_identical(cfg) -> None:
    tape = noisy_tape(3)
    first = run_backtest("TEST", tape.candles, cfg)
    second = run_backtest("TEST", tape.candles, cfg)
    assert first.to_dict() == second.to_dict()
