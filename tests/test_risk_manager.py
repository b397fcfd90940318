import pytest

from risk_manager import (
    AccountRiskManager, RiskManagementState, apply_exit, compute_margin,
)


def _after(results, state=None) -> RiskManagementState:
    state = state or RiskManagementState()
    for is_win in results:
        state = apply_exit(state, is_win)
    return state


def test_five_losses_halve_next_margin(cfg) -> None:
    account = AccountRiskManager(10_000.0)
    for _ in range(5):
        account.record_exit(-10.0, is_final=True, is_win=False)

    assert account.state.consecutive_losses == 5
    assert account.state.position_size_multiplier <= 0.5
    margin = compute_margin(account.capital, account.state, cfg)
    assert margin == pytest.approx(9_950.0 * cfg.capital_usage_fraction * 0.5)


def test_ladder_boundaries() -> None:
    assert _after([False] * 4).position_size_multiplier == 1.0
    assert _after([False] * 5).position_size_multiplier == 0.5
    assert _after([False] * 9).position_size_multiplier == 0.5
    assert _after([False] * 10).position_size_multiplier == 0.25


def test_wins_reset_only_after_three() -> None:
    halved = _after([False] * 5)
    assert _after([True, True], halved).position_size_multiplier == 0.5
    assert _after([True, True, True], halved).position_size_multiplier == 1.0


def test_losses_never_loosen_a_clamp() -> None:
    quartered = _after([False] * 10)
    state = _after([True] + [False] * 5, quartered)
    assert state.consecutive_losses == 5
    assert state.position_size_multiplier == 0.25


def test_win_resets_loss_streak() -> None:
    state = _after([False, False, True])
    assert (state.consecutive_losses, state.consecutive_wins) == (0, 1)


def test_partial_exits_move_capital_but_not_streaks() -> None:
    account = AccountRiskManager(1_000.0)
    account.record_exit(25.0, is_final=False, is_win=True)
    assert account.capital == pytest.approx(1_025.0)
    assert account.state == RiskManagementState()


def test_out_of_window_exit_skips_streaks() -> None:
    account = AccountRiskManager(1_000.0)
    account.record_exit(-5.0, is_final=True, is_win=False, update_streaks=False)
    assert account.capital == pytest.approx(995.0)
    assert account.state.consecutive_losses == 0


def test_margin_clamped_and_floored(cfg) -> None:
    state = RiskManagementState(10, 0, 0.25)
    assert compute_margin(100.0, RiskManagementState(), cfg) == cfg.min_margin
    assert compute_margin(1e9, RiskManagementState(), cfg) == cfg.max_margin
    assert compute_margin(100.0, state, cfg) == cfg.min_margin
    assert compute_margin(10_000.0, state, cfg) == pytest.approx(250.0)


def test_multiplier_ignored_when_risk_management_off(cfg) -> None:
    off = cfg.with_overrides(enable_risk_management=False)
    state = RiskManagementState(10, 0, 0.25)
    assert compute_margin(10_000.0, state, off) == pytest.approx(1_000.0)

    account = AccountRiskManager(10_000.0, enabled=False)
    for _ in range(6):
        account.record_exit(-1.0, is_final=True, is_win=False)
    assert account.state.position_size_multiplier == 1.0
