import numpy as np
import pytest

import indicators


def test_true_range_uses_previous_close_on_gaps() -> None:
    trs = indicators.true_ranges([11.0, 15.0], [9.0, 14.0], [10.0, 14.5])
    assert trs.tolist() == [5.0]


def test_atr_constant_range() -> None:
    highs, lows, closes = [11.0] * 20, [9.0] * 20, [10.0] * 20
    assert indicators.atr(highs, lows, closes, 14) == pytest.approx(2.0)


def test_atr_needs_period_plus_one_bars() -> None:
    assert indicators.atr([11.0] * 14, [9.0] * 14, [10.0] * 14, 14) is None
    assert indicators.atr([11.0] * 15, [9.0] * 15, [10.0] * 15, 14) is not None


def test_wilder_smoothing_seed_then_recursion() -> None:
    assert indicators.wilder_smooth([2.0, 4.0, 6.0], 2) == pytest.approx(4.5)
    assert indicators.wilder_smooth([1.0], 2) is None


def test_sma_and_ema() -> None:
    assert indicators.sma([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)
    assert indicators.sma([1, 2], 3) is None
    assert indicators.ema([1.0, 2.0, 3.0], 3) == pytest.approx(2.25)
    assert indicators.ema([5.0] * 30, 10) == pytest.approx(5.0)
    assert indicators.ema([1.0], 3) is None


def test_rsi_extremes() -> None:
    assert indicators.rsi(list(range(1, 30)), 14) == 100.0
    assert indicators.rsi([10.0] * 30, 14) == 50.0
    assert indicators.rsi(list(range(30, 1, -1)), 14) == pytest.approx(0.0)
    assert indicators.rsi([1.0] * 10, 14) is None


def test_adx_strong_uptrend() -> None:
    n = 40
    highs = [i + 1.0 for i in range(n)]
    lows = [i - 1.0 for i in range(n)]
    closes = [float(i) for i in range(n)]
    value, di_plus, di_minus = indicators.adx(highs, lows, closes, 14)
    assert value == pytest.approx(100.0)
    assert di_plus == pytest.approx(50.0)
    assert di_minus == 0.0


def test_adx_short_history_is_zero() -> None:
    assert indicators.adx([1.0] * 10, [0.5] * 10, [0.8] * 10, 14) == (0.0, 0.0, 0.0)


def test_bollinger_width() -> None:
    assert indicators.bollinger_width([5.0] * 20, 20) == 0.0
    assert indicators.bollinger_width([1.0, 3.0], 2, 2.0) == pytest.approx(4.0)
    assert indicators.bollinger_width([1.0], 20) is None


def test_volume_deltas_split_by_close_position() -> None:
    deltas = indicators.volume_deltas(
        [10.0, 10.0, 10.0, 10.0], [8.0, 8.0, 8.0, 10.0],
        [10.0, 8.0, 9.0, 10.0], [100.0, 100.0, 100.0, 100.0])
    assert deltas.tolist() == pytest.approx([100.0, -100.0, 0.0, 0.0])


def test_cvd_trend_over_last_bars() -> None:
    n = 5
    value = indicators.cvd_trend([10.0] * n, [8.0] * n, [10.0] * n, [10.0] * n, trend_bars=3)
    assert value == pytest.approx(20.0)
    assert indicators.cvd_trend([], [], [], [], 3) is None
    assert isinstance(indicators.volume_deltas([], [], [], []), np.ndarray)
