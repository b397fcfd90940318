import math

import pytest

import indicators
from builders import BASE_TS, Tape, make_candle
from candle_compat import (
    candle_from_payload, candle_to_payload, candles_from_payloads, normalize_timestamp,
)
from data_manager import Candle, CandleFeedError, CandleHistory


def _history(**kw) -> CandleHistory:
    params = dict(atr_period=14, volume_avg_period=5, trend_sma_period=10, maxlen=50)
    params.update(kw)
    return CandleHistory("TEST", **params)


def test_rolling_atr_matches_batch_calculation() -> None:
    tape = Tape().trend(40, step=0.002, wick=0.3)
    history = _history()
    for candle in tape.candles:
        history.append(candle)

    expected = indicators.atr([c.high for c in tape.candles], [c.low for c in tape.candles],
                              [c.close for c in tape.candles], 14)
    assert history.atr == pytest.approx(expected)


def test_indicators_missing_until_enough_bars() -> None:
    history = _history()
    for i in range(5):
        history.append(make_candle(i, 10.0, 11.0, 9.0, 10.0, v=float(i + 1)))
    assert history.atr is None
    assert history.trend_sma is None
    assert history.volume_avg == pytest.approx(3.0)


def test_trend_sma_and_lookback() -> None:
    history = _history()
    for i in range(12):
        history.append(make_candle(i, i, i + 0.5, i - 0.5, float(i)))
    assert history.trend_sma == pytest.approx(sum(range(2, 12)) / 10)
    assert history.sma_ago(1) == pytest.approx(sum(range(1, 11)) / 10)
    assert history.sma_ago(5) is None
    assert history.sma_ago(50) is None


def test_bar_index_keeps_counting_past_maxlen() -> None:
    history = _history(trend_sma_period=2, maxlen=10)
    assert history.candles.maxlen == 102
    for i in range(150):
        history.append(make_candle(i, 10.0, 11.0, 9.0, 10.0))
    assert history.bar_index == 149
    assert len(history) == 102
    assert history.last.timestamp == BASE_TS + 149 * 300


def test_feed_contract_violations() -> None:
    history = _history()
    history.append(make_candle(1, 10.0, 11.0, 9.0, 10.0))

    with pytest.raises(CandleFeedError):
        history.append(make_candle(1, 10.0, 11.0, 9.0, 10.0))
    with pytest.raises(CandleFeedError):
        history.append(make_candle(0, 10.0, 11.0, 9.0, 10.0))
    with pytest.raises(CandleFeedError):
        history.append(make_candle(2, 10.0, 9.0, 11.0, 10.0))
    with pytest.raises(CandleFeedError):
        history.append(make_candle(2, 10.0, 11.0, 9.0, math.nan))
    assert history.bar_index == 0


def test_recent_and_arrays() -> None:
    history = _history()
    for i in range(8):
        history.append(make_candle(i, 10.0, 11.0, 9.0, 10.0 + i))
    assert [c.close for c in history.recent(3)] == [15.0, 16.0, 17.0]
    assert history.recent(0) == []
    assert history.arrays(4)["close"].tolist() == [14.0, 15.0, 16.0, 17.0]
    assert len(history.arrays()["volume"]) == 8
    assert history.atr_percent() is None


def test_candle_helpers() -> None:
    bull = Candle(0.0, 10.0, 12.0, 9.0, 11.5, 1.0)
    assert bull.is_bullish() and not bull.is_bearish()
    assert bull.body_percentage() == pytest.approx(0.5)
    assert bull.touches(9.0) and not bull.touches(12.5)
    assert Candle(0.0, 1.0, 1.0, 1.0, 1.0, 0.0).body_percentage() == 0.0


def test_normalize_timestamp_units() -> None:
    assert normalize_timestamp(1_700_000_000) == 1_700_000_000
    assert normalize_timestamp(1_700_000_000_000) == 1_700_000_000
    assert normalize_timestamp(1_700_000_000_000_000) == 1_700_000_000
    assert normalize_timestamp("1700000000000") == 1_700_000_000
    assert normalize_timestamp("2023-11-14T22:13:20Z") == 1_700_000_000
    assert normalize_timestamp("2023-11-14 22:13:20") == 1_700_000_000


def test_payload_short_and_long_keys() -> None:
    short = candle_from_payload({"t": 1_700_000_000_000, "o": "1", "h": "2",
                                 "l": "0.5", "c": "1.5", "v": "10"})
    long = candle_from_payload({"time": 1_700_000_000, "open": 1, "high": 2,
                                "low": 0.5, "close": 1.5, "volume": 10})
    assert short == long
    assert candle_to_payload(short)["t"] == 1_700_000_000_000
    assert candles_from_payloads([candle_to_payload(short)]) == [short]


def test_payload_errors() -> None:
    with pytest.raises(CandleFeedError, match="missing 'volume'"):
        candle_from_payload({"t": 1, "o": 1, "h": 1, "l": 1, "c": 1})
    with pytest.raises(CandleFeedError, match="not numeric"):
        candle_from_payload({"t": 1, "o": "abc", "h": 1, "l": 1, "c": 1, "v": 1})
    with pytest.raises(CandleFeedError, match="timestamp"):
        candle_from_payload({"t": "yesterday", "o": 1, "h": 1, "l": 1, "c": 1, "v": 1})
