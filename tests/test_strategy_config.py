import pytest

from strategy_config import DEFAULT_CONFIG, ConfigError, StrategyConfig


def test_defaults() -> None:
    cfg = DEFAULT_CONFIG
    assert cfg.leverage == 20
    assert (cfg.maker_fee, cfg.taker_fee) == (0.0004, 0.00075)
    assert cfg.order_validity_bars == 3
    assert cfg.tp1_ratio == 0.8
    assert cfg.reward_risk_ratio == 4.0
    assert cfg.max_holding_bars == 48
    assert cfg.partial_tp_enabled is False
    assert cfg.entry_filters == ("atr_range", "order_flow")


def test_overrides_return_new_config() -> None:
    cfg = DEFAULT_CONFIG.with_overrides(tp1_close_percent=0.5, entry_filters=["rsi"])
    assert cfg.partial_tp_enabled is True
    assert cfg.entry_filters == ("rsi",)
    assert DEFAULT_CONFIG.tp1_close_percent == 1.0
    assert cfg != DEFAULT_CONFIG


def test_unknown_and_invalid_values_raise() -> None:
    with pytest.raises(ConfigError, match="bogus"):
        DEFAULT_CONFIG.with_overrides(bogus=1)
    with pytest.raises(ConfigError):
        DEFAULT_CONFIG.with_overrides(tp1_close_percent=0.0)
    with pytest.raises(ConfigError):
        DEFAULT_CONFIG.with_overrides(tp1_close_percent=1.5)
    with pytest.raises(ConfigError):
        StrategyConfig(timeframe="1h")
    with pytest.raises(ConfigError):
        StrategyConfig(min_margin=100.0, max_margin=50.0)


def test_timeframe_picks_validity_and_history_need() -> None:
    cfg = DEFAULT_CONFIG.with_overrides(timeframe="15m", order_validity_bars_15m=2)
    assert cfg.order_validity_bars == 2
    assert DEFAULT_CONFIG.min_history_bars == 620
    assert DEFAULT_CONFIG.with_overrides(trend_sma_period=10).min_history_bars == 50
