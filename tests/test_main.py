import csv
import json

import pytest

import main
from builders import retest_setup
from strategy_config import ConfigError

_SETTINGS = ["--set", "trend_sma_period=50", "--set", "entry_filters=()",
             "--set", "candidate_filters=()"]


def _write_csv(path):
    tape, p = retest_setup()
    tape.add(p + 1.3, p + 2.5, p + 1.2, p + 2.3)
    with open(path, "w", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=["timestamp", "open", "high", "low",
                                                "close", "volume"])
        writer.writeheader()
        for candle in reversed(tape.candles):
            writer.writerow(candle.to_dict())
    return tape


def _run(capsys, *argv):
    code = main.main(list(argv))
    return code, capsys.readouterr().out


def test_parse_overrides() -> None:
    overrides = main.parse_overrides([
        "tp1_close_percent=0.5", "entry_filters=atr_range, rsi",
        "enable_risk_cap=True", "regime_strategy_type=trend", "candidate_filters=()",
    ])
    assert overrides == {
        "tp1_close_percent": 0.5,
        "entry_filters": ("atr_range", "rsi"),
        "enable_risk_cap": True,
        "regime_strategy_type": "trend",
        "candidate_filters": (),
    }
    assert main.parse_overrides(None) == {}
    with pytest.raises(ConfigError):
        main.parse_overrides(["no_equals_sign"])


def test_load_csv_sorts_rows(tmp_path) -> None:
    tape = _write_csv(tmp_path / "candles.csv")
    candles = main.load_csv(str(tmp_path / "candles.csv"))
    assert candles == tape.candles


def test_backtest_command_json(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    _write_csv(tmp_path / "candles.csv")
    code, out = _run(capsys, "backtest", "--csv", "candles.csv", "--symbol", "TEST",
                     "--capital", "10000", "--json", "--trades", *_SETTINGS)

    assert code == 0
    summary = json.loads(out)
    assert summary["total_trades"] == 1
    assert summary["trades"][0]["exit_reason"] == "TP1"
    assert summary["final_capital"] > 10_000


def test_backtest_window_excludes_trade(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    _write_csv(tmp_path / "candles.csv")
    code, out = _run(capsys, "backtest", "--csv", "candles.csv", "--symbol", "TEST",
                     "--start", "2030-01-01", *_SETTINGS)

    assert code == 0
    assert "Trades:        0 (0W / 0L)" in out


def test_replay_command_matches_backtest(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(main.signal, "signal", lambda *a: None)
    real_notifier = main.TelegramNotifier
    monkeypatch.setattr(main, "TelegramNotifier",
                        lambda: real_notifier(bot_token=None, chat_id=None))
    _write_csv(tmp_path / "candles.csv")

    _, backtest_out = _run(capsys, "backtest", "--csv", "candles.csv", "--symbol", "TEST",
                           "--json", *_SETTINGS)
    code, replay_out = _run(capsys, "replay", "--csv", "candles.csv", "--symbol", "TEST",
                            "--json", *_SETTINGS)

    assert code == 0
    backtest, replay = json.loads(backtest_out), json.loads(replay_out)
    for key in ("total_trades", "final_capital", "win_rate"):
        assert replay[key] == backtest[key]


def test_errors_return_exit_code_2(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    _write_csv(tmp_path / "candles.csv")
    assert _run(capsys, "backtest", "--csv", "missing.csv", "--symbol", "X")[0] == 2
    assert _run(capsys, "backtest", "--csv", "candles.csv", "--symbol", "X",
                "--set", "nope=1")[0] == 2
