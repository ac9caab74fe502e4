from __future__ import annotations

import pytest

try:
    from bots.pairarb.config import INSTRUMENT_DEFAULTS, Coin, coerce_config, load_pairarb_config
    from pm_core.utils.config import ConfigError, load_config
except Exception:
    from src.bots.pairarb.config import INSTRUMENT_DEFAULTS, Coin, coerce_config, load_pairarb_config  # type: ignore
    from src.pm_core.utils.config import ConfigError, load_config  # type: ignore


def test_instrument_defaults_fill_unspecified_fields() -> None:
    cfg = coerce_config({"market": {"coin": "sol"}})
    inst = INSTRUMENT_DEFAULTS[Coin.SOL]
    assert cfg.market.coin is Coin.SOL
    assert cfg.entry.dip_threshold == inst.dip_threshold
    assert cfg.exit.sum_target == inst.sum_target
    assert cfg.entry.leg2_timeout_s == inst.leg2_timeout_s


def test_explicit_values_win_over_instrument_defaults() -> None:
    cfg = coerce_config({"market": {"coin": "BTC"}, "exit": {"sum_target": 0.97}}, coin="ETH")
    assert cfg.market.coin is Coin.ETH
    assert cfg.exit.sum_target == pytest.approx(0.97)


def test_unknown_coin_raises() -> None:
    with pytest.raises(ConfigError):
        coerce_config({"market": {"coin": "DOGE"}})


@pytest.mark.parametrize(
    "raw",
    [
        {"market": {"duration": "1h"}},
        {"entry": {"risk_pct": 1.5}},
        {"exit": {"partial_unwind_s": 90, "late_exit_s": 60}},
        {"entry": {"shares": "ten"}},
    ],
)
def test_invalid_values_raise(raw: dict) -> None:
    with pytest.raises(ConfigError):
        coerce_config(raw)


def test_load_toml_and_yaml(tmp_path) -> None:
    toml = tmp_path / "c.toml"
    toml.write_text('[market]\ncoin = "XRP"\n[risk]\ndrawdown_limit = 0.2\n', encoding="utf-8")
    cfg = load_pairarb_config(str(toml))
    assert cfg.market.coin is Coin.XRP
    assert cfg.risk.drawdown_limit == pytest.approx(0.2)

    yml = tmp_path / "c.yaml"
    yml.write_text("market:\n  coin: ETH\nloop:\n  timer_s: 2\n", encoding="utf-8")
    assert load_pairarb_config(str(yml)).loop.timer_s == pytest.approx(2.0)


def test_load_config_errors(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.toml"))
    bad = tmp_path / "c.ini"
    bad.write_text("x=1", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(bad))


def test_repo_example_config_loads() -> None:
    from pathlib import Path

    path = Path(__file__).resolve().parents[2] / "configs" / "pairarb.toml"
    cfg = load_pairarb_config(str(path))
    assert cfg.market.duration == "15m"
    assert cfg.ledger.path == "data/pnl.json"
