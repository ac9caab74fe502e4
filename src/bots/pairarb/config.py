# 〔このモジュールがすること〕
# PairArb の設定（dict など）を「属性アクセスできる dataclass」へ変換します。
# - Coin / INSTRUMENT_DEFAULTS: 銘柄タグ → 既定しきい値の型付きテーブル
# - coerce_config(data): dict/オブジェクト → PairArbConfig（market/entry/exit/risk/loop/ledger）
# - load_pairarb_config(path): pm_core.utils.config.load_config で読み込み → coerce に通す

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from pm_core.utils.config import ConfigError, load_config


class Coin(str, Enum):
    """〔このクラスがすること〕 取引対象の up/down 市場の原資産タグです。"""

    BTC = "BTC"
    ETH = "ETH"
    SOL = "SOL"
    XRP = "XRP"

    @classmethod
    def parse(cls, value: Any) -> "Coin":
        text = str(getattr(value, "value", value) or "").strip().upper()
        try:
            return cls(text)
        except ValueError as exc:
            raise ConfigError(f"unknown coin: {value!r}") from exc


@dataclass(frozen=True)
class InstrumentDefaults:
    """〔このクラスがすること〕 銘柄ごとの既定しきい値（設定ファイルで上書き可）です。"""

    dip_threshold: float
    sum_target: float
    shares: float
    leg2_timeout_s: float


INSTRUMENT_DEFAULTS: dict[Coin, InstrumentDefaults] = {
    Coin.BTC: InstrumentDefaults(dip_threshold=0.20, sum_target=0.95, shares=10.0, leg2_timeout_s=90.0),
    Coin.ETH: InstrumentDefaults(dip_threshold=0.20, sum_target=0.95, shares=10.0, leg2_timeout_s=90.0),
    Coin.SOL: InstrumentDefaults(dip_threshold=0.25, sum_target=0.94, shares=8.0, leg2_timeout_s=75.0),
    Coin.XRP: InstrumentDefaults(dip_threshold=0.25, sum_target=0.94, shares=8.0, leg2_timeout_s=75.0),
}


# ───────────── dataclass 定義 ─────────────


@dataclass
class MarketCfg:
    """〔このクラスがすること〕 対象市場と取引所仕様の設定を保持します。"""

    coin: Coin = Coin.BTC
    duration: str = "15m"
    tick_size: float = 0.01
    min_order_shares: float = 5.0
    min_order_usd: float = 1.0


@dataclass
class EntryCfg:
    """〔このクラスがすること〕 ディップ検出と建玉積み増しのガード設定を保持します。"""

    dip_threshold: float = 0.20
    window_s: float = 3.0
    shares: float = 10.0
    risk_pct: float = 0.05
    debounce_s: float = 2.5
    stagnation_s: float = 60.0
    leg2_timeout_s: float = 90.0
    imbalance_multiple: float = 2.0
    min_price_move: float = 0.01
    ignore_price_below: float = 0.0
    entry_cutoff_s: float = 90.0


@dataclass
class ExitCfg:
    """〔このクラスがすること〕 エグジット・ウォーターフォールのしきい値を保持します。"""

    sum_target: float = 0.95
    partial_unwind_s: float = 45.0
    late_exit_s: float = 60.0
    dominance_price: float = 0.70
    min_partial_profit_usd: float = 0.25
    min_late_profit_usd: float = 0.25
    early_profit_pct: float = 0.05
    early_profit_usd: float = 0.50
    exit_slippage: float = 0.01
    emergency_haircut: float = 0.30


@dataclass
class RiskCfg:
    """〔このクラスがすること〕 資本上限とドローダウン停止の設定を保持します。"""

    market_risk_fraction: float = 0.20
    drawdown_limit: float = 0.10


@dataclass
class LoopCfg:
    """〔このクラスがすること〕 タイマー周期と市場探索リトライ間隔を保持します。"""

    timer_s: float = 5.0
    discovery_retry_s: float = 5.0


@dataclass
class LedgerCfg:
    path: str = "data/pnl.json"


@dataclass
class PairArbConfig:
    """〔このクラスがすること〕 PairArb の設定ルート（サブセクションを内包）です。"""

    market: MarketCfg = field(default_factory=MarketCfg)
    entry: EntryCfg = field(default_factory=EntryCfg)
    exit: ExitCfg = field(default_factory=ExitCfg)
    risk: RiskCfg = field(default_factory=RiskCfg)
    loop: LoopCfg = field(default_factory=LoopCfg)
    ledger: LedgerCfg = field(default_factory=LedgerCfg)


# ───────────── ヘルパー（dict/属性どちらでも取り出せるように） ─────────────


def _sec(raw: Any, name: str) -> Any:
    """〔この関数がすること〕 セクションを dict/属性の両対応で取り出します（無ければ空）。"""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return raw.get(name, {}) or {}
    return getattr(raw, name, {}) or {}


def _val(sec: Any, key: str, default: Any) -> Any:
    """〔この関数がすること〕 値を dict/属性両対応で取得し、未指定なら default を返します。"""
    if isinstance(sec, Mapping):
        value = sec.get(key, default)
    else:
        value = getattr(sec, key, default)
    return default if value is None else value


def _num(sec: Any, key: str, default: float, *, lo: Optional[float] = None, hi: Optional[float] = None) -> float:
    raw = _val(sec, key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if lo is not None and value < lo:
        raise ConfigError(f"{key}={value} is below {lo}")
    if hi is not None and value > hi:
        raise ConfigError(f"{key}={value} is above {hi}")
    return value


# ───────────── 入口関数 ─────────────


def coerce_config(data: Any, coin: Any = None) -> PairArbConfig:
    """〔この関数がすること〕
    dict 等の生設定を PairArbConfig へ変換します。
    entry/exit の未指定項目は銘柄テーブル（INSTRUMENT_DEFAULTS）から埋めます。
    coin 引数を渡すと market.coin を上書きします（CLI の --coin 用）。
    """
    m = _sec(data, "market")
    e = _sec(data, "entry")
    x = _sec(data, "exit")
    r = _sec(data, "risk")
    lp = _sec(data, "loop")
    lg = _sec(data, "ledger")

    tag = Coin.parse(coin if coin is not None else _val(m, "coin", MarketCfg.coin))
    inst = INSTRUMENT_DEFAULTS[tag]

    duration = str(_val(m, "duration", MarketCfg.duration))
    if duration not in ("5m", "15m"):
        raise ConfigError(f"unsupported duration: {duration!r}")

    market = MarketCfg(
        coin=tag,
        duration=duration,
        tick_size=_num(m, "tick_size", MarketCfg.tick_size, lo=0.0001),
        min_order_shares=_num(m, "min_order_shares", MarketCfg.min_order_shares, lo=0.0),
        min_order_usd=_num(m, "min_order_usd", MarketCfg.min_order_usd, lo=0.0),
    )
    entry = EntryCfg(
        dip_threshold=_num(e, "dip_threshold", inst.dip_threshold, lo=0.0, hi=1.0),
        window_s=_num(e, "window_s", EntryCfg.window_s, lo=0.1),
        shares=_num(e, "shares", inst.shares, lo=0.0),
        risk_pct=_num(e, "risk_pct", EntryCfg.risk_pct, lo=0.0, hi=1.0),
        debounce_s=_num(e, "debounce_s", EntryCfg.debounce_s, lo=0.0),
        stagnation_s=_num(e, "stagnation_s", EntryCfg.stagnation_s, lo=0.0),
        leg2_timeout_s=_num(e, "leg2_timeout_s", inst.leg2_timeout_s, lo=0.0),
        imbalance_multiple=_num(e, "imbalance_multiple", EntryCfg.imbalance_multiple, lo=0.0),
        min_price_move=_num(e, "min_price_move", EntryCfg.min_price_move, lo=0.0),
        ignore_price_below=_num(e, "ignore_price_below", EntryCfg.ignore_price_below, lo=0.0),
        entry_cutoff_s=_num(e, "entry_cutoff_s", EntryCfg.entry_cutoff_s, lo=0.0),
    )
    exit_ = ExitCfg(
        sum_target=_num(x, "sum_target", inst.sum_target, lo=0.0, hi=2.0),
        partial_unwind_s=_num(x, "partial_unwind_s", ExitCfg.partial_unwind_s, lo=0.0),
        late_exit_s=_num(x, "late_exit_s", ExitCfg.late_exit_s, lo=0.0),
        dominance_price=_num(x, "dominance_price", ExitCfg.dominance_price, lo=0.0, hi=1.0),
        min_partial_profit_usd=_num(x, "min_partial_profit_usd", ExitCfg.min_partial_profit_usd),
        min_late_profit_usd=_num(x, "min_late_profit_usd", ExitCfg.min_late_profit_usd),
        early_profit_pct=_num(x, "early_profit_pct", ExitCfg.early_profit_pct),
        early_profit_usd=_num(x, "early_profit_usd", ExitCfg.early_profit_usd),
        exit_slippage=_num(x, "exit_slippage", ExitCfg.exit_slippage, lo=0.0),
        emergency_haircut=_num(x, "emergency_haircut", ExitCfg.emergency_haircut, lo=0.0, hi=1.0),
    )
    if exit_.late_exit_s < exit_.partial_unwind_s:
        raise ConfigError("exit.late_exit_s must be >= exit.partial_unwind_s")
    risk = RiskCfg(
        market_risk_fraction=_num(r, "market_risk_fraction", RiskCfg.market_risk_fraction, lo=0.0, hi=1.0),
        drawdown_limit=_num(r, "drawdown_limit", RiskCfg.drawdown_limit, lo=0.0, hi=1.0),
    )
    loop = LoopCfg(
        timer_s=_num(lp, "timer_s", LoopCfg.timer_s, lo=0.05),
        discovery_retry_s=_num(lp, "discovery_retry_s", LoopCfg.discovery_retry_s, lo=0.0),
    )
    ledger = LedgerCfg(path=str(_val(lg, "path", LedgerCfg.path)))
    return PairArbConfig(market=market, entry=entry, exit=exit_, risk=risk, loop=loop, ledger=ledger)


def load_pairarb_config(path: str, coin: Any = None) -> PairArbConfig:
    """〔この関数がすること〕 ファイルから設定を読み込み、PairArbConfig に変換します。"""
    return coerce_config(load_config(path), coin=coin)
