# 〔このモジュールがすること〕
# PairArb のメトリクス（Prometheus）を一元管理します。
# - インスタンスごとに CollectorRegistry を持つ（同一プロセスで複数戦略・テストが共存できる）
# - HTTP エクスポータ（/metrics）は prom_port 指定時だけ起動します。

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger("bots.pairarb.metrics")


class Metrics:
    """〔このクラスがすること〕
    PairArb が使用する Gauge/Counter を提供し、必要に応じてエクスポータを起動します。
    """

    def __init__(self, prom_port: Optional[int] = None, *, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        r = self.registry

        # 資金・口座
        self.reserved_usd = Gauge("pairarb_reserved_usd", "Capital reserved but not yet confirmed (USD).", registry=r)
        self.wallet_usd = Gauge("pairarb_wallet_usd", "Last observed wallet balance (USD).", registry=r)
        self.drawdown = Gauge("pairarb_drawdown_ratio", "Session drawdown from starting balance.", registry=r)

        # 建玉
        self.pair_cost = Gauge("pairarb_pair_cost", "avgYes + avgNo of the active position.", ["coin"], registry=r)
        self.exposure_usd = Gauge("pairarb_exposure_usd", "Combined cost of the active position (USD).", ["coin"], registry=r)
        self.time_left_s = Gauge("pairarb_time_left_s", "Seconds until the active market resolves.", ["coin"], registry=r)

        # イベント
        self.signals = Counter("pairarb_signals", "Dip signals detected.", ["coin"], registry=r)
        self.buys = Counter("pairarb_buys", "Organic buys filled.", ["coin", "leg"], registry=r)
        self.hedges = Counter("pairarb_force_hedges", "Forced hedges filled.", ["coin"], registry=r)
        self.exits = Counter("pairarb_exits", "Exit rules executed.", ["coin", "rule"], registry=r)
        self.entry_skips = Counter("pairarb_entry_skips", "Entry attempts blocked by a guard.", ["coin", "reason"], registry=r)
        self.order_rejects = Counter("pairarb_order_rejects", "Orders rejected by venue.", ["side"], registry=r)
        self.rotations = Counter("pairarb_rotations", "Markets rotated to.", ["coin"], registry=r)

        if prom_port is not None:
            start_http_server(int(prom_port), registry=self.registry)
            logger.info("Prometheus exporter started on :%s", prom_port)

    # ─────────── Setter / Observer 群 ───────────

    def set_reserved(self, usd: float) -> None:
        self.reserved_usd.set(max(0.0, float(usd)))

    def set_wallet(self, usd: float, drawdown: float = 0.0) -> None:
        self.wallet_usd.set(float(usd))
        self.drawdown.set(float(drawdown))

    def set_position(self, coin: str, pair_cost: float, exposure: float, time_left: float) -> None:
        # 片脚のみ（pair_cost=inf）は 0 で表す
        self.pair_cost.labels(coin=coin).set(pair_cost if pair_cost != float("inf") else 0.0)
        self.exposure_usd.labels(coin=coin).set(float(exposure))
        self.time_left_s.labels(coin=coin).set(max(0.0, float(time_left)))

    def inc_signal(self, coin: str) -> None:
        self.signals.labels(coin=coin).inc()

    def inc_buy(self, coin: str, leg: str) -> None:
        self.buys.labels(coin=coin, leg=leg).inc()

    def inc_hedge(self, coin: str) -> None:
        self.hedges.labels(coin=coin).inc()

    def inc_exit(self, coin: str, rule: str) -> None:
        self.exits.labels(coin=coin, rule=rule).inc()

    def inc_entry_skip(self, coin: str, reason: str) -> None:
        self.entry_skips.labels(coin=coin, reason=reason).inc()

    def inc_order_reject(self, side: str) -> None:
        self.order_rejects.labels(side=side).inc()

    def inc_rotation(self, coin: str) -> None:
        self.rotations.labels(coin=coin).inc()

    def sample(self, name: str, **labels: str) -> float:
        """〔このメソッドがすること〕 登録済みサンプル値を返します（未観測なら 0）。"""
        value = self.registry.get_sample_value(name, labels or None)
        return float(value or 0.0)
