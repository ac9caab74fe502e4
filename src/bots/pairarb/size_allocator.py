# 〔このモジュールがすること〕
# 口座残高とリスク設定から、次の 1 クリップ（株数）を決めます。
# - 要求株数を「残高 × risk_pct / 価格」と「市場資本上限の残り / 価格」で頭打ち
# - 取引所最小（株数・名目）を下回るなら 0（切り上げてリスク上限を超えることはしない）

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("bots.pairarb.size")


@dataclass(frozen=True)
class SizeDecision:
    shares: float
    reason: str

    @property
    def ok(self) -> bool:
        return self.shares > 0


class SizeAllocator:
    """〔このクラスがすること〕 設定と残高に基づいて「次に出すクリップ（株数）」を算出します。"""

    def __init__(self, cfg: Any) -> None:
        entry = getattr(cfg, "entry", {})
        market = getattr(cfg, "market", {})
        self.shares = float(getattr(entry, "shares", 10.0))
        self.risk_pct = float(getattr(entry, "risk_pct", 0.05))
        self.min_order_shares = float(getattr(market, "min_order_shares", 5.0))
        self.min_order_usd = float(getattr(market, "min_order_usd", 1.0))

    def next_size(self, price: float, balance: float, capital_room: float = math.inf) -> SizeDecision:
        """〔このメソッドがすること〕
        クリップ株数を返します。手順:
          1) requested = shares
          2) risk_cap = balance * risk_pct / price
          3) room_cap = capital_room / price（市場資本上限の残り）
          4) size = min(1, 2, 3) を 0.01 株単位に切り捨て
          5) size < 最小株数 または size*price < 最小名目 → 0（拒否）
        """
        px = float(price)
        if px <= 0 or balance <= 0:
            return SizeDecision(0.0, "no_balance_or_price")
        risk_cap = float(balance) * self.risk_pct / px
        room_cap = max(0.0, float(capital_room)) / px
        size = min(self.shares, risk_cap, room_cap)
        size = math.floor(size * 100 + 1e-9) / 100.0
        if size < self.min_order_shares:
            logger.debug(
                "clip rejected: size=%.2f < min_shares=%.2f (risk_cap=%.2f room_cap=%.2f)",
                size,
                self.min_order_shares,
                risk_cap,
                room_cap,
            )
            return SizeDecision(0.0, "below_min_shares")
        if size * px < self.min_order_usd:
            return SizeDecision(0.0, "below_min_notional")
        return SizeDecision(size, "ok")
