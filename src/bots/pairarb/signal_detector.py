from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple
from uuid import uuid4

logger = logging.getLogger("bots.pairarb.signal")


@dataclass(frozen=True)
class DipSignal:
    """〔このデータクラスがすること〕 ディップ発火時の最小情報（相関ID付き）を表します。"""

    t: float
    token_id: str
    price: float
    high: float
    drop: float
    trace_id: str


class DipDetector:
    """〔このクラスがすること〕
    トークンごとに直近 window_s 秒の価格履歴を持ち、
    (窓内最大 − 現在値) / 窓内最大 >= dip_threshold でシグナルを返します。
    - observe(token_id, price, t) -> Optional[DipSignal]
    """

    MIN_SAMPLES = 3

    def __init__(self, cfg) -> None:
        entry = getattr(cfg, "entry", cfg)
        self.dip_threshold: float = float(getattr(entry, "dip_threshold", 0.20))
        self.window_s: float = float(getattr(entry, "window_s", 3.0))
        self.ignore_price_below: float = float(getattr(entry, "ignore_price_below", 0.0))
        self._hist: Dict[str, Deque[Tuple[float, float]]] = {}
        # 評価内容の通知（MarketStateMachine が decision log に流す）
        self.on_eval: Optional[Callable[[dict], None]] = None

    def observe(self, token_id: str, price: float, t: float) -> Optional[DipSignal]:
        """〔このメソッドがすること〕 価格を 1 つ記録し、窓外を捨て、ディップ条件を評価します。"""
        px = float(price)
        hist = self._hist.setdefault(token_id, deque())
        hist.append((float(t), px))
        cutoff = float(t) - self.window_s
        while hist and hist[0][0] < cutoff:
            hist.popleft()

        if len(hist) < self.MIN_SAMPLES or px < self.ignore_price_below:
            return None
        high = max(p for _, p in hist)
        if high <= 0:
            return None
        drop = (high - px) / high
        fired = drop >= self.dip_threshold - 1e-9
        if self.on_eval is not None:
            self.on_eval(
                {
                    "token_id": token_id,
                    "price": px,
                    "high": high,
                    "drop": drop,
                    "threshold": self.dip_threshold,
                    "fired": fired,
                }
            )
        if not fired:
            return None
        logger.info(
            "dip on %s: high=%.3f now=%.3f drop=%.1f%% (>= %.1f%%)",
            token_id[:10],
            high,
            px,
            drop * 100,
            self.dip_threshold * 100,
        )
        return DipSignal(t=float(t), token_id=token_id, price=px, high=high, drop=drop, trace_id=uuid4().hex[:12])
