# 〔このモジュールがすること〕
# PairArb の発注まわり（資金予約つき BUY、SELL、残高・板の取得）を司ります。
# 実際の取引所呼び出しは pm_core.api.http に委譲し、テストでは _submit/_fetch_* を差し替えます。

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pm_core.models import OrderBook

from .capital_guard import CapitalGuard, shared_guard

logger = logging.getLogger("bots.pairarb.exec")


def _safe(cfg, section: str, key: str, default):
    """〔この関数がすること〕 設定（属性 or dict）の両対応で値を取得します。"""
    sec = getattr(cfg, section, None)
    if sec is None and isinstance(cfg, dict):
        sec = cfg.get(section)
    if sec is None:
        return default
    if isinstance(sec, dict):
        return sec.get(key, default)
    return getattr(sec, key, default)


def _round_to_tick(px: float, tick: float) -> float:
    if tick <= 0:
        return float(px)
    return round(round(float(px) / float(tick)) * float(tick), 6)


@dataclass(frozen=True)
class OrderResult:
    ok: bool
    side: str
    token_id: str
    shares: float
    price: float
    order_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.shares * self.price


class ExecutionEngine:
    """〔このクラスがすること〕
    - BUY は Capital Guard に予約してから発注し、失敗（例外含む）時だけ予約を解放
    - SELL は予約なしで発注
    - 発注イベント（skip/submitted/reject）を on_order_event で Strategy に通知
    """

    on_order_event: Optional[Callable[[str, Dict[str, Any]], None]]

    def __init__(self, cfg, paper: bool, guard: Optional[CapitalGuard] = None) -> None:
        self.paper = paper
        self.guard = guard if guard is not None else shared_guard
        self.tick: float = float(_safe(cfg, "market", "tick_size", 0.01))
        self.on_order_event = None

    # ─────────────── 公開 API ───────────────

    async def fetch_balance(self) -> float:
        return float(await self._fetch_balance())

    async def fetch_book(self, token_id: str) -> OrderBook:
        return await self._fetch_book(token_id)

    async def buy(
        self,
        token_id: str,
        shares: float,
        price: float,
        *,
        balance: float,
        trace_id: Optional[str] = None,
    ) -> OrderResult:
        """〔このメソッドがすること〕
        notional = shares × price を Guard に予約し、通れば発注します。
        予約失敗・発注失敗は ok=False を返し、例外は外へ出しません。
        """
        px = _round_to_tick(price, self.tick)
        amount = float(shares) * px
        if not self.guard.try_reserve(amount, balance):
            self._emit(
                "skip",
                side="BUY",
                token_id=token_id,
                reason="capital_guard",
                amount=amount,
                balance=balance,
                reserved=self.guard.reserved,
                trace_id=trace_id,
            )
            return OrderResult(False, "BUY", token_id, float(shares), px, error="capital_guard")
        try:
            oid = await self._submit(token_id, "BUY", px, float(shares))
        except Exception as e:
            self.guard.release(amount)
            logger.warning("buy failed token=%s shares=%.2f px=%.3f: %s", token_id, shares, px, e)
            self._emit("reject", side="BUY", token_id=token_id, price=px, shares=shares, error=str(e), trace_id=trace_id)
            return OrderResult(False, "BUY", token_id, float(shares), px, error=str(e))
        self._emit(
            "submitted",
            side="BUY",
            token_id=token_id,
            price=px,
            shares=shares,
            order_id=oid,
            reserved=self.guard.reserved,
            trace_id=trace_id,
        )
        return OrderResult(True, "BUY", token_id, float(shares), px, order_id=oid)

    async def sell(
        self, token_id: str, shares: float, price: float, *, trace_id: Optional[str] = None
    ) -> OrderResult:
        px = max(self.tick, _round_to_tick(price, self.tick))
        try:
            oid = await self._submit(token_id, "SELL", px, float(shares))
        except Exception as e:
            logger.warning("sell failed token=%s shares=%.2f px=%.3f: %s", token_id, shares, px, e)
            self._emit("reject", side="SELL", token_id=token_id, price=px, shares=shares, error=str(e), trace_id=trace_id)
            return OrderResult(False, "SELL", token_id, float(shares), px, error=str(e))
        self._emit("submitted", side="SELL", token_id=token_id, price=px, shares=shares, order_id=oid, trace_id=trace_id)
        return OrderResult(True, "SELL", token_id, float(shares), px, order_id=oid)

    # ─────────────── 内部（API アダプタ呼び出し） ───────────────

    def _emit(self, kind: str, **fields: Any) -> None:
        if self.on_order_event is not None:
            self.on_order_event(kind, fields)

    async def _submit(self, token_id: str, side: str, price: float, size: float) -> str:
        """〔このメソッドがすること〕 取引所へ 1 本発注し order_id を返します（失敗は例外）。"""
        from pm_core.api.http import place_order  # 遅延 import

        resp = await place_order(token_id=token_id, side=side, price=price, size=size, paper=self.paper)
        return str(resp["order_id"])

    async def _fetch_balance(self) -> float:
        from pm_core.api.http import get_balance

        return await get_balance(paper=self.paper)

    async def _fetch_book(self, token_id: str) -> OrderBook:
        from pm_core.api.http import get_order_book

        return await get_order_book(token_id)
