from __future__ import annotations

import asyncio
import os
import threading
import time
from typing import Any, Dict, Optional

from pm_core.api import HTTPClient
from pm_core.config import Settings, load_settings, require_live_creds
from pm_core.models import OrderBook
from pm_core.utils.logger import get_logger

# 取引所ゲートウェイ（Polymarket CLOB）
# - paper（DRY_RUN）時はプロセス内の紙ウォレットで約定扱い
# - Live は GO 環境変数で安全ゲートし、py-clob-client 経由で発注
# - 板は paper/Live とも公開 REST /book から取得

logger = get_logger("pm_core.api.http")

BUY = "BUY"
SELL = "SELL"


class OrderRejected(RuntimeError):
    """The venue (or the paper wallet) refused the order."""


def _go_live_enabled() -> bool:
    """安全ゲート: GO=1|true|live|go のみ Live を許可。"""
    val = (os.getenv("GO") or "").strip().lower()
    return val in {"1", "true", "live", "go"}


def _is_paper(paper: Optional[bool], settings: Settings) -> bool:
    if paper is None:
        return settings.dry_run
    return bool(paper) or settings.dry_run


class PaperWallet:
    """〔このクラスがすること〕 paper 発注の USDC 残高を保持します（BUY で減算、SELL で加算）。"""

    def __init__(self, balance: float) -> None:
        self._lock = threading.Lock()
        self._balance = float(balance)

    @property
    def balance(self) -> float:
        with self._lock:
            return self._balance

    def apply(self, side: str, notional: float) -> None:
        with self._lock:
            if side == BUY:
                if notional > self._balance + 1e-9:
                    raise OrderRejected(
                        f"paper wallet has {self._balance:.4f} USDC, order needs {notional:.4f}"
                    )
                self._balance -= notional
            else:
                self._balance += notional


_PAPER: Optional[PaperWallet] = None


def paper_wallet() -> PaperWallet:
    global _PAPER
    if _PAPER is None:
        _PAPER = PaperWallet(load_settings().paper_balance)
    return _PAPER


def reset_paper_wallet(balance: Optional[float] = None) -> PaperWallet:
    """〔この関数がすること〕 紙ウォレットを作り直します（テスト・再起動用）。"""
    global _PAPER
    _PAPER = PaperWallet(load_settings().paper_balance if balance is None else balance)
    return _PAPER


def _extract_order_id(ack: Any) -> str | None:
    """CLOB 応答から orderID を抽出（成功フラグが偽なら None）。"""
    if not isinstance(ack, dict):
        return None
    if ack.get("success") is False:
        return None
    oid = ack.get("orderID") or ack.get("orderId") or ack.get("order_id")
    return str(oid) if oid else None


async def place_order(
    *,
    token_id: str,
    side: str,
    price: float,
    size: float,
    paper: bool | None = None,
) -> Dict[str, Any]:
    """〔この関数がすること〕
    成行相当（FOK 指値）で 1 本発注し {status, order_id, price, size} を返します。
    約定しなければ OrderRejected を送出します。
    """
    side_u = str(side).upper()
    if side_u not in (BUY, SELL):
        raise ValueError(f"invalid side: {side!r}")
    if price <= 0 or size <= 0:
        raise OrderRejected(f"invalid price/size: {price}/{size}")

    logger.info(
        "place_order: try token=%s side=%s price=%.4f size=%.4f",
        token_id,
        side_u,
        price,
        size,
    )
    try:
        resp = await _place_order_impl(
            token_id=token_id, side=side_u, price=float(price), size=float(size), paper=paper
        )
    except Exception as exc:
        logger.error(
            "place_order: error token=%s side=%s price=%.4f size=%.4f err=%s",
            token_id,
            side_u,
            price,
            size,
            exc,
        )
        raise

    logger.info("place_order: ok id=%s status=%s", resp.get("order_id"), resp.get("status"))
    return resp


async def _place_order_impl(
    *, token_id: str, side: str, price: float, size: float, paper: Optional[bool]
) -> Dict[str, Any]:
    settings = load_settings()
    if _is_paper(paper, settings):
        await asyncio.sleep(0)
        paper_wallet().apply(side, price * size)
        return {
            "status": "paper",
            "order_id": f"paper-{side.lower()}-{int(time.time() * 1000)}",
            "price": price,
            "size": size,
        }

    # --- Live path ---
    if not _go_live_enabled():
        raise ValueError("GO が未設定のため Live 発注を拒否しました")
    require_live_creds(settings)

    from py_clob_client.clob_types import OrderArgs, OrderType
    from py_clob_client.order_builder.constants import BUY as CLOB_BUY, SELL as CLOB_SELL

    from pm_core.clob_client import make_client  # 遅延 import

    client = make_client(settings)
    args = OrderArgs(
        token_id=str(token_id),
        price=round(price, 4),
        size=round(size, 2),
        side=CLOB_BUY if side == BUY else CLOB_SELL,
    )

    def _submit() -> Any:
        signed = client.create_order(args)
        return client.post_order(signed, OrderType.FOK)

    ack = await asyncio.to_thread(_submit)
    oid = _extract_order_id(ack)
    if oid is None:
        raise OrderRejected(f"order not accepted: {ack!r}")
    return {"status": "live", "order_id": oid, "price": price, "size": size, "raw": ack}


async def get_balance(*, paper: bool | None = None) -> float:
    """〔この関数がすること〕 利用可能な USDC 残高を返します（Live は 6 桁小数の整数表現を換算）。"""
    settings = load_settings()
    if _is_paper(paper, settings):
        return paper_wallet().balance

    require_live_creds(settings)
    from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

    from pm_core.clob_client import make_client

    client = make_client(settings)
    resp = await asyncio.to_thread(
        client.get_balance_allowance,
        BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
    )
    return float((resp or {}).get("balance", 0) or 0) / 1e6


async def get_order_book(token_id: str, *, client: HTTPClient | None = None) -> OrderBook:
    """〔この関数がすること〕 公開 REST から板を取得し、最良気配先頭に並べて返します。"""
    own = client is None
    cli = client or HTTPClient(load_settings().clob_host)
    try:
        raw = await cli.get("book", {"token_id": str(token_id)})
    finally:
        if own:
            await cli.close()
    return OrderBook.from_raw(str(token_id), raw)


__all__ = [
    "BUY",
    "SELL",
    "OrderRejected",
    "PaperWallet",
    "get_balance",
    "get_order_book",
    "paper_wallet",
    "place_order",
    "reset_paper_wallet",
]
