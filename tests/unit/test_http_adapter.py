from __future__ import annotations
from typing import Any, List, Tuple

import httpx
import pytest


@pytest.mark.asyncio
async def test_place_order_paper_moves_wallet(monkeypatch):
    # DRY_RUN=true で paper 応答になり、紙ウォレットが増減すること
    monkeypatch.setenv("DRY_RUN", "true")
    monkeypatch.setenv("PAPER_BALANCE_USD", "50")
    from pm_core.api.http import get_balance, place_order, reset_paper_wallet

    reset_paper_wallet()
    resp = await place_order(token_id="Y", side="buy", price=0.40, size=10, paper=True)
    assert resp.get("status") == "paper"
    assert str(resp.get("order_id", "")).startswith("paper-buy-")
    assert await get_balance(paper=True) == pytest.approx(46.0)

    await place_order(token_id="Y", side="SELL", price=0.90, size=10, paper=True)
    assert await get_balance(paper=True) == pytest.approx(55.0)


@pytest.mark.asyncio
async def test_place_order_paper_rejects_when_short(monkeypatch):
    monkeypatch.setenv("DRY_RUN", "true")
    from pm_core.api.http import OrderRejected, place_order, reset_paper_wallet

    reset_paper_wallet(3.0)
    with pytest.raises(OrderRejected):
        await place_order(token_id="Y", side="BUY", price=0.50, size=10, paper=True)
    with pytest.raises(OrderRejected):
        await place_order(token_id="Y", side="BUY", price=0.0, size=10, paper=True)
    with pytest.raises(ValueError):
        await place_order(token_id="Y", side="HOLD", price=0.5, size=10, paper=True)


@pytest.mark.asyncio
async def test_place_order_live_gate_blocks_without_go(monkeypatch):
    # Live でも GO 未設定は拒否
    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.setenv("PM_PRIVATE_KEY", "0x" + "11" * 32)
    monkeypatch.delenv("GO", raising=False)
    from pm_core.api.http import place_order

    with pytest.raises(ValueError):
        await place_order(token_id="N", side="SELL", price=0.3, size=10, paper=False)


class _SpyClob:
    """py-clob-client の ClobClient 代わり（呼び出しを記録するだけ）。"""

    def __init__(self, ack: Any) -> None:
        self.ack = ack
        self.calls: List[Tuple[str, Any]] = []

    def create_order(self, args: Any) -> dict:
        self.calls.append(("create_order", args))
        return {"signed": args}

    def post_order(self, signed: Any, order_type: Any) -> Any:
        self.calls.append(("post_order", order_type))
        return self.ack

    def get_balance_allowance(self, params: Any) -> dict:
        self.calls.append(("get_balance_allowance", params))
        return {"balance": "12500000", "allowance": "0"}


def _go_live(monkeypatch, spy: _SpyClob) -> None:
    import pm_core.clob_client as clob_client

    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.setenv("GO", "live")
    monkeypatch.setenv("PM_PRIVATE_KEY", "0x" + "22" * 32)
    monkeypatch.delenv("PM_FUNDER_ADDRESS", raising=False)
    monkeypatch.delenv("PM_SIGNATURE_TYPE", raising=False)
    monkeypatch.setattr(clob_client, "make_client", lambda settings: spy)


@pytest.mark.asyncio
async def test_place_order_live_posts_fok(monkeypatch):
    # GO=live + 鍵あり で create_order → post_order(FOK) が呼ばれること
    spy = _SpyClob({"success": True, "orderID": "0xdead"})
    _go_live(monkeypatch, spy)
    from py_clob_client.clob_types import OrderType

    from pm_core.api.http import place_order

    resp = await place_order(token_id="123", side="BUY", price=0.41234, size=10.004, paper=False)
    assert resp["order_id"] == "0xdead" and resp["status"] == "live"
    kinds = [c[0] for c in spy.calls]
    assert kinds == ["create_order", "post_order"]
    args = spy.calls[0][1]
    assert args.token_id == "123" and args.price == pytest.approx(0.4123) and args.size == pytest.approx(10.0)
    assert spy.calls[1][1] == OrderType.FOK


@pytest.mark.asyncio
async def test_place_order_live_unfilled_raises(monkeypatch):
    spy = _SpyClob({"success": False, "errorMsg": "order couldn't be fully filled"})
    _go_live(monkeypatch, spy)
    from pm_core.api.http import OrderRejected, place_order

    with pytest.raises(OrderRejected):
        await place_order(token_id="123", side="SELL", price=0.5, size=10, paper=False)


@pytest.mark.asyncio
async def test_live_balance_is_scaled_from_micro_usdc(monkeypatch):
    spy = _SpyClob({})
    _go_live(monkeypatch, spy)
    from pm_core.api.http import get_balance

    assert await get_balance(paper=False) == pytest.approx(12.5)


@pytest.mark.asyncio
async def test_order_book_sorted_best_first():
    from pm_core.api import HTTPClient
    from pm_core.api.http import get_order_book

    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["token"] = request.url.params.get("token_id")
        return httpx.Response(
            200,
            json={
                "bids": [{"price": "0.40", "size": "10"}, {"price": "0.45", "size": "5"}, {"price": "0.30", "size": "0"}],
                "asks": [{"price": "0.55", "size": "3"}, {"price": "0.50", "size": "7"}],
            },
        )

    cli = HTTPClient("https://clob.test", transport=httpx.MockTransport(handler))
    try:
        book = await get_order_book("777", client=cli)
    finally:
        await cli.close()
    assert seen == {"path": "/book", "token": "777"}
    assert book.best_bid == pytest.approx(0.45) and book.best_ask == pytest.approx(0.50)
    assert len(book.bids) == 2, "サイズ 0 の段は捨てる"
    assert book.depth_at_or_above(0.40) == pytest.approx(15.0)
