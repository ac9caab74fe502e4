from __future__ import annotations

import asyncio
import importlib.util
from pathlib import Path
from typing import List, Optional

import anyio
import pytest

try:
    from pm_core.models import BookLevel, MarketInfo, OrderBook, PriceTick
except Exception:
    from src.pm_core.models import BookLevel, MarketInfo, OrderBook, PriceTick  # type: ignore

_SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "pm_smoke.py"

MARKET = MarketInfo(slug="btc-updown-15m-900", market_id="m1", yes_token="Y", no_token="N", end_time=1800.0)


def _smoke():
    spec = importlib.util.spec_from_file_location("pm_smoke", _SCRIPT)
    mod = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


class FakeDiscovery:
    def __init__(self, info: Optional[MarketInfo]) -> None:
        self.info = info
        self.asked: List[tuple] = []

    async def find_active_market(self, coin, duration="15m", **_):
        self.asked.append((coin, duration))
        return self.info


async def _book(token_id: str) -> OrderBook:
    return OrderBook(token_id, bids=[BookLevel(0.47, 20.0)], asks=[BookLevel(0.49, 15.0)])


async def _balance() -> float:
    return 42.0


def _ticks(n: int, *, hang: bool = False):
    async def subscribe(token_ids):
        for i in range(n):
            yield PriceTick(token_ids[i % 2], 0.5 + 0.01 * i, float(i))
        if hang:
            await asyncio.Event().wait()

    return subscribe


@pytest.mark.asyncio
async def test_run_checks_reports_market_books_ticks_and_balance() -> None:
    smoke = _smoke()
    disc = FakeDiscovery(MARKET)
    report = await smoke.run_checks(
        "btc", ticks=3, discovery=disc, fetch_book=_book, subscribe=_ticks(10), fetch_balance=_balance
    )
    assert disc.asked == [("btc", "15m")]
    assert report["mode"] == "paper"
    assert report["market"]["slug"] == MARKET.slug
    assert report["books"]["yes"] == {"best_bid": 0.47, "best_ask": 0.49, "levels": 1}
    assert report["ws"]["received"] == 3
    assert [t["leg"] for t in report["ws"]["ticks"]] == ["yes", "no", "yes"]
    assert report["balance"] == 42.0


@pytest.mark.asyncio
async def test_silent_socket_is_reported_as_timeout() -> None:
    smoke = _smoke()
    report = await smoke.run_checks(
        "btc",
        ticks=5,
        timeout=0.05,
        discovery=FakeDiscovery(MARKET),
        fetch_book=_book,
        subscribe=_ticks(1, hang=True),
        fetch_balance=_balance,
    )
    assert report["ws"]["received"] == 1
    assert "timeout" in report["ws"]["error"]
    assert report["balance"] == 42.0


def test_missing_market_stops_before_network_checks() -> None:
    smoke = _smoke()

    async def _boom(*_):
        raise AssertionError("板は取りに行かない")

    report = anyio.run(
        lambda: smoke.run_checks("eth", discovery=FakeDiscovery(None), fetch_book=_boom, fetch_balance=_boom)
    )
    assert "error" in report["market"]
    assert "books" not in report and "balance" not in report
