from __future__ import annotations

import pytest

try:
    from bots.pairarb.config import coerce_config
    from bots.pairarb.exit_waterfall import ExitRule, evaluate, wants_books
    from bots.pairarb.position import Leg, MarketPosition, PositionStatus
    from pm_core.models import BookLevel, OrderBook
except Exception:
    from src.bots.pairarb.config import coerce_config  # type: ignore
    from src.bots.pairarb.exit_waterfall import ExitRule, evaluate, wants_books  # type: ignore
    from src.bots.pairarb.position import Leg, MarketPosition, PositionStatus  # type: ignore
    from src.pm_core.models import BookLevel, OrderBook  # type: ignore

END = 10_000.0
CFG = coerce_config({"market": {"coin": "BTC"}})


def _pos(yes: tuple[float, float] | None, no: tuple[float, float] | None) -> MarketPosition:
    p = MarketPosition(
        market_id="m",
        slug="btc-updown-15m-x",
        token_ids=("Y", "N"),
        end_time=END,
        max_market_capital=100.0,
        coin="BTC",
    )
    if yes:
        p.record_fill(Leg.YES, yes[0], yes[1], 0.0)
    if no:
        p.record_fill(Leg.NO, no[0], no[1], 0.0)
    return p


def _book(token: str, bid: float, size: float) -> OrderBook:
    return OrderBook(token, bids=[BookLevel(bid, size)], asks=[BookLevel(min(0.99, bid + 0.02), size)])


def _books(yes_bid: float, yes_sz: float, no_bid: float, no_sz: float) -> dict:
    return {Leg.YES: _book("Y", yes_bid, yes_sz), Leg.NO: _book("N", no_bid, no_sz)}


def test_partial_unwind_wins_over_early_profit() -> None:
    """〔このテストがすること〕
    Partial Unwind と Early Profit の両方が成立する状態で、Partial Unwind だけが選ばれることを確認します。
    """
    p = _pos((20, 0.40), (10, 0.58))  # pair 0.98 → Sum-Target は不成立
    books = _books(0.95, 100, 0.05, 100)
    d = evaluate(p, books, END - 30, CFG)
    assert d.rule is ExitRule.PARTIAL_UNWIND
    assert [s.leg for s in d.legs] == [Leg.YES]
    assert d.legs[0].price == pytest.approx(0.94)
    assert d.expected_pnl == pytest.approx(20 * 0.94 - 13.8)


def test_late_dominance_sells_winner_first() -> None:
    p = _pos((20, 0.40), (10, 0.58))
    d = evaluate(p, _books(0.95, 100, 0.05, 100), END - 50, CFG)
    assert d.rule is ExitRule.LATE_DOMINANCE
    assert [s.leg for s in d.legs] == [Leg.YES, Leg.NO]
    assert d.expected_pnl == pytest.approx(20 * 0.94 + 10 * 0.04 - 13.8)
    assert any(rule == "PARTIAL_UNWIND" for rule, _ in d.skipped)


def test_partial_unwind_needs_dominant_bid() -> None:
    p = _pos((20, 0.40), (10, 0.58))
    d = evaluate(p, _books(0.65, 100, 0.30, 100), END - 30, CFG)
    assert d.rule is not ExitRule.PARTIAL_UNWIND
    reasons = dict(d.skipped)
    assert "dominance" in reasons["PARTIAL_UNWIND"]


def test_sum_target_lock_without_books() -> None:
    p = _pos((10, 0.40), (10, 0.50))
    d = evaluate(p, None, END - 500, CFG)
    assert d.rule is ExitRule.SUM_TARGET_LOCK
    assert d.legs == ()
    assert d.expected_pnl == 0.0
    assert d.inputs["pair_cost"] == pytest.approx(0.90)


def test_early_profit_sells_thinner_leg_first() -> None:
    p = _pos((20, 0.40), (10, 0.58))
    d = evaluate(p, _books(0.95, 500, 0.05, 15), END - 500, CFG)
    assert d.rule is ExitRule.EARLY_PROFIT
    assert [s.leg for s in d.legs] == [Leg.NO, Leg.YES]


def test_insufficient_depth_blocks_rule() -> None:
    p = _pos((20, 0.40), (10, 0.58))
    d = evaluate(p, _books(0.95, 5, 0.05, 100), END - 500, CFG)
    assert not d.fired
    assert "depth short" in dict(d.skipped)["EARLY_PROFIT"]


def test_depth_counts_levels_at_or_above_sale_price() -> None:
    p = _pos((20, 0.40), (10, 0.58))
    yes_book = OrderBook("Y", bids=[BookLevel(0.95, 8), BookLevel(0.94, 12), BookLevel(0.90, 500)])
    d = evaluate(p, {Leg.YES: yes_book, Leg.NO: _book("N", 0.05, 100)}, END - 500, CFG)
    assert d.rule is ExitRule.EARLY_PROFIT
    yes_leg = next(s for s in d.legs if s.leg is Leg.YES)
    assert yes_leg.depth == pytest.approx(20)


def test_not_evaluated_outside_scanning_or_locked() -> None:
    p = _pos((10, 0.40), (10, 0.50))
    p.begin_exit(PositionStatus.EXITING)
    d = evaluate(p, None, END - 500, CFG)
    assert not d.fired

    q = _pos((10, 0.40), (10, 0.50))
    q.transition(PositionStatus.ARB_LOCKED)
    assert evaluate(q, None, END - 500, CFG).rule is ExitRule.SUM_TARGET_LOCK


def test_flat_position_never_fires() -> None:
    d = evaluate(_pos(None, None), None, END - 10, CFG)
    assert not d.fired


def test_wants_books_in_late_window_or_on_mark_profit() -> None:
    p = _pos((10, 0.40), (10, 0.58))
    assert wants_books(p, {}, END - 30, CFG) is True
    assert wants_books(p, {Leg.YES: 0.50, Leg.NO: 0.50}, END - 500, CFG) is False
    assert wants_books(p, {Leg.YES: 0.95, Leg.NO: 0.30}, END - 500, CFG) is True
