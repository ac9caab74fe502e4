from __future__ import annotations

import json
from typing import Iterable, List, Optional

import pytest

try:
    from bots.pairarb.capital_guard import CapitalGuard
    from bots.pairarb.config import coerce_config
    from bots.pairarb.execution_engine import ExecutionEngine
    from bots.pairarb.pnl_ledger import CloseReason, PnlLedger
    from bots.pairarb.position import Leg, PositionStatus
    from bots.pairarb.rotation import RotationController
    from pm_core.models import MarketInfo
except Exception:
    from src.bots.pairarb.capital_guard import CapitalGuard  # type: ignore
    from src.bots.pairarb.config import coerce_config  # type: ignore
    from src.bots.pairarb.execution_engine import ExecutionEngine  # type: ignore
    from src.bots.pairarb.pnl_ledger import CloseReason, PnlLedger  # type: ignore
    from src.bots.pairarb.position import Leg, PositionStatus  # type: ignore
    from src.bots.pairarb.rotation import RotationController  # type: ignore
    from src.pm_core.models import MarketInfo  # type: ignore

CFG = coerce_config({"market": {"coin": "BTC"}, "loop": {"discovery_retry_s": 5}})


def _market(slug: str, end: float) -> MarketInfo:
    return MarketInfo(slug=slug, market_id=f"id-{slug}", yes_token=f"{slug}-Y", no_token=f"{slug}-N", end_time=end)


class FakeDiscovery:
    """〔このクラスがすること〕 Gamma の代わりに固定の市場一覧から探索結果を返します。"""

    def __init__(self, markets: Iterable[MarketInfo] = ()) -> None:
        self.markets: List[MarketInfo] = list(markets)
        self.calls: List[set] = []

    async def find_active_market(self, coin, duration="15m", *, now=None, exclude=()) -> Optional[MarketInfo]:
        self.calls.append(set(exclude))
        for m in self.markets:
            if m.slug not in exclude and m.end_time > (now or 0):
                return m
        return None

    async def find_by_slug(self, slug: str) -> Optional[MarketInfo]:
        return next((m for m in self.markets if m.slug == slug), None)


class BalanceEngine(ExecutionEngine):
    def __init__(self, guard: CapitalGuard, balance: float = 200.0) -> None:
        super().__init__(CFG, paper=True, guard=guard)
        self.balance = balance

    async def _fetch_balance(self) -> float:
        return self.balance


def _rotation(tmp_path, markets=()) -> tuple[RotationController, FakeDiscovery, PnlLedger, CapitalGuard]:
    guard = CapitalGuard()
    ledger = PnlLedger(tmp_path / "pnl.json", clock=lambda: 50.0)
    disc = FakeDiscovery(markets)
    rot = RotationController(
        CFG, discovery=disc, engine=BalanceEngine(guard), ledger=ledger, guard=guard, clock=lambda: 0.0
    )
    return rot, disc, ledger, guard


@pytest.mark.asyncio
async def test_select_next_reads_fresh_balance_and_resets_guard(tmp_path) -> None:
    rot, _, ledger, guard = _rotation(tmp_path, [_market("btc-updown-15m-900", 900.0)])
    guard.try_reserve(50.0, 200.0)

    m = await rot.tick(10.0)
    assert m is not None and rot.current is m
    assert m.position.slug == "btc-updown-15m-900"
    assert m.position.token_ids == ("btc-updown-15m-900-Y", "btc-updown-15m-900-N")
    assert m.position.max_market_capital == pytest.approx(200.0 * 0.20)
    assert guard.reserved == 0.0
    state = ledger.get_all_stats()
    assert state.walletBalance == 200.0 and state.startingBalance == 200.0


@pytest.mark.asyncio
async def test_tick_retires_complete_market_and_excludes_it(tmp_path) -> None:
    rot, disc, _, _ = _rotation(tmp_path, [_market("a", 900.0), _market("b", 1800.0)])
    first = await rot.tick(10.0)
    assert first is not None and first.position.slug == "a"

    first.position.transition(PositionStatus.COMPLETE)
    second = await rot.tick(20.0)
    assert second is not None and second.position.slug == "b"
    assert "a" in disc.calls[-1]


@pytest.mark.asyncio
async def test_expired_market_is_finalized_on_tick(tmp_path) -> None:
    rot, _, _, _ = _rotation(tmp_path, [_market("a", 900.0)])
    m = await rot.tick(10.0)
    assert m is not None
    assert await rot.tick(901.0) is None
    assert m.done


@pytest.mark.asyncio
async def test_expiry_during_exit_waits_one_timer_for_sale_proceeds(tmp_path) -> None:
    """〔このテストがすること〕
    満期時に両脚売却の途中なら終端処理を 1 タイマー見送り、その間に届いた売却代金で
    サイクルが閉じられることを確認します（見送りは 1 回だけ）。
    """
    rot, _, ledger, _ = _rotation(tmp_path, [_market("a", 900.0)])
    m = await rot.tick(10.0)
    assert m is not None
    p = m.position
    p.record_fill(Leg.YES, 10, 0.40, 11.0)
    p.record_fill(Leg.NO, 10, 0.50, 12.0)
    m._sync_ledger()
    p.transition(PositionStatus.ARB_LOCKED)
    assert p.begin_exit(PositionStatus.EXITING) is True

    assert await rot.tick(901.0) is m
    assert p.status is PositionStatus.EXITING
    assert ledger.get_cycle(p.market_id) is not None

    # 見送り中に売却が約定してエグジットが完了する
    p.record_sale(Leg.YES, 10, 0.95)
    p.record_sale(Leg.NO, 10, 0.02)
    m._close_cycle(CloseReason.LATE_EXIT, p.pending_pnl)
    p.transition(PositionStatus.COMPLETE)

    assert await rot.tick(902.0) is None
    stats = ledger.get_coin_stats("BTC")
    assert stats.cyclesCompleted == 1 and stats.cyclesWon == 1
    assert stats.realizedPnL == pytest.approx(9.5 + 0.2 - 9.0)


@pytest.mark.asyncio
async def test_stuck_exit_is_retired_on_the_second_timer(tmp_path) -> None:
    rot, _, _, _ = _rotation(tmp_path, [_market("a", 900.0)])
    m = await rot.tick(10.0)
    assert m is not None
    assert m.position.begin_exit(PositionStatus.EXITING) is True
    assert await rot.tick(901.0) is m
    assert await rot.tick(902.0) is None
    assert m.done


@pytest.mark.asyncio
async def test_discovery_retry_interval(tmp_path) -> None:
    rot, disc, _, _ = _rotation(tmp_path)
    assert await rot.tick(0.0) is None
    assert await rot.tick(1.0) is None
    assert len(disc.calls) == 1, "再試行間隔内は探索しない"
    await rot.tick(6.0)
    assert len(disc.calls) == 2


# ─────────────── 再起動時の復元 ───────────────


@pytest.mark.asyncio
async def test_resume_seeds_sides_from_recorded_cycle(tmp_path) -> None:
    """〔このテストがすること〕
    台帳の OPEN サイクル（株数・コスト・トークン ID・終了時刻つき）から状態機械が復元されることを確認します。
    探索で見つからなくても記録済みのトークン ID で再開します。
    """
    rot, disc, ledger, _ = _rotation(tmp_path)
    ledger.start_cycle("BTC", "mk1", "btc-updown-15m-900", token_ids=("Y", "N"), end_time=900.0)
    ledger.update_cycle_cost("mk1", 4.0, 5.0, yes_shares=10, no_shares=10, pending_pnl=-9.0)

    m = await rot.tick(100.0)
    assert m is not None
    p = m.position
    assert p.market_id == "mk1" and p.token_ids == ("Y", "N")
    assert p.end_time == pytest.approx(900.0)
    assert p.cycle_open is True
    assert p.yes.avg_price == pytest.approx(0.40) and p.no.avg_price == pytest.approx(0.50)
    assert p.status is PositionStatus.SCANNING
    assert disc.calls == [], "復元できたときは新しい市場を探さない"

    await m.on_timer(100.0)
    assert m.done, "復元直後でも pair 0.90 はロックされる"
    assert ledger.get_coin_stats("BTC").cyclesWon == 1


@pytest.mark.asyncio
async def test_resume_restores_partial_unwind_and_finalizes_expired(tmp_path) -> None:
    rot, _, ledger, _ = _rotation(tmp_path)
    ledger.start_cycle("BTC", "mk1", "btc-updown-15m-900", token_ids=("Y", "N"), end_time=900.0)
    ledger.update_cycle_cost("mk1", 8.0, 5.8, yes_shares=20, no_shares=10, pending_pnl=5.0)

    assert await rot.tick(1000.0) is None
    stats = ledger.get_coin_stats("BTC")
    assert stats.cyclesWon == 1
    assert stats.realizedPnL == pytest.approx(5.0)
    assert ledger.get_cycle("mk1") is None


@pytest.mark.asyncio
async def test_resume_prefers_discovery_metadata(tmp_path) -> None:
    rot, _, ledger, _ = _rotation(tmp_path, [_market("btc-updown-15m-900", 900.0)])
    ledger.start_cycle("BTC", "mk1", "btc-updown-15m-900")
    ledger.update_cycle_cost("mk1", 4.0, 0.0, yes_shares=10, no_shares=0, pending_pnl=-4.0)

    m = await rot.tick(100.0)
    assert m is not None
    assert m.position.token_ids == ("btc-updown-15m-900-Y", "btc-updown-15m-900-N")
    assert m.position.naked_leg is not None
    assert m.position.yes.first_buy_ts == 100.0


@pytest.mark.asyncio
async def test_unresolvable_and_legacy_cycles_are_abandoned(tmp_path) -> None:
    path = tmp_path / "pnl.json"
    path.write_text(
        json.dumps(
            {
                "coins": {},
                "activeCycles": {
                    "old": {"id": "btc-old", "coin": "BTC", "startTs": 1, "yesCost": 3.0, "noCost": 0.0, "status": "OPEN"},
                    "lost": {
                        "id": "btc-lost",
                        "coin": "BTC",
                        "startTs": 2,
                        "yesCost": 2.0,
                        "noCost": 0.0,
                        "yesShares": 5.0,
                        "noShares": 0.0,
                        "pendingPnl": -2.0,
                        "status": "OPEN",
                    },
                    "eth": {"id": "eth-x", "coin": "ETH", "startTs": 3, "yesCost": 1.0, "status": "OPEN"},
                },
                "walletBalance": 100,
                "startingBalance": 100,
                "lastUpdate": 1,
            }
        ),
        encoding="utf-8",
    )
    rot, _, ledger, _ = _rotation(tmp_path, [_market("next", 900.0)])

    m = await rot.tick(10.0)
    assert m is not None and m.position.slug == "next"
    stats = ledger.get_coin_stats("BTC")
    assert stats.cyclesAbandoned == 2
    assert stats.realizedPnL == pytest.approx(-5.0)
    assert ledger.get_cycle("eth") is not None, "他銘柄のサイクルには触れない"
