from __future__ import annotations

import threading

import pytest

try:
    from bots.pairarb.capital_guard import CapitalGuard
except Exception:
    from src.bots.pairarb.capital_guard import CapitalGuard  # type: ignore


def test_reserve_release_sequence() -> None:
    """〔このテストがすること〕 60 予約 → 50 は超過で拒否 → 60 解放後は 50 が通ることを確認します。"""
    g = CapitalGuard()
    assert g.try_reserve(60, 100) is True
    assert g.try_reserve(50, 100) is False, "110 > 100 は拒否されるべき"
    assert g.reserved == pytest.approx(60)
    g.release(60)
    assert g.try_reserve(50, 100) is True
    assert g.reserved == pytest.approx(50)


def test_failed_reserve_does_not_mutate() -> None:
    g = CapitalGuard()
    g.try_reserve(30, 50)
    assert g.try_reserve(25, 50) is False
    assert g.reserved == pytest.approx(30)


def test_release_clamps_at_zero_and_reset_clears() -> None:
    g = CapitalGuard()
    g.try_reserve(10, 100)
    g.release(25)
    assert g.reserved == 0.0
    g.try_reserve(40, 100)
    g.reset()
    assert g.reserved == 0.0


def test_exact_fit_is_allowed() -> None:
    g = CapitalGuard()
    assert g.try_reserve(100, 100) is True
    assert g.try_reserve(0.01, 100) is False


def test_negative_amount_rejected() -> None:
    with pytest.raises(ValueError):
        CapitalGuard().try_reserve(-1, 100)


def test_concurrent_reservations_never_exceed_balance() -> None:
    """〔このテストがすること〕
    多数スレッドから同時に予約しても、成功分の合計が残高を超えないことを確認します。
    """
    g = CapitalGuard()
    balance = 100.0
    wins: list[float] = []
    lock = threading.Lock()
    start = threading.Barrier(16)

    def worker() -> None:
        start.wait()
        for _ in range(50):
            if g.try_reserve(3.0, balance):
                with lock:
                    wins.append(3.0)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(wins) <= balance
    assert len(wins) == 33  # floor(100 / 3)
    assert g.reserved == pytest.approx(sum(wins))
