# 〔このモジュールがすること〕
# 「予約済みだが未確定」の資金をプロセス全体で1つのカウンタとして管理し、
# 同時発注が同じ残高を二重に使うことを防ぎます。

from __future__ import annotations

import logging
import threading

logger = logging.getLogger("bots.pairarb.guard")


class CapitalGuard:
    """〔このクラスがすること〕
    try_reserve / release / reset を原子的に行う資金予約カウンタです。
    成功した発注の予約は解放しません（次回の残高照会に支出が反映されるため）。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reserved = 0.0

    @property
    def reserved(self) -> float:
        with self._lock:
            return self._reserved

    def try_reserve(self, amount: float, current_balance: float) -> bool:
        """〔このメソッドがすること〕
        reserved + amount が残高を超えるなら何も変えずに False、
        超えなければ reserved を増やして True を返します。
        """
        amt = float(amount)
        if amt < 0:
            raise ValueError(f"reservation must be non-negative, got {amount!r}")
        with self._lock:
            if self._reserved + amt > float(current_balance) + 1e-9:
                logger.info(
                    "reserve rejected: reserved=%.4f + amount=%.4f > balance=%.4f",
                    self._reserved,
                    amt,
                    float(current_balance),
                )
                return False
            self._reserved += amt
            logger.debug("reserved %.4f (total %.4f)", amt, self._reserved)
            return True

    def release(self, amount: float) -> None:
        """〔このメソッドがすること〕 予約を減らします（0 未満にはしない）。"""
        with self._lock:
            self._reserved = max(0.0, self._reserved - float(amount))
            logger.debug("released %.4f (total %.4f)", float(amount), self._reserved)

    def reset(self) -> None:
        """〔このメソッドがすること〕
        予約を 0 に戻します。直前に権威ある残高を読み直した直後（市場ローテーション時）だけ呼びます。
        """
        with self._lock:
            if self._reserved:
                logger.info("capital guard reset (dropping %.4f reserved)", self._reserved)
            self._reserved = 0.0


# 同一プロセス内の全市場で共有するインスタンス
shared_guard = CapitalGuard()
