# 〔このモジュールがすること〕
# 損益台帳（data/pnl.json）を永続化します。
# - 変更操作は start_cycle / update_cycle_cost / close_cycle / update_wallet_balance のみ
# - すべての読み書きはファイルロック下で「ディスクから読み直す → 計算 → 書き戻す」
#   （同じファイルを共有する複数プロセスでも整合する）
# - close_cycle はオープン集合に無いサイクルには何もしない（冪等）

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pm_core.utils.file_lock import locked

logger = logging.getLogger("bots.pairarb.ledger")

OPEN = "OPEN"


class CloseReason(str, Enum):
    """〔このクラスがすること〕 サイクルの終端理由です。"""

    WIN = "WIN"
    LOSS = "LOSS"
    ABANDON = "ABANDON"
    EARLY_EXIT = "EARLY_EXIT"
    LATE_EXIT = "LATE_EXIT"
    ARB_LOCKED = "ARB_LOCKED"
    EXPIRED = "EXPIRED"


_WON = {CloseReason.WIN, CloseReason.EARLY_EXIT, CloseReason.LATE_EXIT, CloseReason.ARB_LOCKED}
_LOST = {CloseReason.LOSS}


@dataclass
class CoinStats:
    coin: str
    cyclesCompleted: int = 0
    cyclesWon: int = 0
    cyclesLost: int = 0
    cyclesAbandoned: int = 0
    realizedPnL: float = 0.0
    peakPnL: float = 0.0
    maxDrawdown: float = 0.0
    currentExposure: float = 0.0
    avgCycleDuration: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoinStats":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class Cycle:
    """〔このクラスがすること〕
    1 市場への関与（最初の約定〜解決/エグジット）の記録です。
    再起動後の復元のため株数・トークン ID・終了時刻も保持します。
    """

    id: str
    coin: str
    startTs: int
    yesCost: float = 0.0
    noCost: float = 0.0
    yesShares: Optional[float] = None
    noShares: Optional[float] = None
    pendingPnl: float = 0.0
    tokenIds: list[str] = field(default_factory=list)
    endTime: Optional[int] = None
    status: str = OPEN

    @property
    def exposure(self) -> float:
        return float(self.yesCost) + float(self.noCost)

    @property
    def open_cost(self) -> float:
        """まだ回収していない投下資金（コスト − 売却代金）。株数の無い旧形式はコスト全額。"""
        if self.yesShares is None and self.noShares is None:
            return self.exposure
        return max(0.0, -float(self.pendingPnl))

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cycle":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class LedgerState:
    coins: Dict[str, CoinStats] = field(default_factory=dict)
    activeCycles: Dict[str, Cycle] = field(default_factory=dict)
    walletBalance: float = 0.0
    startingBalance: float = 0.0
    lastUpdate: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coins": {k: asdict(v) for k, v in self.coins.items()},
            "activeCycles": {k: asdict(v) for k, v in self.activeCycles.items()},
            "walletBalance": self.walletBalance,
            "startingBalance": self.startingBalance,
            "lastUpdate": self.lastUpdate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerState":
        return cls(
            coins={k: CoinStats.from_dict(v) for k, v in (data.get("coins") or {}).items()},
            activeCycles={
                k: Cycle.from_dict(v) for k, v in (data.get("activeCycles") or {}).items()
            },
            walletBalance=float(data.get("walletBalance", 0.0) or 0.0),
            startingBalance=float(data.get("startingBalance", 0.0) or 0.0),
            lastUpdate=int(data.get("lastUpdate", 0) or 0),
        )


class PnlLedger:
    """〔このクラスがすること〕
    GlobalLedgerState をファイルへ永続化し、サイクルの開閉・損益集計・ドローダウン判定を提供します。
    """

    def __init__(
        self,
        path: str | Path = "data/pnl.json",
        *,
        clock: Callable[[], float] = time.time,
        lock_timeout_s: float = 1.0,
    ) -> None:
        self.path = Path(path)
        # イベントループ上で待つので短く（超えたら TimeoutError）
        self.lock_timeout_s = float(lock_timeout_s)
        self._clock = clock
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # ─────────────── 永続化（ロック下でのみ呼ぶ） ───────────────

    def _load(self) -> LedgerState:
        if not self.path.exists():
            return LedgerState(lastUpdate=self._now_ms())
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return LedgerState(lastUpdate=self._now_ms())
        try:
            return LedgerState.from_dict(json.loads(text))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{self._now_ms()}")
            os.replace(self.path, aside)
            logger.error("ledger %s unreadable (%s); moved to %s and starting fresh", self.path, exc, aside)
            return LedgerState(lastUpdate=self._now_ms())

    def _save(self, state: LedgerState) -> None:
        state.lastUpdate = self._now_ms()
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _stats(state: LedgerState, coin: str) -> CoinStats:
        stats = state.coins.get(coin)
        if stats is None:
            stats = CoinStats(coin=coin)
            state.coins[coin] = stats
        return stats

    @staticmethod
    def _recompute_exposure(state: LedgerState, coin: str) -> None:
        total = sum(c.exposure for c in state.activeCycles.values() if c.coin == coin and c.is_open)
        PnlLedger._stats(state, coin).currentExposure = total

    # ─────────────── 変更操作 ───────────────

    def start_cycle(
        self,
        coin: str,
        market_id: str,
        slug: str,
        *,
        token_ids: Optional[tuple[str, str] | list[str]] = None,
        end_time: Optional[float] = None,
    ) -> Cycle:
        """〔このメソッドがすること〕
        市場の最初の約定でサイクルを OPEN として作成します（既に OPEN ならそのまま返す）。
        """
        coin = str(getattr(coin, "value", coin))
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
            existing = state.activeCycles.get(market_id)
            if existing is not None and existing.is_open:
                return existing
            cycle = Cycle(
                id=slug,
                coin=coin,
                startTs=self._now_ms(),
                yesShares=0.0,
                noShares=0.0,
                tokenIds=[str(t) for t in (token_ids or [])],
                endTime=int(end_time * 1000) if end_time else None,
            )
            state.activeCycles[market_id] = cycle
            self._stats(state, coin)
            self._save(state)
        logger.info("cycle started coin=%s market=%s slug=%s", coin, market_id, slug)
        return cycle

    def update_cycle_cost(
        self,
        market_id: str,
        yes_cost: float,
        no_cost: float,
        *,
        yes_shares: Optional[float] = None,
        no_shares: Optional[float] = None,
        pending_pnl: Optional[float] = None,
    ) -> None:
        """〔このメソッドがすること〕 サイクルの脚別コスト（と株数）を更新し、銘柄の露出を再計算します。"""
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
            cycle = state.activeCycles.get(market_id)
            if cycle is None or not cycle.is_open:
                logger.debug("update_cycle_cost ignored: %s not open", market_id)
                return
            cycle.yesCost = float(yes_cost)
            cycle.noCost = float(no_cost)
            if yes_shares is not None:
                cycle.yesShares = float(yes_shares)
            if no_shares is not None:
                cycle.noShares = float(no_shares)
            if pending_pnl is not None:
                cycle.pendingPnl = float(pending_pnl)
            self._recompute_exposure(state, cycle.coin)
            self._save(state)

    def close_cycle(self, market_id: str, reason: CloseReason | str, pnl: float) -> bool:
        """〔このメソッドがすること〕
        オープン中のサイクルを終端理由つきで 1 度だけ閉じ、銘柄統計へ反映します。
        オープン集合に無ければ何もせず False を返します。
        """
        why = CloseReason(getattr(reason, "value", reason))
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
            cycle = state.activeCycles.get(market_id)
            if cycle is None or not cycle.is_open:
                logger.debug("close_cycle ignored: %s not open (reason=%s)", market_id, why.value)
                return False

            stats = self._stats(state, cycle.coin)
            stats.cyclesCompleted += 1
            if why in _WON:
                stats.cyclesWon += 1
            elif why in _LOST:
                stats.cyclesLost += 1
            else:
                stats.cyclesAbandoned += 1

            stats.realizedPnL += float(pnl)
            stats.peakPnL = max(stats.peakPnL, stats.realizedPnL)
            stats.maxDrawdown = max(stats.maxDrawdown, stats.peakPnL - stats.realizedPnL)

            duration = max(0.0, (self._now_ms() - cycle.startTs) / 1000.0)
            n = stats.cyclesCompleted
            stats.avgCycleDuration = (stats.avgCycleDuration * (n - 1) + duration) / n

            del state.activeCycles[market_id]
            self._recompute_exposure(state, cycle.coin)
            self._save(state)
        logger.info(
            "cycle closed coin=%s market=%s reason=%s pnl=%+.4f realized=%+.4f",
            cycle.coin,
            market_id,
            why.value,
            float(pnl),
            stats.realizedPnL,
        )
        return True

    def update_wallet_balance(self, balance: float) -> None:
        """〔このメソッドがすること〕
        最新の残高を記録します。startingBalance は最初の非ゼロ観測で 1 度だけ決まります。
        """
        bal = float(balance)
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
            state.walletBalance = bal
            if state.startingBalance <= 0 and bal > 0:
                state.startingBalance = bal
                logger.info("session starting balance captured: %.4f", bal)
            self._save(state)

    # ─────────────── 参照（毎回ディスクから読み直す） ───────────────

    def drawdown(self) -> float:
        """〔このメソッドがすること〕 startingBalance からの下落率を返します（基準が無ければ 0）。"""
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
        if state.startingBalance <= 0:
            return 0.0
        return (state.startingBalance - state.walletBalance) / state.startingBalance

    def check_drawdown(self, limit_fraction: float) -> bool:
        return self.drawdown() > float(limit_fraction)

    def open_cost(self) -> float:
        """〔このメソッドがすること〕 OPEN サイクルに投下中の資金（簿価）の合計を返します。"""
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
        return sum(c.open_cost for c in state.activeCycles.values() if c.is_open)

    def equity_drawdown(self) -> float:
        """〔このメソッドがすること〕
        現金残高に OPEN サイクルの簿価を足し戻した評価額で、startingBalance からの下落率を返します。
        建玉に回しただけの資金は損失として数えません。
        """
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
        if state.startingBalance <= 0:
            return 0.0
        at_cost = sum(c.open_cost for c in state.activeCycles.values() if c.is_open)
        return (state.startingBalance - state.walletBalance - at_cost) / state.startingBalance

    def check_equity_drawdown(self, limit_fraction: float) -> bool:
        return self.equity_drawdown() > float(limit_fraction)

    def get_coin_stats(self, coin: str) -> CoinStats:
        coin = str(getattr(coin, "value", coin))
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
            if coin not in state.coins:
                self._stats(state, coin)
                self._save(state)
            return state.coins[coin]

    def get_all_stats(self) -> LedgerState:
        with locked(self.path, self.lock_timeout_s):
            return self._load()

    def get_cycle(self, market_id: str) -> Optional[Cycle]:
        with locked(self.path, self.lock_timeout_s):
            cycle = self._load().activeCycles.get(market_id)
        return cycle if cycle is not None and cycle.is_open else None

    def open_cycles(self, coin: Optional[str] = None) -> Dict[str, Cycle]:
        """〔このメソッドがすること〕 OPEN 状態のサイクルを（銘柄で絞って）返します。"""
        tag = None if coin is None else str(getattr(coin, "value", coin))
        with locked(self.path, self.lock_timeout_s):
            state = self._load()
        return {
            mid: c
            for mid, c in state.activeCycles.items()
            if c.is_open and (tag is None or c.coin == tag)
        }
