# 〔このモジュールがすること〕
# 1 市場ぶんの建玉（YES/NO の2脚）と状態機械の状態を表します。
# - SideAccumulator: 脚ごとの累積株数・累積コスト（平均単価は常に再計算）
# - PositionStatus: Scanning / ArbLocked / Exiting / PartialUnwind / Complete と許可遷移
# - MarketPosition: 2脚・状態・資本上限・停滞監視・終了時刻を保持（Complete 後は変更不可）

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger("bots.pairarb.position")


class Leg(str, Enum):
    YES = "yes"
    NO = "no"

    @property
    def other(self) -> "Leg":
        return Leg.NO if self is Leg.YES else Leg.YES


class PositionStatus(str, Enum):
    SCANNING = "Scanning"
    ARB_LOCKED = "ArbLocked"
    EXITING = "Exiting"
    PARTIAL_UNWIND = "PartialUnwind"
    COMPLETE = "Complete"


# 許可される遷移（Complete は終端）
_EDGES: Dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.SCANNING: frozenset(
        {
            PositionStatus.ARB_LOCKED,
            PositionStatus.EXITING,
            PositionStatus.PARTIAL_UNWIND,
            PositionStatus.COMPLETE,
        }
    ),
    PositionStatus.ARB_LOCKED: frozenset(
        {PositionStatus.EXITING, PositionStatus.PARTIAL_UNWIND, PositionStatus.COMPLETE}
    ),
    # 失敗時は直前の状態（Scanning / ArbLocked）へ戻す
    PositionStatus.EXITING: frozenset(
        {PositionStatus.SCANNING, PositionStatus.ARB_LOCKED, PositionStatus.COMPLETE}
    ),
    PositionStatus.PARTIAL_UNWIND: frozenset(
        {PositionStatus.SCANNING, PositionStatus.ARB_LOCKED, PositionStatus.COMPLETE}
    ),
    PositionStatus.COMPLETE: frozenset(),
}


def can_transition(src: PositionStatus, dst: PositionStatus) -> bool:
    return dst in _EDGES[src]


@dataclass
class SideAccumulator:
    """〔このクラスがすること〕
    1 脚の累積約定（株数・コスト）を保持します。平均単価は total_cost / total_shares で都度計算し、
    売却は sold_shares / proceeds に別記して累積値は単調非減少に保ちます。
    """

    total_shares: float = 0.0
    total_cost: float = 0.0
    first_buy_ts: float = 0.0
    last_buy_ts: float = 0.0
    last_fill_price: float = 0.0
    is_buying: bool = False
    sold_shares: float = 0.0
    proceeds: float = 0.0

    @property
    def avg_price(self) -> float:
        if self.total_shares <= 0:
            return 0.0
        return self.total_cost / self.total_shares

    @property
    def held_shares(self) -> float:
        return max(0.0, self.total_shares - self.sold_shares)

    @property
    def has_position(self) -> bool:
        return self.total_shares > 0

    def add_fill(self, qty: float, price: float, ts: float) -> None:
        q, p = float(qty), float(price)
        if q <= 0 or p < 0:
            raise ValueError(f"invalid fill qty={qty} price={price}")
        if self.total_shares <= 0:
            self.first_buy_ts = ts
        self.total_shares += q
        self.total_cost += q * p
        self.last_buy_ts = ts
        self.last_fill_price = p

    def add_sale(self, qty: float, price: float) -> None:
        q = min(float(qty), self.held_shares)
        if q <= 0:
            return
        self.sold_shares += q
        self.proceeds += q * float(price)

    def seed(self, shares: float, cost: float, ts: float) -> None:
        """〔このメソッドがすること〕 再起動時に台帳の株数・コストから脚を復元します。"""
        self.total_shares = max(0.0, float(shares))
        self.total_cost = max(0.0, float(cost))
        if self.total_shares > 0 or self.total_cost > 0:
            self.first_buy_ts = ts
            self.last_buy_ts = ts
            self.last_fill_price = self.avg_price

    def reset(self) -> None:
        self.total_shares = 0.0
        self.total_cost = 0.0
        self.first_buy_ts = 0.0
        self.last_buy_ts = 0.0
        self.last_fill_price = 0.0
        self.is_buying = False
        self.sold_shares = 0.0
        self.proceeds = 0.0


@dataclass
class MarketPosition:
    """〔このクラスがすること〕
    1 市場インスタンスの建玉です。所有者は MarketStateMachine だけで、他から直接変更しません。
    """

    market_id: str
    slug: str
    token_ids: tuple[str, str]
    end_time: float
    max_market_capital: float
    coin: str = ""
    status: PositionStatus = PositionStatus.SCANNING
    sides: Dict[Leg, SideAccumulator] = field(
        default_factory=lambda: {Leg.YES: SideAccumulator(), Leg.NO: SideAccumulator()}
    )
    best_pair_cost: float = math.inf
    last_improve_ts: float = 0.0
    cycle_open: bool = False
    _resume_status: Optional[PositionStatus] = None

    # ─────────────── 参照 ───────────────

    def leg_of(self, token_id: str) -> Optional[Leg]:
        if token_id == self.token_ids[0]:
            return Leg.YES
        if token_id == self.token_ids[1]:
            return Leg.NO
        return None

    def token(self, leg: Leg) -> str:
        return self.token_ids[0] if leg is Leg.YES else self.token_ids[1]

    @property
    def yes(self) -> SideAccumulator:
        return self.sides[Leg.YES]

    @property
    def no(self) -> SideAccumulator:
        return self.sides[Leg.NO]

    @property
    def combined_cost(self) -> float:
        return self.yes.total_cost + self.no.total_cost

    @property
    def pair_cost(self) -> float:
        """両脚の平均単価の和（片脚しか無ければ inf）。"""
        if not (self.yes.has_position and self.no.has_position):
            return math.inf
        return self.yes.avg_price + self.no.avg_price

    @property
    def has_position(self) -> bool:
        return self.yes.has_position or self.no.has_position

    @property
    def naked_leg(self) -> Optional[Leg]:
        """片脚だけ保有しているとき、その脚を返します。"""
        if self.yes.has_position and not self.no.has_position:
            return Leg.YES
        if self.no.has_position and not self.yes.has_position:
            return Leg.NO
        return None

    @property
    def proceeds(self) -> float:
        return self.yes.proceeds + self.no.proceeds

    @property
    def pending_pnl(self) -> float:
        """売却代金 − 両脚の総コスト（残った脚は簿価ゼロの残余として扱う）。"""
        return self.proceeds - self.combined_cost

    @property
    def is_complete(self) -> bool:
        return self.status is PositionStatus.COMPLETE

    def time_left(self, now: float) -> float:
        return self.end_time - now

    # ─────────────── 変更（Complete 後は無視） ───────────────

    def transition(self, dst: PositionStatus, reason: str = "") -> bool:
        src = self.status
        if src is dst:
            return True
        if not can_transition(src, dst):
            logger.debug("%s: illegal transition %s -> %s (%s) ignored", self.slug, src.value, dst.value, reason)
            return False
        self.status = dst
        logger.info("%s: %s -> %s %s", self.slug, src.value, dst.value, reason)
        return True

    def begin_exit(self, dst: PositionStatus) -> bool:
        """〔このメソッドがすること〕
        Scanning/ArbLocked のときだけ Exiting/PartialUnwind へ同期的に遷移し、戻り先を覚えます。
        """
        if self.status not in (PositionStatus.SCANNING, PositionStatus.ARB_LOCKED):
            return False
        prev = self.status
        if not self.transition(dst, "exit begins"):
            return False
        self._resume_status = prev
        return True

    def abort_exit(self) -> None:
        back = self._resume_status or PositionStatus.SCANNING
        self._resume_status = None
        self.transition(back, "exit aborted")

    def record_fill(self, leg: Leg, qty: float, price: float, ts: float) -> bool:
        if self.is_complete:
            logger.debug("%s: fill on complete position ignored", self.slug)
            return False
        was_flat = not self.has_position
        self.sides[leg].add_fill(qty, price, ts)
        if was_flat:
            self.last_improve_ts = ts
        pc = self.pair_cost
        if pc < self.best_pair_cost - 1e-9:
            self.best_pair_cost = pc
            self.last_improve_ts = ts
        return True

    def record_sale(self, leg: Leg, qty: float, price: float) -> bool:
        if self.is_complete:
            logger.debug("%s: sale on complete position ignored", self.slug)
            return False
        self.sides[leg].add_sale(qty, price)
        return True

    def set_buying(self, leg: Leg, flag: bool) -> None:
        if self.is_complete:
            return
        self.sides[leg].is_buying = bool(flag)
