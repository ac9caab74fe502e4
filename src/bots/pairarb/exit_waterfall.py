# 〔このモジュールがすること〕
# エグジットの優先順位付き判定（純関数）です。1 回の評価で最初に成立したルールだけを返します。
#   1) PARTIAL_UNWIND  : 残り ≤ T1 で支配的な脚（bid > dominance）だけ売る（負け脚は残す）
#   2) LATE_DOMINANCE  : 残り ≤ T2 で両脚の売却額 − コスト ≥ 最小利益 → 勝ち脚→負け脚の順に売る
#   3) SUM_TARGET_LOCK : avgYes + avgNo ≤ sumTarget → 解決まで保有で利益確定（Complete へ）
#   4) EARLY_PROFIT    : 時価評価の利益率・利益額が最小以上、板厚も十分 → 薄い脚から売る
# 売却価格は best_bid − exit_slippage（FOK 指値）で評価し、その価格以上の板厚が株数に届かなければ不成立。

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pm_core.models import OrderBook

from .position import Leg, MarketPosition, PositionStatus

_EVALUABLE = (PositionStatus.SCANNING, PositionStatus.ARB_LOCKED)
_MIN_PRICE = 0.01


class ExitRule(str, Enum):
    PARTIAL_UNWIND = "PARTIAL_UNWIND"
    LATE_DOMINANCE = "LATE_DOMINANCE"
    SUM_TARGET_LOCK = "SUM_TARGET_LOCK"
    EARLY_PROFIT = "EARLY_PROFIT"


@dataclass(frozen=True)
class SellLeg:
    leg: Leg
    shares: float
    price: float
    best_bid: float
    depth: float


@dataclass(frozen=True)
class ExitDecision:
    """〔このデータクラスがすること〕
    判定結果です。rule が None なら今回は何もしない。skipped には不成立ルールと理由、
    inputs には比較に使った値（価格・しきい値・金額）を残します。
    """

    rule: Optional[ExitRule] = None
    legs: tuple[SellLeg, ...] = ()
    expected_pnl: float = 0.0
    inputs: Dict[str, Any] = field(default_factory=dict)
    skipped: tuple[tuple[str, str], ...] = ()

    @property
    def fired(self) -> bool:
        return self.rule is not None


def _sale_price(book: OrderBook, slippage: float) -> float:
    bid = book.best_bid
    if bid <= 0:
        return 0.0
    return max(_MIN_PRICE, round(bid - slippage, 4))


def _sell_leg(position: MarketPosition, leg: Leg, book: OrderBook, slippage: float) -> SellLeg:
    price = _sale_price(book, slippage)
    depth = book.depth_at_or_above(price) if price > 0 else 0.0
    return SellLeg(
        leg=leg,
        shares=position.sides[leg].held_shares,
        price=price,
        best_bid=book.best_bid,
        depth=depth,
    )


def _depth_ok(s: SellLeg) -> bool:
    return s.price > 0 and s.depth + 1e-9 >= s.shares


def wants_books(position: MarketPosition, marks: Mapping[Leg, float], now: float, cfg: Any) -> bool:
    """〔この関数がすること〕
    板を取りに行く価値があるかを最終価格ベースで粗く判定します（毎ティックの REST を避ける）。
    """
    if position.status not in _EVALUABLE or not position.has_position:
        return False
    if position.time_left(now) <= float(cfg.exit.late_exit_s):
        return True
    cost = position.combined_cost
    if cost <= 0:
        return False
    value = sum(position.sides[l].held_shares * float(marks.get(l, 0.0)) for l in Leg)
    profit = value - cost
    return profit >= float(cfg.exit.early_profit_usd) and profit / cost >= float(cfg.exit.early_profit_pct)


def evaluate(
    position: MarketPosition,
    books: Optional[Mapping[Leg, OrderBook]],
    now: float,
    cfg: Any,
) -> ExitDecision:
    """〔この関数がすること〕 ルール 1→4 を順に評価し、最初に成立したものを返します。"""
    ex = cfg.exit
    skipped: list[tuple[str, str]] = []
    if position.status not in _EVALUABLE:
        return ExitDecision(skipped=(("*", f"status={position.status.value}"),))
    if not position.has_position:
        return ExitDecision(skipped=(("*", "flat"),))

    time_left = position.time_left(now)
    cost = position.combined_cost
    held = {l: position.sides[l].held_shares for l in Leg}
    slip = float(ex.exit_slippage)
    sells: Dict[Leg, SellLeg] = {}
    if books is not None:
        sells = {l: _sell_leg(position, l, books[l], slip) for l in Leg if l in books}
    base_inputs: Dict[str, Any] = {
        "time_left": round(time_left, 3),
        "cost": round(cost, 6),
        "held_yes": held[Leg.YES],
        "held_no": held[Leg.NO],
        "bid_yes": sells[Leg.YES].best_bid if Leg.YES in sells else None,
        "bid_no": sells[Leg.NO].best_bid if Leg.NO in sells else None,
    }

    # 1) Partial Unwind
    rule = ExitRule.PARTIAL_UNWIND.value
    if time_left > float(ex.partial_unwind_s):
        skipped.append((rule, f"time_left {time_left:.1f}s > {ex.partial_unwind_s}s"))
    elif held[Leg.YES] <= 0 or held[Leg.NO] <= 0:
        skipped.append((rule, "needs both legs"))
    elif len(sells) < 2:
        skipped.append((rule, "no_book"))
    else:
        winner = max(Leg, key=lambda l: sells[l].best_bid)
        w = sells[winner]
        proceeds = w.shares * w.price
        profit = proceeds - cost
        if w.best_bid <= float(ex.dominance_price):
            skipped.append((rule, f"best bid {w.best_bid:.3f} <= dominance {ex.dominance_price}"))
        elif profit < float(ex.min_partial_profit_usd):
            skipped.append((rule, f"profit {profit:.4f} < {ex.min_partial_profit_usd}"))
        elif not _depth_ok(w):
            skipped.append((rule, f"depth {w.depth:.2f} < {w.shares:.2f} @ {w.price:.3f}"))
        else:
            return ExitDecision(
                rule=ExitRule.PARTIAL_UNWIND,
                legs=(w,),
                expected_pnl=profit,
                inputs={**base_inputs, "winner": winner.value, "proceeds": proceeds, "dominance": ex.dominance_price},
                skipped=tuple(skipped),
            )

    # 2) Late Dominance Exit
    rule = ExitRule.LATE_DOMINANCE.value
    legs_held = [l for l in Leg if held[l] > 0]
    if time_left > float(ex.late_exit_s):
        skipped.append((rule, f"time_left {time_left:.1f}s > {ex.late_exit_s}s"))
    elif any(l not in sells for l in legs_held):
        skipped.append((rule, "no_book"))
    else:
        ordered = sorted((sells[l] for l in legs_held), key=lambda s: s.best_bid, reverse=True)
        proceeds = sum(s.shares * s.price for s in ordered)
        profit = proceeds - cost
        thin = [s for s in ordered if not _depth_ok(s)]
        if profit < float(ex.min_late_profit_usd):
            skipped.append((rule, f"profit {profit:.4f} < {ex.min_late_profit_usd}"))
        elif thin:
            skipped.append((rule, f"depth short on {thin[0].leg.value}: {thin[0].depth:.2f} < {thin[0].shares:.2f}"))
        else:
            return ExitDecision(
                rule=ExitRule.LATE_DOMINANCE,
                legs=tuple(ordered),
                expected_pnl=profit,
                inputs={**base_inputs, "proceeds": proceeds, "min_profit": ex.min_late_profit_usd},
                skipped=tuple(skipped),
            )

    # 3) Sum-Target Lock
    rule = ExitRule.SUM_TARGET_LOCK.value
    pair_cost = position.pair_cost
    if math.isinf(pair_cost):
        skipped.append((rule, "needs both legs"))
    elif pair_cost > float(ex.sum_target) + 1e-9:
        skipped.append((rule, f"pair cost {pair_cost:.4f} > target {ex.sum_target}"))
    else:
        return ExitDecision(
            rule=ExitRule.SUM_TARGET_LOCK,
            expected_pnl=0.0,
            inputs={
                **base_inputs,
                "avg_yes": position.yes.avg_price,
                "avg_no": position.no.avg_price,
                "pair_cost": pair_cost,
                "sum_target": ex.sum_target,
            },
            skipped=tuple(skipped),
        )

    # 4) Early Profit Exit
    rule = ExitRule.EARLY_PROFIT.value
    if any(l not in sells for l in legs_held):
        skipped.append((rule, "no_book"))
    elif cost <= 0:
        skipped.append((rule, "no cost basis"))
    else:
        proceeds = sum(sells[l].shares * sells[l].price for l in legs_held)
        profit = proceeds - cost
        pct = profit / cost
        thin = [sells[l] for l in legs_held if not _depth_ok(sells[l])]
        if pct < float(ex.early_profit_pct) or profit < float(ex.early_profit_usd):
            skipped.append((rule, f"profit {profit:.4f} ({pct:.2%}) below {ex.early_profit_usd} / {ex.early_profit_pct:.2%}"))
        elif thin:
            skipped.append((rule, f"depth short on {thin[0].leg.value}: {thin[0].depth:.2f} < {thin[0].shares:.2f}"))
        else:
            ordered = sorted((sells[l] for l in legs_held), key=lambda s: s.depth)
            return ExitDecision(
                rule=ExitRule.EARLY_PROFIT,
                legs=tuple(ordered),
                expected_pnl=profit,
                inputs={**base_inputs, "proceeds": proceeds, "profit_pct": pct},
                skipped=tuple(skipped),
            )

    return ExitDecision(inputs=base_inputs, skipped=tuple(skipped))
