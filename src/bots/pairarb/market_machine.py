# 〔このモジュールがすること〕
# 1 市場ぶんの状態機械（MarketStateMachine）です。MarketPosition の唯一の所有者として、
#   - 価格ティック: ディップ検出 → 8 つのエントリーガード → サイズ決定 → BUY
#   - 価格ティック/タイマー: エグジット・ウォーターフォール評価 → 売却（緊急値下げ売り含む）
#   - タイマー: 片脚（naked）のフォースヘッジ
#   - 満期: サイクルの終端処理（台帳 close）
# を行います。status の遷移は await より前に同期的に行い、同一市場での二重実行を防ぎます。

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, Optional

from pm_core.models import OrderBook
from pm_core.utils.decision_log import DecisionLogger

from . import exit_waterfall
from .execution_engine import ExecutionEngine
from .exit_waterfall import ExitDecision, ExitRule, SellLeg
from .pnl_ledger import CloseReason, PnlLedger
from .position import Leg, MarketPosition, PositionStatus
from .signal_detector import DipDetector, DipSignal
from .size_allocator import SizeAllocator

logger = logging.getLogger("bots.pairarb.machine")

_BOOK_MIN_INTERVAL_S = 1.0


class MarketStateMachine:
    """〔このクラスがすること〕
    1 つの MarketPosition を価格ティックとタイマーの 2 系統から駆動します。
    Capital Guard と PnL Ledger 以外の可変状態は他の市場と共有しません。
    """

    def __init__(
        self,
        position: MarketPosition,
        cfg: Any,
        *,
        engine: ExecutionEngine,
        ledger: PnlLedger,
        detector: Optional[DipDetector] = None,
        sizer: Optional[SizeAllocator] = None,
        decisions: Optional[DecisionLogger] = None,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.position = position
        self.cfg = cfg
        self.engine = engine
        self.ledger = ledger
        self.detector = detector if detector is not None else DipDetector(cfg)
        if self.detector.on_eval is None:
            self.detector.on_eval = self._on_dip_eval
        self.sizer = sizer if sizer is not None else SizeAllocator(cfg)
        self.decisions = decisions if decisions is not None else DecisionLogger()
        self.metrics = metrics
        self._clock = clock
        self.coin = position.coin or str(getattr(cfg.market.coin, "value", cfg.market.coin))
        # 脚ごとの最終観測価格（フォースヘッジ価格・粗い時価評価に使う）
        self.marks: Dict[Leg, float] = {}
        self._last_book_ts = 0.0
        self._last_skip: Dict[Leg, str] = {}
        # 台帳ロック待ちで書けなかった終端（次のタイマーで書き直す）
        self._deferred_close: Optional[tuple[CloseReason, float]] = None

    # ─────────────── 参照 ───────────────

    @property
    def done(self) -> bool:
        return self.position.is_complete

    def status_line(self, now: Optional[float] = None) -> str:
        """〔このメソッドがすること〕 定期表示用の 1 行サマリーを返します。"""
        t = self._clock() if now is None else now
        p = self.position
        pc = p.pair_cost
        return (
            f"[{self.coin}] {p.slug} {p.status.value} "
            f"left={max(0.0, p.time_left(t)):.0f}s "
            f"YES {p.yes.held_shares:.2f}@{p.yes.avg_price:.3f} "
            f"NO {p.no.held_shares:.2f}@{p.no.avg_price:.3f} "
            f"pair={'-' if math.isinf(pc) else f'{pc:.3f}'} "
            f"cost={p.combined_cost:.2f}/{p.max_market_capital:.2f} "
            f"pending={p.pending_pnl:+.2f}"
        )

    # ─────────────── 価格ティック ───────────────

    async def on_price(self, token_id: str, price: float, ts: Optional[float] = None) -> None:
        """〔このメソッドがすること〕
        1 ティックを処理します。順序: 価格記録 → ディップ検出 → エグジット評価 → （シグナルがあれば）エントリー。
        """
        leg = self.position.leg_of(token_id)
        if leg is None:
            return
        now = self._clock() if ts is None else float(ts)
        self.marks[leg] = float(price)
        if self.done:
            return

        signal = self.detector.observe(token_id, price, now)
        await self._maybe_exit(now)
        if signal is not None and not self.done:
            self.decisions.log(
                "signal",
                coin=self.coin,
                leg=leg.value,
                price=signal.price,
                high=signal.high,
                drop=signal.drop,
                trace_id=signal.trace_id,
            )
            self._inc("inc_signal", self.coin)
            await self._try_entry(leg, signal, now)

    # ─────────────── エントリー ───────────────

    def entry_block_reason(self, leg: Leg, price: float, now: float) -> Optional[str]:
        """〔このメソッドがすること〕
        エントリーガードを順に評価し、最初に塞いだ理由を返します（全部通れば None）。
        """
        p = self.position
        e = self.cfg.entry
        side = p.sides[leg]
        other = p.sides[leg.other]

        if p.status is not PositionStatus.SCANNING:
            return f"status={p.status.value}"
        if p.time_left(now) <= float(e.entry_cutoff_s):
            return "entry_cutoff"
        if side.is_buying:
            return "side_busy"
        if side.last_buy_ts > 0 and now - side.last_buy_ts < float(e.debounce_s):
            return "debounce"
        # 片脚のみの間は pair cost が無いので停滞判定しない
        if not math.isinf(p.pair_cost) and now - p.last_improve_ts > float(e.stagnation_s):
            return "stagnation"
        if side.has_position and not other.has_position and now - side.first_buy_ts > float(e.leg2_timeout_s):
            return "leg2_timeout"
        if p.combined_cost >= p.max_market_capital:
            return "market_capital"
        if side.total_shares - other.total_shares >= float(e.imbalance_multiple) * float(e.shares):
            return "imbalance"
        if side.has_position and abs(float(price) - side.last_fill_price) < float(e.min_price_move) - 1e-9:
            return "min_price_move"
        return None

    async def _try_entry(self, leg: Leg, signal: DipSignal, now: float) -> bool:
        p = self.position
        reason = self.entry_block_reason(leg, signal.price, now)
        if reason is not None:
            self._skip(leg, reason, signal.price, signal.trace_id)
            return False

        # ここから await を跨ぐので脚ロックを先に取る
        p.set_buying(leg, True)
        try:
            try:
                balance = await self.engine.fetch_balance()
            except Exception as e:
                logger.warning("[%s] balance fetch failed, entry skipped: %s", self.coin, e)
                self._skip(leg, "balance_error", signal.price, signal.trace_id)
                return False

            room = p.max_market_capital - p.combined_cost
            size = self.sizer.next_size(signal.price, balance, room)
            if not size.ok:
                self._skip(leg, size.reason, signal.price, signal.trace_id, balance=balance, room=room)
                return False

            res = await self.engine.buy(
                p.token(leg), size.shares, signal.price, balance=balance, trace_id=signal.trace_id
            )
            if not res.ok:
                self._skip(leg, res.error or "order_failed", res.price, signal.trace_id)
                self._inc("inc_order_reject", "BUY")
                return False
            if not p.record_fill(leg, res.shares, res.price, now):
                return False
            self._sync_ledger()
            self.decisions.log(
                "buy",
                coin=self.coin,
                leg=leg.value,
                shares=res.shares,
                price=res.price,
                avg=p.sides[leg].avg_price,
                pair_cost=None if math.isinf(p.pair_cost) else p.pair_cost,
                combined_cost=p.combined_cost,
                order_id=res.order_id,
                trace_id=signal.trace_id,
            )
            self._inc("inc_buy", self.coin, leg.value)
            logger.info(
                "[%s] BUY %s %.2f @ %.3f avg=%.4f pair=%s",
                self.coin,
                leg.value.upper(),
                res.shares,
                res.price,
                p.sides[leg].avg_price,
                "-" if math.isinf(p.pair_cost) else f"{p.pair_cost:.4f}",
            )
        finally:
            p.set_buying(leg, False)

        await self._maybe_exit(now)
        return True

    # ─────────────── エグジット ───────────────

    async def _maybe_exit(self, now: float, *, force_books: bool = False) -> Optional[ExitDecision]:
        """〔このメソッドがすること〕
        評価可能な状態なら（必要に応じて板を取り）ウォーターフォールを評価し、成立したルールを実行します。
        """
        p = self.position
        if p.status not in (PositionStatus.SCANNING, PositionStatus.ARB_LOCKED) or not p.has_position:
            return None
        if p.yes.is_buying or p.no.is_buying:
            return None

        books: Optional[Dict[Leg, OrderBook]] = None
        want = force_books or exit_waterfall.wants_books(p, self.marks, now, self.cfg)
        if want and (force_books or now - self._last_book_ts >= _BOOK_MIN_INTERVAL_S):
            self._last_book_ts = now
            books = await self._fetch_books()

        # 板取得の await 中に状態が変わっていないか再確認
        if p.status not in (PositionStatus.SCANNING, PositionStatus.ARB_LOCKED):
            return None
        if p.yes.is_buying or p.no.is_buying:
            return None

        decision = exit_waterfall.evaluate(p, books, now, self.cfg)
        if not decision.fired:
            if books is not None:
                self.decisions.log(
                    "exit_skipped",
                    coin=self.coin,
                    market=p.market_id,
                    inputs=decision.inputs,
                    skipped=[list(s) for s in decision.skipped],
                )
            return decision
        await self.run_exit(decision, now)
        return decision

    async def _fetch_books(self) -> Optional[Dict[Leg, OrderBook]]:
        books: Dict[Leg, OrderBook] = {}
        for leg in Leg:
            if not self.position.sides[leg].held_shares > 0:
                continue
            try:
                books[leg] = await self.engine.fetch_book(self.position.token(leg))
            except Exception as e:
                logger.warning("[%s] order book fetch failed for %s: %s", self.coin, leg.value, e)
                return None
        return books

    async def run_exit(self, decision: ExitDecision, now: Optional[float] = None) -> bool:
        """〔このメソッドがすること〕
        成立したエグジット判定を実行します。戻り値は「ポジションが処理された（状態が進んだ）」かどうか。
        """
        p = self.position
        rule = decision.rule
        if rule is None:
            return False
        t = self._clock() if now is None else now
        self.decisions.log(
            "exit_fired",
            coin=self.coin,
            market=p.market_id,
            rule=rule.value,
            expected_pnl=decision.expected_pnl,
            inputs=decision.inputs,
            skipped=[list(s) for s in decision.skipped],
            legs=[{"leg": s.leg.value, "shares": s.shares, "price": s.price, "depth": s.depth} for s in decision.legs],
        )
        self._inc("inc_exit", self.coin, rule.value)

        if rule is ExitRule.SUM_TARGET_LOCK:
            if not p.transition(PositionStatus.COMPLETE, f"sum-target lock pair={p.pair_cost:.4f}"):
                return False
            # 利益は決済まで計上しない
            self._close_cycle(CloseReason.ARB_LOCKED, 0.0)
            logger.info(
                "[%s] ARB LOCKED avgYes=%.4f avgNo=%.4f pair=%.4f <= %.4f (held to resolution)",
                self.coin,
                p.yes.avg_price,
                p.no.avg_price,
                p.pair_cost,
                float(self.cfg.exit.sum_target),
            )
            return True

        if rule is ExitRule.PARTIAL_UNWIND:
            if not p.begin_exit(PositionStatus.PARTIAL_UNWIND):
                return False
            leg = decision.legs[0]
            res = await self.engine.sell(p.token(leg.leg), leg.shares, leg.price)
            if not res.ok:
                logger.warning("[%s] partial unwind sell failed (%s); reverting", self.coin, res.error)
                self._inc("inc_order_reject", "SELL")
                p.abort_exit()
                return False
            p.record_sale(leg.leg, res.shares, res.price)
            try:
                self._sync_ledger()
            except TimeoutError as e:
                logger.warning("[%s] ledger busy (%s); partial unwind written on next sync", self.coin, e)
            logger.info(
                "[%s] PARTIAL UNWIND sold %s %.2f @ %.3f, holding %s as residual (pending=%+.4f)",
                self.coin,
                leg.leg.value.upper(),
                res.shares,
                res.price,
                leg.leg.other.value.upper(),
                p.pending_pnl,
            )
            return True

        # LATE_DOMINANCE / EARLY_PROFIT: 2 脚を順に売る
        if not p.begin_exit(PositionStatus.EXITING):
            return False
        first, rest = decision.legs[0], decision.legs[1:]
        res = await self.engine.sell(p.token(first.leg), first.shares, first.price)
        if not res.ok:
            logger.warning("[%s] %s first leg sell failed (%s); aborting exit", self.coin, rule.value, res.error)
            self._inc("inc_order_reject", "SELL")
            p.abort_exit()
            return False
        p.record_sale(first.leg, res.shares, res.price)

        stranded = False
        for leg in rest:
            if not await self._sell_or_markdown(leg):
                stranded = True

        reason = CloseReason.LATE_EXIT if rule is ExitRule.LATE_DOMINANCE else CloseReason.EARLY_EXIT
        if stranded:
            reason = CloseReason.LOSS
        pnl = p.pending_pnl
        self._close_cycle(reason, pnl)
        p.transition(PositionStatus.COMPLETE, f"{rule.value} done reason={reason.value}")
        self.decisions.log("cycle_closed", coin=self.coin, market=p.market_id, reason=reason.value, pnl=pnl, t=t)
        return True

    async def _sell_or_markdown(self, leg: SellLeg) -> bool:
        """〔このメソッドがすること〕
        2 脚目を売ります。失敗したら best_bid から haircut した価格で緊急売り。それも失敗なら False。
        """
        p = self.position
        res = await self.engine.sell(p.token(leg.leg), leg.shares, leg.price)
        if res.ok:
            p.record_sale(leg.leg, res.shares, res.price)
            return True
        self._inc("inc_order_reject", "SELL")
        haircut = float(self.cfg.exit.emergency_haircut)
        px = leg.best_bid * (1.0 - haircut)
        logger.error(
            "[%s] second leg %s sell failed (%s); emergency markdown %.2f @ %.3f (bid %.3f -%.0f%%)",
            self.coin,
            leg.leg.value.upper(),
            res.error,
            leg.shares,
            px,
            leg.best_bid,
            haircut * 100,
        )
        self.decisions.log(
            "emergency_markdown", coin=self.coin, leg=leg.leg.value, shares=leg.shares, price=px, bid=leg.best_bid
        )
        res = await self.engine.sell(p.token(leg.leg), leg.shares, px)
        if res.ok:
            p.record_sale(leg.leg, res.shares, res.price)
            return True
        self._inc("inc_order_reject", "SELL")
        logger.error(
            "[%s] emergency markdown failed (%s); force-closing cycle with cost-based loss", self.coin, res.error
        )
        return False

    # ─────────────── タイマー ───────────────

    async def on_timer(self, now: Optional[float] = None) -> None:
        """〔このメソッドがすること〕 フォースヘッジ → エグジット評価（板は必要時に強制取得）の順に実行します。"""
        t = self._clock() if now is None else now
        if self._deferred_close is not None:
            self._close_cycle(*self._deferred_close)
        if self.done:
            return
        await self.force_hedge(t)
        if self.done:
            return
        want = exit_waterfall.wants_books(self.position, self.marks, t, self.cfg)
        await self._maybe_exit(t, force_books=want)
        if self.metrics is not None:
            p = self.position
            self.metrics.set_position(self.coin, p.pair_cost, p.combined_cost, p.time_left(t))

    async def force_hedge(self, now: float) -> bool:
        """〔このメソッドがすること〕
        片脚保有が leg2 タイムアウトを超えたら、欠けている脚を最終観測価格で（最大で同数）買います。
        リスク率の上限は無視しますが、残高（Guard の予約分を除く）は超えません。成功で ArbLocked へ。
        """
        p = self.position
        if p.status is not PositionStatus.SCANNING:
            return False
        naked = p.naked_leg
        if naked is None:
            return False
        side = p.sides[naked]
        waited = now - side.first_buy_ts
        if waited <= float(self.cfg.entry.leg2_timeout_s):
            return False
        missing = naked.other
        if p.yes.is_buying or p.no.is_buying:
            return False

        p.set_buying(missing, True)
        try:
            price = self.marks.get(missing)
            if price is None or price <= 0:
                try:
                    book = await self.engine.fetch_book(p.token(missing))
                except Exception as e:
                    logger.warning("[%s] force hedge: no price for %s (%s); retry next tick", self.coin, missing.value, e)
                    return False
                price = book.best_ask
                if price <= 0:
                    logger.warning("[%s] force hedge: empty ask book for %s; retry next tick", self.coin, missing.value)
                    return False
            try:
                balance = await self.engine.fetch_balance()
            except Exception as e:
                logger.warning("[%s] force hedge: balance fetch failed (%s); retry next tick", self.coin, e)
                return False

            available = max(0.0, balance - self.engine.guard.reserved)
            qty = min(side.held_shares, math.floor(available / price * 100 + 1e-9) / 100.0)
            mkt = self.cfg.market
            if qty < float(mkt.min_order_shares) or qty * price < float(mkt.min_order_usd):
                logger.warning(
                    "[%s] force hedge: qty %.2f below exchange minimum (balance %.2f, reserved %.2f); retry next tick",
                    self.coin,
                    qty,
                    balance,
                    self.engine.guard.reserved,
                )
                return False

            logger.warning(
                "[%s] FORCE HEDGE naked %s for %.0fs > %.0fs: BUY %s %.2f @ %.3f",
                self.coin,
                naked.value.upper(),
                waited,
                float(self.cfg.entry.leg2_timeout_s),
                missing.value.upper(),
                qty,
                price,
            )
            res = await self.engine.buy(p.token(missing), qty, price, balance=balance)
            if not res.ok:
                logger.warning("[%s] force hedge failed (%s); retry next tick", self.coin, res.error)
                self._inc("inc_order_reject", "BUY")
                return False
            if not p.record_fill(missing, res.shares, res.price, now):
                return False
            self._sync_ledger()
        finally:
            p.set_buying(missing, False)

        p.transition(PositionStatus.ARB_LOCKED, "force hedge filled")
        self.decisions.log(
            "force_hedge",
            coin=self.coin,
            market=p.market_id,
            leg=missing.value,
            shares=res.shares,
            price=res.price,
            waited_s=waited,
            pair_cost=p.pair_cost,
        )
        self._inc("inc_hedge", self.coin)
        return True

    # ─────────────── 満期 ───────────────

    def finalize(self, now: Optional[float] = None) -> Optional[CloseReason]:
        """〔このメソッドがすること〕
        市場の解決（満期）時にサイクルを閉じ、Complete にします。既に Complete なら何もしません。
        - 両脚保有: min(保有株数) × 1.0 + 売却代金 − コスト（勝ち負けを知らない保守的見積もり）で WIN/LOSS
        - PartialUnwind: 残った脚はゼロ評価で LATE_EXIT
        - 片脚のみ: ゼロ評価で EXPIRED
        """
        p = self.position
        if p.is_complete:
            if self._deferred_close is not None:
                self._close_cycle(*self._deferred_close)
            return None
        t = self._clock() if now is None else now
        held_yes, held_no = p.yes.held_shares, p.no.held_shares
        if p.status is PositionStatus.PARTIAL_UNWIND:
            reason, pnl = CloseReason.LATE_EXIT, p.pending_pnl
        elif held_yes > 0 and held_no > 0:
            pnl = min(held_yes, held_no) * 1.0 + p.pending_pnl
            reason = CloseReason.WIN if pnl >= 0 else CloseReason.LOSS
        elif p.has_position:
            reason, pnl = CloseReason.EXPIRED, p.pending_pnl
        else:
            reason, pnl = None, 0.0

        if reason is not None and p.cycle_open:
            self._close_cycle(reason, pnl)
            self.decisions.log("cycle_closed", coin=self.coin, market=p.market_id, reason=reason.value, pnl=pnl, t=t)
        p.transition(PositionStatus.COMPLETE, f"market resolved ({reason.value if reason else 'flat'})")
        return reason

    # ─────────────── 内部 ───────────────

    def _close_cycle(self, reason: CloseReason, pnl: float) -> None:
        """〔このメソッドがすること〕
        最終コストを反映してサイクルを閉じます。台帳ロックが取れなければ記録だけ残し、次のタイマーで書き直します。
        """
        try:
            self._sync_ledger()
            self.ledger.close_cycle(self.position.market_id, reason, pnl)
        except TimeoutError as e:
            logger.error(
                "[%s] ledger busy (%s); closing %s as %s on the next timer",
                self.coin,
                e,
                self.position.slug,
                reason.value,
            )
            self._deferred_close = (reason, pnl)
        else:
            self._deferred_close = None

    def _sync_ledger(self) -> None:
        """〔このメソッドがすること〕 必要ならサイクルを開始し、脚別コスト・株数・含み損益を台帳へ反映します。"""
        p = self.position
        if not p.cycle_open:
            self.ledger.start_cycle(self.coin, p.market_id, p.slug, token_ids=p.token_ids, end_time=p.end_time)
            p.cycle_open = True
        self.ledger.update_cycle_cost(
            p.market_id,
            p.yes.total_cost,
            p.no.total_cost,
            yes_shares=p.yes.total_shares,
            no_shares=p.no.total_shares,
            pending_pnl=p.pending_pnl,
        )

    def _skip(self, leg: Leg, reason: str, price: float, trace_id: Optional[str], **extra: Any) -> None:
        # 同じ理由の連続はデバッグログのみ
        if self._last_skip.get(leg) != reason:
            logger.info("[%s] %s entry skipped: %s (px=%.3f)", self.coin, leg.value.upper(), reason, price)
        else:
            logger.debug("[%s] %s entry skipped: %s (px=%.3f)", self.coin, leg.value.upper(), reason, price)
        self._last_skip[leg] = reason
        self.decisions.log("guard_skip", coin=self.coin, leg=leg.value, reason=reason, price=price, trace_id=trace_id, **extra)
        self._inc("inc_entry_skip", self.coin, reason)

    def _on_dip_eval(self, rec: dict) -> None:
        leg = self.position.leg_of(rec.get("token_id", ""))
        self.decisions.log("dip_eval", coin=self.coin, leg=leg.value if leg else None, **rec)

    def _inc(self, name: str, *args: str) -> None:
        if self.metrics is not None:
            getattr(self.metrics, name)(*args)
