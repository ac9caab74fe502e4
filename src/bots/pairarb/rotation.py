# 〔このモジュールがすること〕
# 市場のローテーション（次の 15m 市場の選択・満期処理・再起動時の復元）を担当します。
# - tick(now): 現在の市場が Complete/満期なら終端処理 → 次の市場を選ぶ（失敗時は retry 間隔後に再試行）
# - resume_orphans(now): 台帳の OPEN サイクル（同じ銘柄）を再解決して状態機械を付け直す
# - select_next(now): 市場探索 → 残高の新規取得 → 台帳へ反映 → Capital Guard をリセット

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from pm_core.models import MarketInfo
from pm_core.utils.decision_log import DecisionLogger

from .capital_guard import CapitalGuard
from .execution_engine import ExecutionEngine
from .market_machine import MarketStateMachine
from .pnl_ledger import CloseReason, Cycle, PnlLedger
from .position import MarketPosition, PositionStatus

logger = logging.getLogger("bots.pairarb.rotation")


class RotationController:
    """〔このクラスがすること〕
    銘柄 1 つにつき「いま監視している市場」を 1 つ保持し、完了・満期のたびに次の市場へ切り替えます。
    """

    def __init__(
        self,
        cfg: Any,
        *,
        discovery: Any,
        engine: ExecutionEngine,
        ledger: PnlLedger,
        guard: CapitalGuard,
        decisions: Optional[DecisionLogger] = None,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.discovery = discovery
        self.engine = engine
        self.ledger = ledger
        self.guard = guard
        self.decisions = decisions if decisions is not None else DecisionLogger()
        self.metrics = metrics
        self._clock = clock
        self.coin = str(getattr(cfg.market.coin, "value", cfg.market.coin))
        self.current: Optional[MarketStateMachine] = None
        self._finished: set[str] = set()
        self._next_attempt = 0.0
        # 売却中で 1 回見送った市場の slug（次のタイマーでは必ず閉じる）
        self._retire_deferred: Optional[str] = None

    # ─────────────── 公開 API ───────────────

    async def tick(self, now: Optional[float] = None) -> Optional[MarketStateMachine]:
        """〔このメソッドがすること〕
        タイマーから呼ばれます。現在の市場を必要なら閉じ、空いていれば次の市場を選んで返します。
        """
        t = self._clock() if now is None else now
        cur = self.current
        if cur is not None and (cur.done or cur.position.time_left(t) <= 0):
            if cur.position.status is PositionStatus.EXITING and self._retire_deferred != cur.position.slug:
                # 売却注文の約定がまだ反映されていないので、終端処理は次のタイマーへ
                self._retire_deferred = cur.position.slug
                logger.debug("[%s] %s still exiting; retire deferred one timer", self.coin, cur.position.slug)
                return cur
            self.retire(t)

        if self.current is None and t >= self._next_attempt:
            machine = await self.resume_orphans(t)
            if machine is None:
                machine = await self.select_next(t)
            if machine is None:
                self._next_attempt = t + float(self.cfg.loop.discovery_retry_s)
        return self.current

    def retire(self, now: Optional[float] = None) -> None:
        """〔このメソッドがすること〕 現在の市場を終端処理し、完了済み集合へ入れて手放します。"""
        cur = self.current
        if cur is None:
            return
        t = self._clock() if now is None else now
        reason = cur.finalize(t)
        self._finished.add(cur.position.slug)
        self.decisions.log(
            "rotation_retire",
            coin=self.coin,
            market=cur.position.market_id,
            slug=cur.position.slug,
            reason=reason.value if reason else None,
        )
        logger.info("[%s] market %s retired (%s)", self.coin, cur.position.slug, reason.value if reason else "no cycle")
        self.current = None

    async def select_next(self, now: Optional[float] = None) -> Optional[MarketStateMachine]:
        """〔このメソッドがすること〕
        次の有効市場を探し、残高を取り直して（台帳へ反映・Guard リセット）状態機械を作ります。
        """
        t = self._clock() if now is None else now
        info: Optional[MarketInfo] = await self.discovery.find_active_market(
            self.coin, self.cfg.market.duration, now=t, exclude=self._finished
        )
        if info is None:
            logger.info("[%s] no active %s market yet; retry in %.0fs", self.coin, self.cfg.market.duration, float(self.cfg.loop.discovery_retry_s))
            return None
        balance = await self._fresh_balance()
        if balance is None:
            return None
        cap = balance * float(self.cfg.risk.market_risk_fraction)
        position = MarketPosition(
            market_id=info.market_id,
            slug=info.slug,
            token_ids=info.token_ids,
            end_time=info.end_time,
            max_market_capital=cap,
            coin=self.coin,
        )
        self.current = self._machine(position)
        self.decisions.log(
            "rotation_select",
            coin=self.coin,
            market=info.market_id,
            slug=info.slug,
            end_time=info.end_time,
            balance=balance,
            max_market_capital=cap,
        )
        if self.metrics is not None:
            self.metrics.inc_rotation(self.coin)
        logger.info(
            "[%s] now trading %s (ends in %.0fs, capital cap %.2f of balance %.2f)",
            self.coin,
            info.slug,
            info.end_time - t,
            cap,
            balance,
        )
        return self.current

    async def resume_orphans(self, now: Optional[float] = None) -> Optional[MarketStateMachine]:
        """〔このメソッドがすること〕
        台帳に残った同銘柄の OPEN サイクルを順に処理します。
        - 株数が無い旧形式 / 市場が見つからない → ABANDON で閉じる（コスト基準の損失）
        - 既に満期 → 状態機械を付け直して finalize
        - まだ取引中 → その状態機械を current にして返す
        """
        t = self._clock() if now is None else now
        orphans = self.ledger.open_cycles(self.coin)
        if not orphans:
            return None
        for market_id, cycle in sorted(orphans.items(), key=lambda kv: kv[1].startTs):
            if cycle.id in self._finished:
                continue
            if cycle.yesShares is None or cycle.noShares is None:
                self._abandon(market_id, cycle, "no share counts recorded")
                continue
            info = await self._resolve(cycle)
            if info is None:
                self._abandon(market_id, cycle, "market not found")
                continue
            balance = await self._fresh_balance()
            if balance is None:
                return None
            position = MarketPosition(
                market_id=market_id,
                slug=info.slug,
                token_ids=info.token_ids,
                end_time=info.end_time,
                max_market_capital=balance * float(self.cfg.risk.market_risk_fraction),
                coin=self.coin,
                cycle_open=True,
            )
            position.yes.seed(cycle.yesShares, cycle.yesCost, t)
            position.no.seed(cycle.noShares, cycle.noCost, t)
            position.best_pair_cost = position.pair_cost
            position.last_improve_ts = t
            # 部分解消済みの売却代金は pendingPnl に含まれる（= 売却代金 − コスト）
            proceeds = cycle.pendingPnl + cycle.exposure
            if proceeds > 1e-9:
                self._restore_proceeds(position, proceeds)
            machine = self._machine(position)
            self.decisions.log(
                "resume",
                coin=self.coin,
                market=market_id,
                slug=info.slug,
                yes_shares=cycle.yesShares,
                yes_cost=cycle.yesCost,
                no_shares=cycle.noShares,
                no_cost=cycle.noCost,
            )
            if position.time_left(t) <= 0:
                logger.info("[%s] resumed cycle %s already resolved; finalizing", self.coin, info.slug)
                self.current = machine
                self.retire(t)
                continue
            logger.info(
                "[%s] resumed %s: YES %.2f@%.4f NO %.2f@%.4f",
                self.coin,
                info.slug,
                position.yes.total_shares,
                position.yes.avg_price,
                position.no.total_shares,
                position.no.avg_price,
            )
            self.current = machine
            return machine
        return None

    # ─────────────── 内部 ───────────────

    def _machine(self, position: MarketPosition) -> MarketStateMachine:
        return MarketStateMachine(
            position,
            self.cfg,
            engine=self.engine,
            ledger=self.ledger,
            decisions=self.decisions,
            metrics=self.metrics,
            clock=self._clock,
        )

    async def _fresh_balance(self) -> Optional[float]:
        """〔このメソッドがすること〕 残高を取り直し、台帳へ記録してから Guard をリセットします。"""
        try:
            balance = await self.engine.fetch_balance()
        except Exception as e:
            logger.warning("[%s] balance fetch failed at rotation (%s); retry later", self.coin, e)
            return None
        self.ledger.update_wallet_balance(balance)
        self.guard.reset()
        if self.metrics is not None:
            self.metrics.set_reserved(0.0)
            self.metrics.set_wallet(balance, self.ledger.equity_drawdown())
        return balance

    async def _resolve(self, cycle: Cycle) -> Optional[MarketInfo]:
        info = await self.discovery.find_by_slug(cycle.id)
        if info is not None:
            return info
        if len(cycle.tokenIds) == 2 and cycle.endTime:
            logger.info("[%s] %s not found by discovery; using recorded token ids", self.coin, cycle.id)
            return MarketInfo(
                slug=cycle.id,
                market_id=cycle.id,
                yes_token=cycle.tokenIds[0],
                no_token=cycle.tokenIds[1],
                end_time=cycle.endTime / 1000.0,
            )
        return None

    def _abandon(self, market_id: str, cycle: Cycle, why: str) -> None:
        pnl = cycle.pendingPnl if cycle.pendingPnl else -cycle.exposure
        logger.warning("[%s] abandoning cycle %s (%s), pnl=%+.4f", self.coin, cycle.id, why, pnl)
        self.ledger.close_cycle(market_id, CloseReason.ABANDON, pnl)
        self._finished.add(cycle.id)
        self.decisions.log("abandon", coin=self.coin, market=market_id, slug=cycle.id, reason=why, pnl=pnl)

    @staticmethod
    def _restore_proceeds(position: MarketPosition, proceeds: float) -> None:
        """〔このメソッドがすること〕
        部分解消済みのサイクルを PartialUnwind として復元します。
        売却した脚は記録に無いので代金は YES 側に置きます（終端損益は合計しか使わない）。
        """
        position.yes.proceeds = proceeds
        position.transition(PositionStatus.PARTIAL_UNWIND, "resumed after partial unwind")
