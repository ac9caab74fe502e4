# 〔このモジュールがすること〕
# PairArb 戦略の司令塔。設定ロード、各コンポーネントの配線、タスク起動/停止、CLI を提供します。
# - 価格ティック（data_feed → キュー）を現在の MarketStateMachine へ流す
# - 一定周期のタイマーで: 残高 → ドローダウン判定 → ローテーション → フォースヘッジ/エグジット → 状況表示
# - ドローダウン超過は致命的: CRITICAL ログ → 建玉は解消せずに停止（終了コード 1）

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import time
from typing import Any, Awaitable, Callable, Optional

from pm_core.models import PriceTick
from pm_core.utils.decision_log import DecisionLogger
from pm_core.utils.logger import setup_logger

from .capital_guard import CapitalGuard, shared_guard
from .config import PairArbConfig, coerce_config, load_pairarb_config
from .data_feed import run_feeds
from .execution_engine import ExecutionEngine
from .market_machine import MarketStateMachine
from .metrics import Metrics
from .pnl_ledger import PnlLedger
from .rotation import RotationController

logger = logging.getLogger("bots.pairarb")

EXIT_DRAWDOWN = 1


def load_config(path: str, coin: Any = None) -> PairArbConfig:
    """〔この関数がすること〕
    PairArb の設定をファイルから読み込み、必ず dataclass（PairArbConfig）で返します。
    テストでは monkeypatch で差し替え可能（dict を返されても後段の coerce で吸収）。
    """
    return load_pairarb_config(path, coin=coin)


class PairArbStrategy:
    """〔このクラスがすること〕
    1 銘柄ぶんの戦略ライフサイクルを管理します:
    - 設定を読み込み、Guard/Ledger/Engine/Rotation を組み立てる（Guard と Ledger は他銘柄と共有可）
    - 非同期タスク（価格購読・ティック処理・タイマー）を起動/停止する
    - ドローダウン・キルスイッチで fatal を立てて停止を要求する
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        paper: bool = True,
        *,
        cfg: Any = None,
        coin: Any = None,
        prom_port: Optional[int] = None,
        decisions_file: Optional[str] = None,
        ledger: Optional[PnlLedger] = None,
        guard: Optional[CapitalGuard] = None,
        discovery: Any = None,
        engine: Optional[ExecutionEngine] = None,
        metrics: Optional[Metrics] = None,
        decisions: Optional[DecisionLogger] = None,
        feed: Optional[Callable[..., Awaitable[None]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config_path = config_path
        self.paper = paper
        if cfg is None:
            if config_path is None:
                raise ValueError("either config_path or cfg is required")
            cfg = load_config(config_path, coin=coin)
        self.cfg: PairArbConfig = cfg if isinstance(cfg, PairArbConfig) and coin is None else coerce_config(cfg, coin=coin)
        self.coin = self.cfg.market.coin.value
        self._clock = clock
        self._feed = feed if feed is not None else run_feeds

        self.guard = guard if guard is not None else shared_guard
        self.ledger = ledger if ledger is not None else PnlLedger(self.cfg.ledger.path)
        self.decisions = decisions if decisions is not None else DecisionLogger(filepath=decisions_file)
        self.metrics = metrics if metrics is not None else Metrics(prom_port)
        self.exe = engine if engine is not None else ExecutionEngine(self.cfg, paper=paper, guard=self.guard)
        self.exe.on_order_event = self._on_order_event
        self._owns_discovery = discovery is None
        if discovery is None:
            from pm_core.api.gamma import GammaDiscovery

            discovery = GammaDiscovery()
        self.discovery = discovery
        self.rotation = RotationController(
            self.cfg,
            discovery=self.discovery,
            engine=self.exe,
            ledger=self.ledger,
            guard=self.guard,
            decisions=self.decisions,
            metrics=self.metrics,
            clock=clock,
        )

        self.q_prices: asyncio.Queue[PriceTick] = asyncio.Queue(maxsize=1024)
        self._tasks: list[asyncio.Task] = []
        self._feed_task: Optional[asyncio.Task] = None
        self._feed_tokens: Optional[tuple[str, str]] = None
        self._stopping = asyncio.Event()
        self.stopped = asyncio.Event()
        self.fatal = False
        self.drawdown_pct: Optional[float] = None
        self._closed = False

    # ─────────────── ライフサイクル ───────────────

    async def start(self) -> None:
        """〔このメソッドがすること〕 ティック処理とタイマーのタスクを起動します（価格購読は市場が決まってから）。"""
        logger.info(
            "PairArb %s starting (paper=%s, cfg=%s, ledger=%s)",
            self.coin,
            self.paper,
            self.config_path or "<inline>",
            self.ledger.path,
        )
        self._tasks.append(asyncio.create_task(self._tick_loop(), name=f"tick_loop_{self.coin}"))
        self._tasks.append(asyncio.create_task(self._timer_loop(), name=f"timer_loop_{self.coin}"))

    async def shutdown(self) -> None:
        """〔このメソッドがすること〕
        全タスクを停止します。建玉は解消しません（次回起動時に台帳から復元）。
        """
        if self._closed:
            return
        logger.info("PairArb %s shutting down…", self.coin)
        self._stopping.set()
        tasks = list(self._tasks)
        if self._feed_task is not None:
            tasks.append(self._feed_task)
        current = asyncio.current_task()
        for t in tasks:
            if t is not current:
                t.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        self._tasks.clear()
        self._feed_task = None
        if self._owns_discovery:
            await self.discovery.close()
        self._closed = True
        self.stopped.set()
        logger.info("PairArb %s stopped.", self.coin)

    # ─────────────── ループ ───────────────

    async def _tick_loop(self) -> None:
        """〔このメソッドがすること〕 価格ティックを受け取り、該当市場の状態機械へ渡します。"""
        while not self._stopping.is_set():
            try:
                tick = await self.q_prices.get()
                machine = self.rotation.current
                if machine is None or tick.token_id not in machine.position.token_ids:
                    continue
                await machine.on_price(tick.token_id, tick.price, tick.ts)
            except asyncio.CancelledError:
                break
            except Exception as e:  # pragma: no cover
                logger.exception("tick_loop error: %s", e)

    async def _timer_loop(self) -> None:
        period = float(self.cfg.loop.timer_s)
        while not self._stopping.is_set():
            try:
                await self.on_timer()
                if self.fatal:
                    break
                await asyncio.sleep(period)
            except asyncio.CancelledError:
                break
            except Exception as e:  # pragma: no cover
                logger.exception("timer_loop error: %s", e)
                await asyncio.sleep(period)

    async def on_timer(self, now: Optional[float] = None) -> Optional[MarketStateMachine]:
        """〔このメソッドがすること〕
        タイマー 1 回分: 残高更新 → ドローダウン判定 → ローテーション → 市場のタイマー処理 → 状況表示。
        """
        t = self._clock() if now is None else now
        if await self.check_drawdown():
            return None

        machine = await self.rotation.tick(t)
        await self._ensure_feed(machine)
        if machine is not None:
            await machine.on_timer(t)
            logger.info("%s", machine.status_line(t))
            if machine.done:
                # 次のタイマーを待たずに次の市場へ
                machine = await self.rotation.tick(t)
                await self._ensure_feed(machine)
        self.metrics.set_reserved(self.guard.reserved)
        return machine

    async def check_drawdown(self) -> bool:
        """〔このメソッドがすること〕
        残高を取り直して台帳に記録し、セッションのドローダウンが上限を超えたらキルスイッチを引きます。
        OPEN サイクルの簿価は残高に足し戻して評価します（建玉への投下は損失ではない）。
        """
        try:
            balance = await self.exe.fetch_balance()
        except Exception as e:
            logger.warning("balance fetch failed (%s); drawdown check uses last recorded balance", e)
        else:
            self.ledger.update_wallet_balance(balance)
            self.metrics.set_wallet(balance, self.ledger.equity_drawdown())

        limit = float(self.cfg.risk.drawdown_limit)
        if not self.ledger.check_equity_drawdown(limit):
            return False
        dd = self.ledger.equity_drawdown()
        self.trip_kill_switch(dd, limit)
        return True

    def trip_kill_switch(self, drawdown: float, limit: float) -> None:
        state = self.ledger.get_all_stats()
        at_cost = self.ledger.open_cost()
        self.fatal = True
        self.drawdown_pct = drawdown * 100.0
        logger.critical(
            "DRAWDOWN KILL SWITCH: %.2f%% > limit %.2f%% (start %.4f, wallet %.4f, open at cost %.4f); stopping without unwinding",
            drawdown * 100.0,
            limit * 100.0,
            state.startingBalance,
            state.walletBalance,
            at_cost,
        )
        self.decisions.log(
            "drawdown",
            coin=self.coin,
            drawdown=drawdown,
            limit=limit,
            starting_balance=state.startingBalance,
            wallet_balance=state.walletBalance,
            open_cost=at_cost,
        )
        self._stopping.set()
        self.stopped.set()

    async def _ensure_feed(self, machine: Optional[MarketStateMachine]) -> None:
        """〔このメソッドがすること〕 現在の市場のトークンに価格購読を合わせます（市場が変われば張り替え）。"""
        tokens = machine.position.token_ids if machine is not None and not machine.done else None
        if tokens == self._feed_tokens:
            return
        if self._feed_task is not None:
            self._feed_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._feed_task
            self._feed_task = None
        # 旧市場のティックは捨てる
        while not self.q_prices.empty():
            self.q_prices.get_nowait()
        self._feed_tokens = tokens
        if tokens is not None:
            self._feed_task = asyncio.create_task(
                self._feed(tokens, self.q_prices, paper=self.paper), name=f"feed_{self.coin}"
            )

    # ─────────────── コールバック ───────────────

    def _on_order_event(self, kind: str, fields: dict) -> None:
        """〔このメソッドがすること〕 ExecutionEngine の発注イベントを意思決定ログとメトリクスに反映します。"""
        self.decisions.log(f"order_{kind}", coin=self.coin, **fields)
        if kind == "skip" and fields.get("reason") == "capital_guard":
            self.metrics.inc_entry_skip(self.coin, "capital_guard")
        self.metrics.set_reserved(self.guard.reserved)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """〔この関数がすること〕 CLI 引数を解釈します。"""
    p = argparse.ArgumentParser(prog="pairarb", description="Polymarket up/down pair-cost arbitrage bot")
    p.add_argument("--config", required=True, help="path to PairArb config (TOML/YAML/JSON)")
    p.add_argument("--coin", default=None, help="instrument to trade (BTC/ETH/SOL/XRP); overrides config")
    g = p.add_mutually_exclusive_group()
    g.add_argument("--paper", action="store_true", help="paper trading mode (default)")
    g.add_argument("--live", action="store_true", help="live trading mode (also needs GO=live)")
    p.add_argument("--log-level", default=None, help="logging level (default: LOG_LEVEL or INFO)")
    p.add_argument("--prom-port", type=int, default=None, help="Prometheus metrics port (optional)")
    p.add_argument("--decisions-file", default=None, help="path to JSONL file for decision logs (optional)")
    return p.parse_args(argv)


async def run_until_stopped(strategies: list[PairArbStrategy]) -> int:
    """〔この関数がすること〕
    戦略群を起動し、SIGINT/SIGTERM かキルスイッチで全停止します。キルスイッチなら 1 を返します。
    """
    for s in strategies:
        await s.start()

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _handle_sig(*_: object) -> None:
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_sig)
        except NotImplementedError:  # pragma: no cover (Windows)
            pass

    waiters = [asyncio.create_task(stop.wait())] + [asyncio.create_task(s.stopped.wait()) for s in strategies]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()
        for s in strategies:
            await s.shutdown()
    return EXIT_DRAWDOWN if any(s.fatal for s in strategies) else 0


async def _run(argv: list[str]) -> int:
    args = parse_args(argv)
    setup_logger("pairarb", console_level=args.log_level, file_level=args.log_level)
    strategy = PairArbStrategy(
        config_path=args.config,
        paper=not args.live,
        coin=args.coin,
        prom_port=args.prom_port,
        decisions_file=args.decisions_file,
    )
    return await run_until_stopped([strategy])


def main() -> None:
    """〔この関数がすること〕 エントリポイント。終了コードを返します（キルスイッチ=1, Ctrl-C=130）。"""
    try:
        exit_code = asyncio.run(_run(sys.argv[1:]))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
