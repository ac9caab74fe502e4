# scripts/run_pairarb.py
# 〔このスクリプトがすること〕
# PairArb Strategy を 1 つ以上の銘柄で同時に起動します（--coin を複数指定）。
# 全銘柄で Capital Guard と PnL Ledger を共有し、SIGINT/SIGTERM かドローダウン・キルスイッチで停止します。

from __future__ import annotations

import argparse
import asyncio
import sys

from pm_core.utils.logger import setup_logger

# 〔この import がすること〕 PairArb の戦略本体と共有コンポーネントを直接使います
try:
    from bots.pairarb.capital_guard import shared_guard
    from bots.pairarb.config import Coin
    from bots.pairarb.pnl_ledger import PnlLedger
    from bots.pairarb.strategy import PairArbStrategy, load_config, run_until_stopped
except Exception:
    from src.bots.pairarb.capital_guard import shared_guard  # type: ignore
    from src.bots.pairarb.config import Coin  # type: ignore
    from src.bots.pairarb.pnl_ledger import PnlLedger  # type: ignore
    from src.bots.pairarb.strategy import PairArbStrategy, load_config, run_until_stopped  # type: ignore


def parse_args() -> argparse.Namespace:
    """〔この関数がすること〕 CLI 引数を解釈します。"""
    p = argparse.ArgumentParser(description="Run PairArb Strategy on one or more up/down markets")
    p.add_argument("--config", required=True, help="path to strategy config (TOML/YAML/JSON)")
    p.add_argument(
        "--coin",
        action="append",
        default=None,
        help="instrument to trade; repeat for several (default: market.coin from config)",
    )
    p.add_argument("--live", action="store_true", help="run in live mode (default: paper; also needs GO=live)")
    p.add_argument("--prom-port", type=int, default=None, help="Prometheus metrics port (first coin only)")
    p.add_argument("--decisions-file", default=None, help="path to JSONL for decision logs (optional)")
    p.add_argument("--log-level", default=None, help="logger level: DEBUG/INFO/WARN/ERROR")
    return p.parse_args()


async def _main() -> int:
    """〔この関数がすること〕
    銘柄ごとに Strategy を作成し、共有 Guard/Ledger のもとで起動・停止します。
    """
    args = parse_args()
    setup_logger("pairarb", console_level=args.log_level, file_level=args.log_level)

    coins = [Coin.parse(c) for c in args.coin] if args.coin else [None]
    base = load_config(args.config)
    ledger = PnlLedger(base.ledger.path)

    strategies = []
    for i, coin in enumerate(coins):
        strategies.append(
            PairArbStrategy(
                config_path=args.config,
                paper=not args.live,
                coin=coin,
                prom_port=args.prom_port if i == 0 else None,
                decisions_file=args.decisions_file,
                ledger=ledger,
                guard=shared_guard,
            )
        )
    return await run_until_stopped(strategies)


def main() -> None:
    """〔この関数がすること〕 非同期メインを実行し、終了コード（キルスイッチ=1, Ctrl-C=130）で抜けます。"""
    try:
        code = asyncio.run(_main())
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
