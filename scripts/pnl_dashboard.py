# scripts/pnl_dashboard.py
# 〔このスクリプトがすること〕
# 共有 PnL 台帳（data/pnl.json）を 1 秒ごとに読み直して、ウォレット・銘柄別成績・オープン中サイクルを表示します。
# 台帳は読むだけで書き換えません。

from __future__ import annotations

import argparse
import datetime as _dt
import os
import time

from colorama import Fore, Style, init as color_init

try:
    from bots.pairarb.config import Coin
    from bots.pairarb.pnl_ledger import LedgerState, PnlLedger
except Exception:
    from src.bots.pairarb.config import Coin  # type: ignore
    from src.bots.pairarb.pnl_ledger import LedgerState, PnlLedger  # type: ignore

RULE = "═" * 58


def _signed(value: float) -> str:
    color = Fore.GREEN if value >= 0 else Fore.RED
    return f"{color}{'+' if value >= 0 else '-'}${abs(value):.2f}{Style.RESET_ALL}"


def render(state: LedgerState) -> str:
    """〔この関数がすること〕 台帳スナップショットを表示用テキストに整形します。"""
    lines = [
        f"{Style.DIM}{RULE}{Style.RESET_ALL}",
        f"{Style.BRIGHT}{Fore.CYAN}POLYMARKET PAIR ARB DASHBOARD{Style.RESET_ALL}",
        f"{Style.DIM}{RULE}{Style.RESET_ALL}",
    ]
    net = sum(s.realizedPnL for s in state.coins.values())
    updated = _dt.datetime.fromtimestamp(state.lastUpdate / 1000.0).strftime("%H:%M:%S") if state.lastUpdate else "-"
    dd = 0.0
    if state.startingBalance > 0:
        dd = (state.startingBalance - state.walletBalance) / state.startingBalance
    lines += [
        "Wallet:",
        f"  Balance:        ${state.walletBalance:.2f} (start ${state.startingBalance:.2f}, drawdown {dd:.2%})",
        f"  Net PnL:        {_signed(net)}",
        f"  Last Update:    {updated}",
        "",
    ]
    for coin in Coin:
        stats = state.coins.get(coin.value)
        if stats is None:
            lines.append(f"{coin.value}: {Style.DIM}No Data{Style.RESET_ALL}")
            lines.append("")
            continue
        open_cycles = [c for c in state.activeCycles.values() if c.coin == coin.value and c.is_open]
        exposure = sum(c.exposure for c in open_cycles)
        status = f"{Fore.GREEN}ACTIVE{Style.RESET_ALL}" if open_cycles else "WATCHING"
        fails = stats.cyclesLost + stats.cyclesAbandoned
        lines += [
            f"{coin.value}:",
            f"  Cycles:   {stats.cyclesCompleted} | Wins: {stats.cyclesWon} | Fails: {fails}",
            f"  PnL:      {_signed(stats.realizedPnL)} (peak {stats.peakPnL:+.2f}, max dd {stats.maxDrawdown:.2f})",
            f"  Exposure: ${exposure:.2f}",
            f"  Avg Cycle:{stats.avgCycleDuration:7.0f}s",
            f"  Status:   {status}",
            "",
        ]
    if state.activeCycles:
        lines.append("Open cycles:")
        for c in state.activeCycles.values():
            lines.append(
                f"  {c.coin:<4} {c.id:<36} YES ${c.yesCost:.2f} ({c.yesShares or 0:.2f}) "
                f"NO ${c.noCost:.2f} ({c.noShares or 0:.2f}) pending {c.pendingPnl:+.2f}"
            )
    return "\n".join(lines)


def main() -> None:
    p = argparse.ArgumentParser(description="Read-only PnL dashboard for the shared ledger")
    p.add_argument("--ledger", default="data/pnl.json", help="path to the ledger JSON")
    p.add_argument("--interval", type=float, default=1.0, help="refresh interval in seconds")
    args = p.parse_args()

    color_init()
    ledger = PnlLedger(args.ledger)
    try:
        while True:
            text = render(ledger.get_all_stats())
            os.system("cls" if os.name == "nt" else "clear")
            print(text, flush=True)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
