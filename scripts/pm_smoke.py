"""
Polymarket 疎通スモークテスト（非破壊）

- Gamma: 現在の up/down 市場を 1 つ探す
- REST : その市場の YES/NO 板（best bid/ask）を取得
- WS   : market チャンネルから価格を数件だけ受信
- 残高 : paper なら紙ウォレット、Live なら py-clob-client で照会のみ

使い方:
  python scripts/pm_smoke.py --coin BTC --duration 15m

注意:
- 発注は一切行いません（完全に非破壊）。
- .env を自動読込します（DRY_RUN/PM_PRIVATE_KEY/PM_FUNDER_ADDRESS 等）。
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Callable, Optional

import anyio

try:
    from pm_core.api import http
    from pm_core.api.gamma import GammaDiscovery
    from pm_core.api.ws import subscribe_prices
    from pm_core.config import load_settings, mask_secret
except Exception:
    from src.pm_core.api import http  # type: ignore
    from src.pm_core.api.gamma import GammaDiscovery  # type: ignore
    from src.pm_core.api.ws import subscribe_prices  # type: ignore
    from src.pm_core.config import load_settings, mask_secret  # type: ignore


async def _discover(discovery: Any, coin: str, duration: str) -> Optional[Any]:
    """市場探索: 見つからなければ None。"""

    return await discovery.find_active_market(coin, duration)


async def _books(info: Any, fetch_book: Callable[[str], Any]) -> dict[str, Any]:
    """REST 疎通: 2 トークンの最良気配を確認。"""

    out: dict[str, Any] = {}
    for leg, token in (("yes", info.yes_token), ("no", info.no_token)):
        try:
            book = await fetch_book(token)
            out[leg] = {"best_bid": book.best_bid, "best_ask": book.best_ask, "levels": len(book.bids)}
        except Exception as e:  # pragma: no cover - ネットワーク事情
            out[leg] = {"error": str(e)}
    return out


async def _ws_check(info: Any, subscribe: Callable[[list[str]], Any], *, count: int, timeout: float) -> dict[str, Any]:
    """WS 疎通: count 件受信するか timeout 秒で打ち切り。"""

    ticks: list[dict[str, Any]] = []
    try:
        with anyio.fail_after(timeout):
            async for tick in subscribe([info.yes_token, info.no_token]):
                leg = "yes" if tick.token_id == info.yes_token else "no"
                ticks.append({"leg": leg, "price": tick.price})
                if len(ticks) >= count:
                    break
    except TimeoutError:
        return {"received": len(ticks), "ticks": ticks, "error": f"timeout after {timeout:.0f}s"}
    return {"received": len(ticks), "ticks": ticks}


async def run_checks(
    coin: str,
    duration: str = "15m",
    *,
    ticks: int = 3,
    timeout: float = 10.0,
    discovery: Any = None,
    fetch_book: Optional[Callable[[str], Any]] = None,
    subscribe: Optional[Callable[[list[str]], Any]] = None,
    fetch_balance: Optional[Callable[[], Any]] = None,
) -> dict[str, Any]:
    """〔この関数がすること〕 各チェックを順に実行し、結果を 1 つの dict にまとめて返します。"""

    owns = discovery is None
    discovery = discovery or GammaDiscovery()
    fetch_book = fetch_book or http.get_order_book
    fetch_balance = fetch_balance or http.get_balance
    subscribe = subscribe or subscribe_prices

    s = load_settings()
    report: dict[str, Any] = {
        "mode": "paper" if s.dry_run else "live",
        "key": mask_secret(s.private_key) or None,
    }
    try:
        info = await _discover(discovery, coin, duration)
    finally:
        if owns:
            await discovery.close()
    if info is None:
        report["market"] = {"error": f"no active {coin.upper()} {duration} market"}
        return report
    report["market"] = {"slug": info.slug, "end_time": info.end_time, "question": info.question}
    report["books"] = await _books(info, fetch_book)
    report["ws"] = await _ws_check(info, subscribe, count=ticks, timeout=timeout)
    try:
        report["balance"] = await fetch_balance()
    except Exception as e:  # pragma: no cover - 資格情報次第
        report["balance"] = {"error": str(e)}
    return report


def main() -> int:
    p = argparse.ArgumentParser(description="Non-destructive Polymarket connectivity check")
    p.add_argument("--coin", default="BTC")
    p.add_argument("--duration", default="15m", choices=["5m", "15m"])
    p.add_argument("--ticks", type=int, default=3)
    p.add_argument("--timeout", type=float, default=10.0)
    args = p.parse_args()

    report = anyio.run(lambda: run_checks(args.coin, args.duration, ticks=args.ticks, timeout=args.timeout))
    for key in ("market", "books", "ws", "balance"):
        if key in report:
            print(f"[{key.upper()}]", json.dumps(report[key], ensure_ascii=False, default=str))
    return 0 if "error" not in report.get("market", {}) else 1


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)
