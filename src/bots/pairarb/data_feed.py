"""Price feed for the PairArb strategy.

This module streams YES/NO token prices for the active market from the
Polymarket CLOB market channel and forwards them as ``PriceTick`` objects to
the strategy queue. In paper mode a synthetic random-walk generator takes
over when the socket fails or stays silent; live mode never trades on
synthetic prices and keeps retrying the socket instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Optional

from pm_core.models import PriceTick

logger = logging.getLogger("bots.pairarb.data")

Subscribe = Callable[[Sequence[str]], AsyncIterator[PriceTick]]

SILENCE_FALLBACK_S = 30.0
LIVE_RETRY_S = 5.0


def _put_latest(out: "asyncio.Queue[PriceTick]", tick: PriceTick) -> None:
    """Enqueue ``tick``, dropping the oldest item when the queue is full."""

    try:
        out.put_nowait(tick)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            out.get_nowait()
        out.put_nowait(tick)


async def _pump_ws(
    token_ids: Sequence[str],
    out: "asyncio.Queue[PriceTick]",
    subscribe: Subscribe | None,
    seen: list[float],
) -> None:
    """Forward socket ticks into ``out`` and record the arrival time in ``seen``."""

    if subscribe is None:
        from pm_core.api.ws import subscribe_prices

        subscribe = subscribe_prices
    async for tick in subscribe(list(token_ids)):
        seen[0] = time.time()
        _put_latest(out, tick)


async def _synthetic_prices(
    token_ids: Sequence[str],
    out: "asyncio.Queue[PriceTick]",
    *,
    dt: float = 0.5,
    seed: Optional[int] = None,
) -> None:
    """Emit a YES/NO random walk with occasional sharp dips.

    The NO price mirrors ``1 - YES`` plus a small spread so that pair costs
    hover around 1.0 and dips on either leg can produce sub-1.0 pairs.
    """

    rng = random.Random(seed)
    yes_token, no_token = token_ids[0], token_ids[1]
    yes = 0.5
    while True:
        yes += rng.gauss(0.0, 0.01)
        if rng.random() < 0.02:
            yes *= 0.75  # dip on YES
        elif rng.random() < 0.02:
            yes = 1.0 - (1.0 - yes) * 0.75  # dip on NO
        yes = min(0.97, max(0.03, yes))
        no = min(0.99, max(0.01, 1.0 - yes + rng.uniform(0.0, 0.03)))
        now = time.time()
        _put_latest(out, PriceTick(yes_token, round(yes, 3), now))
        _put_latest(out, PriceTick(no_token, round(no, 3), now))
        await asyncio.sleep(dt)


async def run_feeds(
    token_ids: Sequence[str],
    out_queue: "asyncio.Queue[PriceTick]",
    *,
    paper: bool,
    subscribe: Subscribe | None = None,
    silence_fallback_s: float = SILENCE_FALLBACK_S,
) -> None:
    """〔この関数がすること〕
    - 2 トークンの価格を WS で購読して out_queue へ流す
    - paper: WS が落ちる/silence_fallback_s 無音なら合成フィードへ切り替え
    - live: 合成価格は使わず、LIVE_RETRY_S 後に WS を張り直す
    - キャンセルで安全に停止します
    """
    if len(token_ids) != 2:
        raise ValueError(f"expected 2 token ids, got {len(token_ids)}")
    seen = [time.time()]
    producer = asyncio.create_task(_pump_ws(token_ids, out_queue, subscribe, seen), name="ws_prices")
    label = "ws"
    try:
        while True:
            done, _ = await asyncio.wait({producer}, timeout=1.0)
            if not done:
                silent = time.time() - seen[0]
                if label == "ws" and paper and silent > silence_fallback_s:
                    logger.warning("price socket silent for %.0fs; switching to synthetic prices (paper).", silent)
                    producer.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await producer
                    producer = asyncio.create_task(_synthetic_prices(token_ids, out_queue), name="synthetic_prices")
                    label = "synthetic"
                continue

            exc = producer.exception()
            if label == "ws" and paper:
                logger.warning("price socket ended (%s); switching to synthetic prices (paper).", exc)
                producer = asyncio.create_task(_synthetic_prices(token_ids, out_queue), name="synthetic_prices")
                label = "synthetic"
            elif label == "ws":
                logger.error("price socket ended (%s); reconnecting in %.0fs.", exc, LIVE_RETRY_S)
                await asyncio.sleep(LIVE_RETRY_S)
                seen[0] = time.time()
                producer = asyncio.create_task(_pump_ws(token_ids, out_queue, subscribe, seen), name="ws_prices")
            else:
                logger.warning("synthetic prices stopped unexpectedly (%s); restarting.", exc)
                producer = asyncio.create_task(_synthetic_prices(token_ids, out_queue), name="synthetic_prices")
    except asyncio.CancelledError:
        pass
    finally:
        if not producer.done():
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
