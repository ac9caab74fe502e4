"""Async Polymarket CLOB market-channel WebSocket adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import time
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from typing import Any, Dict, Iterator

import certifi
import websockets

from pm_core.config import load_settings
from pm_core.models import PriceTick

logger = logging.getLogger(__name__)


def _ws_url() -> str:
    return load_settings().ws_url


def _ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


async def _ws_stream(asset_ids: Sequence[str]) -> AsyncGenerator[Any, None]:
    uri = _ws_url()
    backoff = 1.0
    while True:
        try:
            async with websockets.connect(uri, ssl=_ssl_context(), ping_interval=20, ping_timeout=10) as ws:
                await ws.send(json.dumps({"assets_ids": list(asset_ids), "type": "market"}))
                backoff = 1.0
                async for raw in ws:
                    if raw in ("PONG", b"PONG"):
                        continue
                    try:
                        yield json.loads(raw)
                    except json.JSONDecodeError:
                        logger.debug("ws non-json frame skipped: %.80s", raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - network dependent
            logger.warning(
                "ws market channel closed (%s); reconnecting in %.1fs", exc, backoff
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 15.0)


def _ts(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return time.time()
    return value / 1000.0 if value > 1e11 else value


def _best(levels: Any, *, highest: bool) -> float | None:
    prices = []
    for lvl in levels or []:
        try:
            prices.append(float(lvl["price"]))
        except (KeyError, TypeError, ValueError):
            continue
    if not prices:
        return None
    return max(prices) if highest else min(prices)


def parse_market_message(msg: Dict[str, Any], wanted: set[str]) -> Iterator[PriceTick]:
    """Translate one market-channel event into price ticks for ``wanted`` tokens."""

    kind = msg.get("event_type")
    ts = _ts(msg.get("timestamp"))
    if kind == "price_change":
        changes = msg.get("price_changes") or msg.get("changes") or []
        default_asset = msg.get("asset_id")
        for ch in changes:
            asset = str(ch.get("asset_id") or default_asset or "")
            if asset not in wanted:
                continue
            bid, ask = ch.get("best_bid"), ch.get("best_ask")
            try:
                if bid is not None and ask is not None:
                    px = (float(bid) + float(ask)) / 2.0
                else:
                    px = float(ch["price"])
            except (KeyError, TypeError, ValueError):
                continue
            yield PriceTick(asset, px, ts)
    elif kind == "last_trade_price":
        asset = str(msg.get("asset_id", ""))
        if asset in wanted:
            try:
                yield PriceTick(asset, float(msg["price"]), ts)
            except (KeyError, TypeError, ValueError):
                return
    elif kind == "book":
        asset = str(msg.get("asset_id", ""))
        if asset not in wanted:
            return
        bid = _best(msg.get("bids") or msg.get("buys"), highest=True)
        ask = _best(msg.get("asks") or msg.get("sells"), highest=False)
        if bid is not None and ask is not None:
            yield PriceTick(asset, (bid + ask) / 2.0, ts)
        elif bid is not None or ask is not None:
            yield PriceTick(asset, float(bid if bid is not None else ask), ts)


async def subscribe_prices(asset_ids: Sequence[str]) -> AsyncIterator[PriceTick]:
    """Yield ``PriceTick`` events for the subscribed token ids."""

    wanted = {str(a) for a in asset_ids}
    async for payload in _ws_stream(list(wanted)):
        messages = payload if isinstance(payload, list) else [payload]
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            for tick in parse_market_message(msg, wanted):
                yield tick
