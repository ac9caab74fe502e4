# 〔このモジュールがすること〕
# Gamma API から up/down 市場（<coin>-updown-<duration>-<slotStart>）を予測スラッグで探索します。
# - find_active_market(coin, duration): 現在〜2時間先のスロットを順に引き、最初の有効市場を返す
# - find_by_slug(slug): 永続化されたサイクルの市場を再解決する

from __future__ import annotations

import datetime as _dt
import json
import math
import time
from typing import Any, Iterable, Optional

import httpx

from pm_core.api import HTTPClient
from pm_core.config import load_settings
from pm_core.models import MarketInfo
from pm_core.utils.logger import get_logger
from pm_core.utils.retry import retry_async

logger = get_logger("pm_core.api.gamma")

DURATION_SECONDS: dict[str, int] = {"5m": 300, "15m": 900}
SCAN_AHEAD_S = 2 * 60 * 60


def _parse_ts(value: Any) -> Optional[float]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = _dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.timestamp()


def _token_ids(raw: Any) -> list[str]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [str(t) for t in raw]


def parse_market(raw: dict[str, Any]) -> Optional[MarketInfo]:
    """〔この関数がすること〕 Gamma の市場 JSON を MarketInfo に変換します（不完全なら None）。"""
    tokens = _token_ids(raw.get("clobTokenIds") or raw.get("clob_token_ids"))
    if len(tokens) != 2:
        logger.debug("market %s has %d token ids; skipped", raw.get("slug"), len(tokens))
        return None
    events = raw.get("events") or [{}]
    end_time = _parse_ts((events[0] or {}).get("endDate")) or _parse_ts(
        raw.get("endDateIso") or raw.get("endDate") or raw.get("end_date_iso")
    )
    if end_time is None:
        return None
    return MarketInfo(
        slug=str(raw.get("slug", "")),
        market_id=str(raw.get("id") or raw.get("conditionId") or raw.get("slug")),
        yes_token=tokens[0],
        no_token=tokens[1],
        end_time=end_time,
        question=str(raw.get("question", "")),
    )


def candidate_slugs(coin: str, duration: str, now: float) -> list[str]:
    """〔この関数がすること〕 直前スロットから 2 時間先までの予測スラッグを古い順に返します。"""
    interval = DURATION_SECONDS.get(duration)
    if interval is None:
        raise ValueError(f"unsupported duration: {duration!r}")
    now_s = int(now)
    first = math.floor((now_s - interval) / interval) * interval
    last = math.ceil((now_s + SCAN_AHEAD_S) / interval) * interval
    return [f"{coin.lower()}-updown-{duration}-{t}" for t in range(first, last + 1, interval)]


class GammaDiscovery:
    """〔このクラスがすること〕 市場探索サービス（Gamma API）の境界実装です。"""

    def __init__(self, client: Optional[HTTPClient] = None) -> None:
        self._client = client or HTTPClient(load_settings().gamma_host)

    @retry_async(max_attempts=3, base_delay=0.5, retry_on=(httpx.TransportError,))
    async def _markets_by_slug(self, slug: str) -> list[dict[str, Any]]:
        data = await self._client.get_or_none("markets", {"slug": slug})
        if not data:
            return []
        return list(data) if isinstance(data, list) else [data]

    async def find_by_slug(self, slug: str) -> Optional[MarketInfo]:
        try:
            results = await self._markets_by_slug(slug)
        except httpx.HTTPError as exc:
            logger.warning("gamma lookup failed slug=%s err=%s", slug, exc)
            return None
        for raw in results:
            info = parse_market(raw)
            if info is not None:
                return info
        return None

    async def find_active_market(
        self,
        coin: str,
        duration: str = "15m",
        *,
        now: Optional[float] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[MarketInfo]:
        """〔このメソッドがすること〕
        予測スラッグを順に照会し、active かつ未 closed かつ終了前の最初の市場を返します。
        exclude のスラッグ（このセッションで完了済みの市場）は飛ばします。
        """
        t_now = time.time() if now is None else float(now)
        slugs = candidate_slugs(coin, duration, t_now)
        skip = set(exclude)
        logger.info("scanning %d %s %s slots", len(slugs), coin.upper(), duration)
        for slug in slugs:
            if slug in skip:
                continue
            try:
                results = await self._markets_by_slug(slug)
            except httpx.HTTPError as exc:
                logger.debug("slot %s lookup failed: %s", slug, exc)
                continue
            if not results:
                continue
            raw = results[0]
            if not raw.get("active") or raw.get("closed"):
                continue
            info = parse_market(raw)
            if info is not None and info.end_time > t_now:
                logger.info("found market %s (ends in %.0fs)", info.slug, info.end_time - t_now)
                return info
        return None

    async def close(self) -> None:
        await self._client.close()
