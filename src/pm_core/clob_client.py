# 〔このモジュールがすること〕
# py-clob-client の ClobClient を Settings から組み立てます（Live 発注・残高照会用）。

from __future__ import annotations

from typing import Any

from py_clob_client.client import ClobClient

from pm_core.config import Settings, mask_secret, require_live_creds
from pm_core.utils.logger import get_logger

logger = get_logger("pm_core.clob_client")

_CLIENT_CACHE: dict[str, Any] = {}


def make_client(settings: Settings) -> ClobClient:
    """〔この関数がすること〕
    L1 鍵で API 資格情報を導出し、L2 認証済みの ClobClient を返します。
    同じ鍵での再生成はキャッシュで省きます。
    """
    require_live_creds(settings)
    key = f"{settings.clob_host}|{settings.private_key}|{settings.funder_address}"
    cached = _CLIENT_CACHE.get(key)
    if cached is not None:
        return cached

    client = ClobClient(
        settings.clob_host,
        key=settings.private_key,
        chain_id=settings.chain_id,
        signature_type=settings.signature_type,
        funder=settings.funder_address or None,
    )
    creds = client.create_or_derive_api_creds()
    client.set_api_creds(creds)
    logger.info(
        "clob client ready host=%s key=%s funder=%s sig_type=%s",
        settings.clob_host,
        mask_secret(settings.private_key),
        settings.funder_address or "-",
        settings.signature_type,
    )
    _CLIENT_CACHE[key] = client
    return client


def reset_client_cache() -> None:
    _CLIENT_CACHE.clear()
