# src/pm_core/api/__init__.py
from __future__ import annotations

import logging
import ssl
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class HTTPClient:
    """
    Polymarket の公開 REST（CLOB / Gamma）向け薄いラッパ
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        verify: bool | str | ssl.SSLContext = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._cli = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )
        logger.debug("HTTPClient initialised: %s", self.base_url)

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        指定パスに GET リクエストを送り、JSON を返す。
        例: await cli.get("book", {"token_id": "123"})
        """
        url = f"/{path.lstrip('/')}"
        resp = await self._cli.get(url, params=params)
        resp.raise_for_status()  # 4xx / 5xx なら例外
        return resp.json()

    async def get_or_none(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """404 を「存在しない」として None で返す GET。"""
        url = f"/{path.lstrip('/')}"
        resp = await self._cli.get(url, params=params)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def close(self) -> None:
        await self._cli.aclose()

    async def __aenter__(self) -> "HTTPClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()


__all__ = ["HTTPClient"]
