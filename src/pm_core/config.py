from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

CLOB_HOST = "https://clob.polymarket.com"
GAMMA_HOST = "https://gamma-api.polymarket.com"
MARKET_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
POLYGON_CHAIN_ID = 137


def load_env_file() -> None:
    load_dotenv(override=True)


class Settings(BaseModel):
    dry_run: bool = True
    private_key: Optional[str] = None
    funder_address: Optional[str] = None
    signature_type: int = 0
    clob_host: str = CLOB_HOST
    gamma_host: str = GAMMA_HOST
    ws_url: str = MARKET_WS_URL
    chain_id: int = POLYGON_CHAIN_ID
    paper_balance: float = 100.0
    log_level: str = "INFO"

    @field_validator("dry_run", mode="before")
    def _coerce_bool(cls, v):
        if isinstance(v, bool):
            return v
        if v is None:
            return True
        return str(v).strip().lower() in {"1", "true", "yes", "on"}

    @field_validator("signature_type", mode="before")
    def _norm_signature_type(cls, v):
        # proxy ウォレット経由なら 2（POLY_GNOSIS_SAFE）、未指定は EOA
        if v in (None, ""):
            return 0
        return int(v)

    @field_validator("clob_host", "gamma_host")
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("paper_balance", mode="before")
    def _non_negative_balance(cls, v):
        if v in (None, ""):
            return 100.0
        return max(0.0, float(v))


def load_settings() -> Settings:
    load_env_file()
    funder = os.getenv("PM_FUNDER_ADDRESS") or None
    raw: dict[str, Any] = {
        "dry_run": os.getenv("DRY_RUN", "true"),
        "private_key": os.getenv("PM_PRIVATE_KEY"),
        "funder_address": funder,
        "signature_type": os.getenv("PM_SIGNATURE_TYPE") or (2 if funder else 0),
        "clob_host": os.getenv("PM_CLOB_HOST", CLOB_HOST),
        "gamma_host": os.getenv("PM_GAMMA_HOST", GAMMA_HOST),
        "ws_url": os.getenv("PM_WS_URL", MARKET_WS_URL),
        "chain_id": os.getenv("PM_CHAIN_ID", str(POLYGON_CHAIN_ID)),
        "paper_balance": os.getenv("PAPER_BALANCE_USD", "100"),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
    }
    return Settings.model_validate(raw)


def require_live_creds(settings: Settings) -> None:
    if not settings.dry_run:
        if not settings.private_key:
            raise ValueError("Live mode requires PM_PRIVATE_KEY in .env")
        if settings.signature_type != 0 and not settings.funder_address:
            raise ValueError(
                "Proxy signature type requires PM_FUNDER_ADDRESS in .env"
            )


def mask_secret(value: Optional[str], show: int = 6) -> str:
    if not value:
        return ""
    if len(value) <= show * 2:
        return "*" * len(value)
    return value[:show] + "…" + value[-show:]
