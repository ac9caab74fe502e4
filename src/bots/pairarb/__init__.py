"""Paired YES/NO up/down market position and risk control plane."""

from .capital_guard import CapitalGuard
from .config import Coin, PairArbConfig, coerce_config, load_pairarb_config
from .pnl_ledger import CloseReason, PnlLedger
from .position import MarketPosition, PositionStatus, SideAccumulator

__all__ = [
    "CapitalGuard",
    "CloseReason",
    "Coin",
    "MarketPosition",
    "PairArbConfig",
    "PnlLedger",
    "PositionStatus",
    "SideAccumulator",
    "coerce_config",
    "load_pairarb_config",
]
