"""Plain value types shared by the venue adapters and the strategy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class BookLevel:
    price: float
    size: float


@dataclass
class OrderBook:
    """Bids and asks for one token, each sorted best price first."""

    token_id: str
    bids: list[BookLevel] = field(default_factory=list)
    asks: list[BookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> float:
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        return self.asks[0].price if self.asks else 0.0

    def depth_at_or_above(self, price: float) -> float:
        """Cumulative bid size resting at ``price`` or better."""
        total = 0.0
        for level in self.bids:
            if level.price + 1e-9 < price:
                break
            total += level.size
        return total

    @classmethod
    def from_raw(cls, token_id: str, raw: Any) -> "OrderBook":
        data = raw or {}
        return cls(
            token_id=str(token_id),
            bids=_levels(data.get("bids"), descending=True),
            asks=_levels(data.get("asks"), descending=False),
        )


def _levels(raw: Optional[Iterable[Any]], *, descending: bool) -> list[BookLevel]:
    out: list[BookLevel] = []
    for lvl in raw or []:
        try:
            if isinstance(lvl, dict):
                px, sz = float(lvl["price"]), float(lvl["size"])
            else:
                px, sz = float(lvl[0]), float(lvl[1])
        except (KeyError, IndexError, TypeError, ValueError):
            continue
        if sz > 0:
            out.append(BookLevel(px, sz))
    # CLOB の REST は最良気配が末尾に来るため、ここで揃える
    out.sort(key=lambda l: l.price, reverse=descending)
    return out


@dataclass(frozen=True)
class PriceTick:
    token_id: str
    price: float
    ts: float


@dataclass(frozen=True)
class MarketInfo:
    """An up/down market instance resolved by discovery."""

    slug: str
    market_id: str
    yes_token: str
    no_token: str
    end_time: float
    question: str = ""

    @property
    def token_ids(self) -> tuple[str, str]:
        return (self.yes_token, self.no_token)
