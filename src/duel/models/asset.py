"""Asset catalog and game rules.

The catalog is static reference data: immutable for the lifetime of the
process. Costs drive the selection budget; tiers are display ordinals.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping


class Tier(str, enum.Enum):
    """Asset tier, A (most expensive) to E."""
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"


class Role(enum.IntEnum):
    """Portfolio role. Values are the ledger's uint8 role codes."""
    REGULAR = 0
    CO_LEADER = 1
    LEADER = 2

    @property
    def multiplier(self) -> float:
        return ROLE_MULTIPLIERS[self]


ROLE_MULTIPLIERS: Mapping[Role, float] = MappingProxyType({
    Role.REGULAR: 1.0,
    Role.CO_LEADER: 1.5,
    Role.LEADER: 2.0,
})


@dataclass(frozen=True)
class GameRules:
    """Fixed parameters of a duel."""
    required_assets: int = 7
    max_budget: int = 100
    match_duration: int = 120  # seconds of price window


GAME_RULES = GameRules()


@dataclass(frozen=True)
class Asset:
    """A tradable asset that can be drafted into a portfolio."""
    symbol: str
    name: str
    cost: int
    tier: Tier


def _catalog(*rows: tuple[str, str, int, str]) -> Mapping[str, Asset]:
    return MappingProxyType({
        symbol: Asset(symbol=symbol, name=name, cost=cost, tier=Tier(tier))
        for symbol, name, cost, tier in rows
    })


ASSETS: Mapping[str, Asset] = _catalog(
    ("BTC", "Bitcoin", 30, "A"),
    ("ETH", "Ethereum", 25, "A"),
    ("SOL", "Solana", 18, "A"),
    ("BNB", "BNB", 16, "B"),
    ("AVAX", "Avalanche", 12, "B"),
    ("XRP", "Ripple", 12, "B"),
    ("ADA", "Cardano", 10, "C"),
    ("MATIC", "Polygon", 10, "C"),
    ("NEAR", "NEAR Protocol", 10, "C"),
    ("DOGE", "Dogecoin", 9, "D"),
    ("TRX", "Tron", 8, "D"),
    ("SUI", "Sui", 8, "D"),
    ("ASTAR", "Astar", 7, "E"),
    ("SHIB", "Shiba Inu", 6, "E"),
    ("PEPE", "Pepe", 5, "E"),
    ("HYPE", "Hype", 5, "E"),
    ("DOT", "Polkadot", 10, "C"),
    ("APT", "Aptos", 9, "D"),
)


def portfolio_cost(symbols: list[str] | tuple[str, ...]) -> int:
    """Sum of catalog costs. Unknown symbols contribute nothing."""
    return sum(ASSETS[s].cost for s in symbols if s in ASSETS)
