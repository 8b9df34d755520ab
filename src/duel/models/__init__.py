"""Core data models for the duel client."""

from duel.models.asset import (
    ASSETS,
    GAME_RULES,
    Asset,
    GameRules,
    Role,
    Tier,
)
from duel.models.match import (
    MatchPhase,
    MatchSnapshot,
    PlayerSlot,
    StakeRef,
)
from duel.models.secret import CommitmentSecret, PortfolioSelection

__all__ = [
    "ASSETS",
    "GAME_RULES",
    "Asset",
    "CommitmentSecret",
    "GameRules",
    "MatchPhase",
    "MatchSnapshot",
    "PlayerSlot",
    "PortfolioSelection",
    "Role",
    "StakeRef",
    "Tier",
]
