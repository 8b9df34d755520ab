"""Match snapshot model — a read-through copy of the ledger's match record.

The ledger is the only writer of phase and slot data. A MatchSnapshot is
valid for one read-then-act sequence and is never cached beyond it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

ZERO_ADDRESS = "0x" + "00" * 20
ZERO_HASH = "0x" + "00" * 32


class MatchPhase(enum.IntEnum):
    """Match lifecycle phase. Values are the ledger's uint8 state codes.

    Lifecycle:
        CREATED → COMMITTED → STARTED → ENDED → SETTLED
        CREATED → CANCELLED              (creator withdraws, no opponent)
        any non-terminal → EXPIRED       (stuck-match clear or force-expire)
    """
    CREATED = 0
    COMMITTED = 1
    STARTED = 2
    ENDED = 3
    SETTLED = 4
    CANCELLED = 5
    EXPIRED = 6


TERMINAL_PHASES = frozenset({
    MatchPhase.SETTLED,
    MatchPhase.CANCELLED,
    MatchPhase.EXPIRED,
})


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison (checksum casing varies)."""
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


@dataclass(frozen=True)
class StakeRef:
    """An NFT locked as match collateral."""
    contract: str
    token_id: int


@dataclass(frozen=True)
class PlayerSlot:
    """One side of a match as the ledger reports it."""
    address: str = ZERO_ADDRESS
    stake: Optional[StakeRef] = None
    commitment: str = ZERO_HASH
    committed: bool = False
    revealed: bool = False
    score: int = 0

    @property
    def is_empty(self) -> bool:
        return same_address(self.address, ZERO_ADDRESS)


@dataclass(frozen=True)
class MatchSnapshot:
    """Ledger match record as of one read.

    Timestamps are ledger seconds. updated_at is the time of the last
    transition made by an accepted call; the natural end of the price
    window is not a call and does not move it.
    """
    match_id: int
    phase: MatchPhase
    player1: PlayerSlot
    player2: PlayerSlot
    created_at: int = 0
    started_at: int = 0
    updated_at: int = 0
    winner: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def both_committed(self) -> bool:
        return self.player1.committed and self.player2.committed

    @property
    def awaiting_opponent(self) -> bool:
        return self.phase == MatchPhase.CREATED and self.player2.is_empty

    def is_participant(self, address: str) -> bool:
        return self.slot_for(address) is not None

    def slot_for(self, address: str) -> Optional[PlayerSlot]:
        if not self.player1.is_empty and same_address(self.player1.address, address):
            return self.player1
        if not self.player2.is_empty and same_address(self.player2.address, address):
            return self.player2
        return None

    def window_ends_at(self, duration: int) -> Optional[int]:
        if self.started_at <= 0:
            return None
        return self.started_at + duration

    def outcome_for(self, address: str) -> Optional[str]:
        """"won", "lost" or "tie" once settled; None before."""
        if self.phase != MatchPhase.SETTLED or not self.is_participant(address):
            return None
        if self.winner is None or same_address(self.winner, ZERO_ADDRESS):
            return "tie"
        return "won" if same_address(self.winner, address) else "lost"
