"""Ledger client contract — the RPC surface of the match ledger.

The orchestrator never talks to a chain directly; it talks to this
Protocol. Implementations are pure façades: they translate calls into
transport requests and ledger records into MatchSnapshots, and they
classify failures (TransientError / RejectedError), but they apply no
business rules of their own.

Write completion is not ledger-side success. Callers confirm the
resulting phase with a fresh get_match / get_active_match.

Adding a transport = implement this Protocol. Zero changes to the
orchestrator or the recovery coordinator.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from duel.models.match import MatchSnapshot, StakeRef


@runtime_checkable
class LedgerClient(Protocol):

    @property
    def address(self) -> str:
        """Address of the participant this client signs for."""
        ...

    async def now(self) -> int:
        """Current ledger time in seconds."""
        ...

    # -- reads ------------------------------------------------------------

    async def get_match(self, match_id: int) -> MatchSnapshot:
        ...

    async def get_active_match(self, address: str) -> Optional[int]:
        """Active match id bound to address, or None."""
        ...

    async def owned_tokens(self, address: str, scan_limit: int) -> list[int]:
        """Stake token ids owned by address among ids 0..scan_limit-1."""
        ...

    # -- writes -----------------------------------------------------------

    async def create_match(self, stake: StakeRef, commitment: str) -> int:
        """Submit a new match; returns the ledger-assigned id."""
        ...

    async def join_match(self, match_id: int, stake: StakeRef, commitment: str) -> None:
        ...

    async def start_match(self, match_id: int) -> None:
        ...

    async def reveal_and_settle(
        self,
        match_id: int,
        portfolio: list[str],
        roles: list[int],
        salt: str,
    ) -> None:
        ...

    async def cancel_match(self, match_id: int) -> None:
        ...

    async def clear_stuck_match(self) -> None:
        """Detach the caller from its own active match."""
        ...

    async def force_expire_match(self, match_id: int) -> None:
        ...
