"""In-process reference ledger.

Implements the Matchmaker rules the client depends on, so the full
protocol can be exercised without a chain:

- one active match per address; stakes cannot be double-locked
- create → CREATED, join → COMMITTED, start → STARTED
- STARTED becomes ENDED lazily once match_duration has elapsed
- reveal verifies the commitment, scores the portfolio against injected
  price moves, and settles once both players have revealed
- cancel only while the opponent slot is empty
- clear-stuck / force-expire once stale_after seconds have passed since
  the last accepted call; both players are detached and stakes returned

One InMemoryLedger is shared by any number of per-address clients
(InMemoryLedger.client_for), mirroring many wallets on one chain.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Callable, Optional

from duel.crypto.commitment_builder import build_commitment
from duel.errors import RejectedError, RejectReason, TransientError, ValidationError
from duel.models.asset import GAME_RULES, Role
from duel.models.match import (
    TERMINAL_PHASES,
    MatchPhase,
    MatchSnapshot,
    PlayerSlot,
    StakeRef,
    same_address,
)
from duel.models.secret import PortfolioSelection


class ManualClock:
    """Deterministic ledger clock for simulations and tests."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def __call__(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        self._now += seconds
        return self._now


@dataclass
class _Match:
    match_id: int
    phase: MatchPhase
    player1: PlayerSlot
    player2: PlayerSlot = field(default_factory=PlayerSlot)
    created_at: int = 0
    started_at: int = 0
    updated_at: int = 0
    winner: Optional[str] = None


class InMemoryLedger:
    """Shared match store with ledger-side rule enforcement."""

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        match_duration: int = GAME_RULES.match_duration,
        stale_after: int = 120,
        price_moves: Optional[dict[str, int]] = None,
        token_owners: Optional[dict[tuple[str, int], str]] = None,
    ) -> None:
        self.clock = clock or ManualClock()
        self.match_duration = match_duration
        self.stale_after = stale_after
        self.price_moves = dict(price_moves or {})
        self._matches: dict[int, _Match] = {}
        self._active: dict[str, int] = {}
        self._locked: set[tuple[str, int]] = set()
        self._token_owners = {
            (c.lower(), t): owner for (c, t), owner in (token_owners or {}).items()
        }
        self._next_id = 1
        self._failures: list[Exception] = []
        self.calls: list[tuple[str, str]] = []

    def client_for(self, address: str) -> InMemoryLedgerClient:
        return InMemoryLedgerClient(self, address)

    def fail_next(self, exc: Optional[Exception] = None) -> None:
        """Make the next call raise exc (default: a TransientError)."""
        self._failures.append(exc or TransientError("simulated network failure"))

    def mint(self, contract: str, token_id: int, owner: str) -> StakeRef:
        self._token_owners[(contract.lower(), token_id)] = owner
        return StakeRef(contract=contract, token_id=token_id)

    # -- reads ------------------------------------------------------------

    def now(self) -> int:
        self._maybe_fail()
        return self.clock()

    def get_match(self, match_id: int) -> MatchSnapshot:
        self._maybe_fail()
        m = self._get(match_id)
        self._settle_clock(m)
        return MatchSnapshot(
            match_id=m.match_id,
            phase=m.phase,
            player1=m.player1,
            player2=m.player2,
            created_at=m.created_at,
            started_at=m.started_at,
            updated_at=m.updated_at,
            winner=m.winner,
        )

    def get_active_match(self, address: str) -> Optional[int]:
        self._maybe_fail()
        return self._active.get(address.lower())

    def owned_tokens(self, address: str, scan_limit: int) -> list[int]:
        self._maybe_fail()
        return sorted(
            token_id
            for (_, token_id), owner in self._token_owners.items()
            if token_id < scan_limit and same_address(owner, address)
        )

    # -- writes -----------------------------------------------------------

    def create_match(self, caller: str, stake: StakeRef, commitment: str) -> int:
        self._maybe_fail()
        self.calls.append(("createMatch", caller))
        self._require_idle(caller)
        self._lock_stake(caller, stake)
        now = self.clock()
        match_id = self._next_id
        self._next_id += 1
        self._matches[match_id] = _Match(
            match_id=match_id,
            phase=MatchPhase.CREATED,
            player1=PlayerSlot(
                address=caller, stake=stake, commitment=commitment, committed=True,
            ),
            created_at=now,
            updated_at=now,
        )
        self._active[caller.lower()] = match_id
        return match_id

    def join_match(self, caller: str, match_id: int, stake: StakeRef, commitment: str) -> None:
        self._maybe_fail()
        self.calls.append(("joinMatch", caller))
        m = self._get(match_id)
        self._require_phase(m, MatchPhase.CREATED)
        if not m.player2.is_empty:
            raise RejectedError(RejectReason.SLOT_FILLED, "Match is full", match_id)
        if same_address(m.player1.address, caller):
            raise RejectedError(RejectReason.SLOT_FILLED, "Cannot join own match", match_id)
        self._require_idle(caller)
        self._lock_stake(caller, stake)
        m.player2 = PlayerSlot(
            address=caller, stake=stake, commitment=commitment, committed=True,
        )
        m.phase = MatchPhase.COMMITTED
        m.updated_at = self.clock()
        self._active[caller.lower()] = match_id

    def start_match(self, caller: str, match_id: int) -> None:
        self._maybe_fail()
        self.calls.append(("startMatch", caller))
        m = self._get(match_id)
        self._require_player(m, caller)
        self._require_phase(m, MatchPhase.COMMITTED)
        now = self.clock()
        m.phase = MatchPhase.STARTED
        m.started_at = now
        m.updated_at = now

    def reveal_and_settle(
        self,
        caller: str,
        match_id: int,
        portfolio: list[str],
        roles: list[int],
        salt: str,
    ) -> None:
        self._maybe_fail()
        self.calls.append(("revealAndSettle", caller))
        m = self._get(match_id)
        self._settle_clock(m)
        slot = self._require_player(m, caller)
        self._require_phase(m, MatchPhase.ENDED)
        if slot.revealed:
            raise RejectedError(RejectReason.ALREADY_REVEALED, "Already revealed", match_id)
        try:
            selection = PortfolioSelection(
                assets=tuple(portfolio), roles=tuple(Role(r) for r in roles),
            )
            recomputed = build_commitment(selection, salt)
        except (ValidationError, ValueError) as exc:
            raise RejectedError(
                RejectReason.COMMITMENT_MISMATCH, f"Invalid reveal: {exc}", match_id,
            ) from exc
        if recomputed != slot.commitment:
            raise RejectedError(
                RejectReason.COMMITMENT_MISMATCH, "Commitment mismatch", match_id,
            )

        revealed = dataclasses.replace(slot, revealed=True, score=self._score(selection))
        if slot is m.player1:
            m.player1 = revealed
        else:
            m.player2 = revealed
        m.updated_at = self.clock()

        if m.player1.revealed and m.player2.revealed:
            m.phase = MatchPhase.SETTLED
            if m.player1.score > m.player2.score:
                m.winner = m.player1.address
            elif m.player2.score > m.player1.score:
                m.winner = m.player2.address
            self._release(m)

    def cancel_match(self, caller: str, match_id: int) -> None:
        self._maybe_fail()
        self.calls.append(("cancelMatch", caller))
        m = self._get(match_id)
        if not same_address(m.player1.address, caller):
            raise RejectedError(RejectReason.NOT_PARTICIPANT, "Only creator can cancel", match_id)
        self._require_phase(m, MatchPhase.CREATED)
        if not m.player2.is_empty:
            raise RejectedError(RejectReason.SLOT_FILLED, "Opponent already joined", match_id)
        m.phase = MatchPhase.CANCELLED
        m.updated_at = self.clock()
        self._release(m)

    def clear_stuck_match(self, caller: str) -> None:
        self._maybe_fail()
        self.calls.append(("clearStuckMatch", caller))
        match_id = self._active.get(caller.lower())
        if match_id is None:
            raise RejectedError(RejectReason.NO_ACTIVE_MATCH, "No active match")
        m = self._get(match_id)
        self._expire(m)

    def force_expire_match(self, caller: str, match_id: int) -> None:
        self._maybe_fail()
        self.calls.append(("forceExpireMatch", caller))
        self._expire(self._get(match_id))

    # -- internals --------------------------------------------------------

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    def _get(self, match_id: int) -> _Match:
        m = self._matches.get(match_id)
        if m is None:
            raise RejectedError(
                RejectReason.UNKNOWN_MATCH, f"Match {match_id} does not exist", match_id,
            )
        return m

    def _settle_clock(self, m: _Match) -> None:
        if m.phase == MatchPhase.STARTED and self.clock() >= m.started_at + self.match_duration:
            m.phase = MatchPhase.ENDED

    def _require_idle(self, caller: str) -> None:
        if caller.lower() in self._active:
            raise RejectedError(
                RejectReason.ACTIVE_MATCH_EXISTS,
                f"Player already in match {self._active[caller.lower()]}",
            )

    def _require_phase(self, m: _Match, phase: MatchPhase) -> None:
        if m.phase != phase:
            raise RejectedError(
                RejectReason.WRONG_PHASE,
                f"Invalid state: {m.phase.name}, expected {phase.name}",
                m.match_id,
            )

    def _require_player(self, m: _Match, caller: str) -> PlayerSlot:
        for slot in (m.player1, m.player2):
            if not slot.is_empty and same_address(slot.address, caller):
                return slot
        raise RejectedError(RejectReason.NOT_PARTICIPANT, "Not a player", m.match_id)

    def _lock_stake(self, caller: str, stake: StakeRef) -> None:
        key = (stake.contract.lower(), stake.token_id)
        owner = self._token_owners.get(key)
        if owner is not None and not same_address(owner, caller):
            raise RejectedError(RejectReason.STAKE_UNAVAILABLE, "Not owner of stake")
        if key in self._locked:
            raise RejectedError(RejectReason.STAKE_UNAVAILABLE, "Stake already locked")
        self._locked.add(key)

    def _expire(self, m: _Match) -> None:
        if m.phase in TERMINAL_PHASES:
            raise RejectedError(
                RejectReason.ALREADY_TERMINAL, f"Match already {m.phase.name}", m.match_id,
            )
        if self.clock() - m.updated_at < self.stale_after:
            raise RejectedError(RejectReason.NOT_EXPIRED, "Match not expired", m.match_id)
        m.phase = MatchPhase.EXPIRED
        m.updated_at = self.clock()
        self._release(m)

    def _release(self, m: _Match) -> None:
        for slot in (m.player1, m.player2):
            if slot.is_empty:
                continue
            if self._active.get(slot.address.lower()) == m.match_id:
                del self._active[slot.address.lower()]
            if slot.stake is not None:
                self._locked.discard((slot.stake.contract.lower(), slot.stake.token_id))

    def _score(self, selection: PortfolioSelection) -> int:
        total = 0.0
        for symbol, role in zip(selection.assets, selection.roles):
            total += self.price_moves.get(symbol, 0) * role.multiplier
        return int(round(total))


class InMemoryLedgerClient:
    """LedgerClient bound to one address on a shared InMemoryLedger."""

    def __init__(self, ledger: InMemoryLedger, address: str) -> None:
        self._ledger = ledger
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    async def now(self) -> int:
        return self._ledger.now()

    async def get_match(self, match_id: int) -> MatchSnapshot:
        return self._ledger.get_match(match_id)

    async def get_active_match(self, address: str) -> Optional[int]:
        return self._ledger.get_active_match(address)

    async def owned_tokens(self, address: str, scan_limit: int) -> list[int]:
        return self._ledger.owned_tokens(address, scan_limit)

    async def create_match(self, stake: StakeRef, commitment: str) -> int:
        return self._ledger.create_match(self._address, stake, commitment)

    async def join_match(self, match_id: int, stake: StakeRef, commitment: str) -> None:
        self._ledger.join_match(self._address, match_id, stake, commitment)

    async def start_match(self, match_id: int) -> None:
        self._ledger.start_match(self._address, match_id)

    async def reveal_and_settle(
        self,
        match_id: int,
        portfolio: list[str],
        roles: list[int],
        salt: str,
    ) -> None:
        self._ledger.reveal_and_settle(self._address, match_id, portfolio, roles, salt)

    async def cancel_match(self, match_id: int) -> None:
        self._ledger.cancel_match(self._address, match_id)

    async def clear_stuck_match(self) -> None:
        self._ledger.clear_stuck_match(self._address)

    async def force_expire_match(self, match_id: int) -> None:
        self._ledger.force_expire_match(self._address, match_id)
