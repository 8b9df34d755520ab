"""Recovery coordinator — resolves matches that stopped making progress.

A match can stall in three ways:

1. Abandoned opponent: CREATED with the second slot still empty long
   after creation. The creator cancels and recovers the stake.
2. Stale match: no ledger call accepted for stale_after seconds in a
   non-terminal phase. A participant clears it, and anyone may
   force-expire it by id.
3. Inconsistent local state: the vault cannot back the caller's
   unrevealed commitment (lost secret, wrong secret). The only way out
   is to wait out staleness and clear the match.

Every resolving action is idempotent. Acting on a match that is already
terminal, or losing a race to another caller who resolved it first, is
reported as success with the current snapshot. After any successful
resolution the local session and secret for that match are released.

No resolving action forfeits a stake: expiry detaches both players and
returns both stakes.

A pending secret left by a timed-out create or join is not an orphan
until receipt_timeout + stale_after has passed since it was written:
the transaction may still be mined, and without the secret the match
could never be revealed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

from duel.config import DuelConfig
from duel.errors import RejectedError, RejectReason
from duel.ledger.client import LedgerClient
from duel.models.match import MatchPhase, MatchSnapshot, same_address
from duel.persistence.event_log import EventKind, EventLog
from duel.persistence.local_state import SecretVault, SessionStore
from duel.workflow.orchestrator import MatchOrchestrator, is_pending_key

logger = logging.getLogger(__name__)

# Rejections meaning "someone already resolved it".
_ALREADY_RESOLVED = frozenset({
    RejectReason.ALREADY_TERMINAL,
    RejectReason.NO_ACTIVE_MATCH,
})


class StallKind(str, enum.Enum):
    """Why a match needs recovery."""
    NONE = "none"
    ABANDONED_OPPONENT = "abandoned_opponent"
    STALE_MATCH = "stale_match"
    INCONSISTENT = "inconsistent"
    ORPHANED_SECRET = "orphaned_secret"


class RecoveryAction(str, enum.Enum):
    """What the caller can do about it right now."""
    NONE = "none"
    WAIT = "wait"
    REVEAL = "reveal"
    CANCEL = "cancel"
    CLEAR_STUCK = "clear_stuck"
    FORCE_EXPIRE = "force_expire"
    DISCARD_SECRET = "discard_secret"


@dataclass(frozen=True)
class RecoveryAssessment:
    """Result of assess().

    idle_seconds counts from the last accepted ledger call (or from
    creation for an unjoined match). wait_seconds is how long until the
    suggested action becomes available; zero when it already is.
    pending_keys name create or join secrets whose submission may still
    land; they are kept until their window passes.
    """
    kind: StallKind
    action: RecoveryAction
    match_id: Optional[int] = None
    snapshot: Optional[MatchSnapshot] = None
    idle_seconds: int = 0
    wait_seconds: int = 0
    issues: tuple[str, ...] = ()
    orphaned_keys: tuple[str, ...] = ()
    pending_keys: tuple[str, ...] = ()

    @property
    def actionable(self) -> bool:
        return self.action not in (RecoveryAction.NONE, RecoveryAction.WAIT)


class RecoveryCoordinator:
    """Detects stalled matches and drives them to a terminal phase."""

    def __init__(
        self,
        ledger: LedgerClient,
        vault: SecretVault,
        session: SessionStore,
        config: Optional[DuelConfig] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._ledger = ledger
        self._vault = vault
        self._session = session
        self._config = config or DuelConfig()
        self._event_log = event_log
        self._orchestrator = MatchOrchestrator(
            ledger, vault, session, config=self._config, event_log=event_log,
        )

    @property
    def address(self) -> str:
        return self._ledger.address

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def assess(self, match_id: Optional[int] = None) -> RecoveryAssessment:
        active = await self._ledger.get_active_match(self.address)
        target = match_id if match_id is not None else (active or self._session.get())
        if active is not None:
            self._orchestrator.adopt_pending(await self._ledger.get_match(active))
        now = await self._ledger.now()
        orphans, in_flight, pending_wait = self._sort_keys(active, now)

        if target is None:
            if orphans:
                return RecoveryAssessment(
                    StallKind.ORPHANED_SECRET, RecoveryAction.DISCARD_SECRET,
                    orphaned_keys=orphans, pending_keys=in_flight,
                )
            if in_flight:
                return RecoveryAssessment(
                    StallKind.NONE, RecoveryAction.WAIT,
                    wait_seconds=pending_wait, pending_keys=in_flight,
                )
            return RecoveryAssessment(StallKind.NONE, RecoveryAction.NONE)

        snapshot = await self._ledger.get_match(target)
        idle = max(0, now - snapshot.updated_at)
        stale_in = max(0, self._config.stale_after - idle)
        base: dict[str, Any] = dict(
            match_id=target, snapshot=snapshot, idle_seconds=idle,
            orphaned_keys=orphans, pending_keys=in_flight,
        )

        if snapshot.is_terminal:
            if self._session.get() == target or self._vault.load(target) is not None:
                return RecoveryAssessment(
                    StallKind.ORPHANED_SECRET, RecoveryAction.DISCARD_SECRET, **base,
                )
            kind = StallKind.ORPHANED_SECRET if orphans else StallKind.NONE
            action = RecoveryAction.DISCARD_SECRET if orphans else RecoveryAction.NONE
            return RecoveryAssessment(kind, action, **base)

        participant = snapshot.is_participant(self.address)
        own_active = participant and active == target

        issues = tuple(self._orchestrator.local_state_issues(snapshot)) if participant else ()
        if issues:
            action = self._stale_action(own_active) if stale_in == 0 else RecoveryAction.WAIT
            return RecoveryAssessment(
                StallKind.INCONSISTENT, action, wait_seconds=stale_in, issues=issues, **base,
            )

        if snapshot.awaiting_opponent:
            waited = max(0, now - snapshot.created_at)
            grace_in = max(0, self._config.abandon_grace - waited)
            creator = same_address(snapshot.player1.address, self.address)
            if grace_in == 0:
                action = RecoveryAction.CANCEL if creator else RecoveryAction.NONE
                base["idle_seconds"] = waited
                return RecoveryAssessment(StallKind.ABANDONED_OPPONENT, action, **base)
            action = RecoveryAction.WAIT if creator else RecoveryAction.NONE
            return RecoveryAssessment(
                StallKind.NONE, action, wait_seconds=grace_in if creator else 0, **base,
            )

        if snapshot.phase == MatchPhase.ENDED and participant:
            slot = snapshot.slot_for(self.address)
            if slot is not None and not slot.revealed:
                return RecoveryAssessment(StallKind.NONE, RecoveryAction.REVEAL, **base)

        if stale_in == 0:
            return RecoveryAssessment(
                StallKind.STALE_MATCH, self._stale_action(own_active), **base,
            )
        return RecoveryAssessment(
            StallKind.NONE,
            RecoveryAction.WAIT if participant else RecoveryAction.NONE,
            wait_seconds=stale_in if participant else 0,
            **base,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def cancel_abandoned(self, match_id: Optional[int] = None) -> MatchSnapshot:
        """Cancel the caller's unjoined match. No-op if already terminal."""
        match_id = self._target(match_id)
        snapshot = await self._ledger.get_match(match_id)
        if snapshot.is_terminal:
            self._orchestrator.release_terminal(snapshot)
            return snapshot
        try:
            return await self._orchestrator.cancel_match(match_id)
        except RejectedError as exc:
            if exc.reason not in _ALREADY_RESOLVED:
                raise
        return await self._settled_by_race(match_id, EventKind.MATCH_CANCELLED)

    async def clear_stuck_match(self) -> Optional[MatchSnapshot]:
        """Expire the caller's own stale active match.

        Returns the terminal snapshot, or None when the caller has no
        active match on the ledger (stale local session is released).
        """
        active = await self._ledger.get_active_match(self.address)
        if active is None:
            await self._release_stale_session()
            return None

        await self._resolve("clearStuckMatch", active, self._ledger.clear_stuck_match())
        snapshot = await self._ledger.get_match(active)
        self._orchestrator.release_terminal(snapshot, quiet=True)
        self._record(EventKind.STUCK_MATCH_CLEARED, active, phase=snapshot.phase.name)
        logger.info("Cleared stuck match %s (%s)", active, snapshot.phase.name)
        return snapshot

    async def force_expire(self, match_id: int) -> MatchSnapshot:
        """Expire any stale match by id; callable by third parties."""
        snapshot = await self._ledger.get_match(match_id)
        if snapshot.is_terminal:
            self._orchestrator.release_terminal(snapshot)
            return snapshot

        await self._resolve(
            "forceExpireMatch", match_id, self._ledger.force_expire_match(match_id),
        )
        snapshot = await self._ledger.get_match(match_id)
        self._orchestrator.release_terminal(snapshot, quiet=True)
        self._record(EventKind.MATCH_FORCE_EXPIRED, match_id, phase=snapshot.phase.name)
        logger.info("Force-expired match %s (%s)", match_id, snapshot.phase.name)
        return snapshot

    async def discard_orphaned_secret(self, key: Optional[str] = None) -> list[str]:
        """Drop vault entries that no longer back a live commitment.

        Never discarded, even when named explicitly: the secret backing
        the caller's active unrevealed commitment, and a pending secret
        whose create or join submission may still land.
        """
        active = await self._ledger.get_active_match(self.address)
        if active is not None:
            snapshot = await self._ledger.get_match(active)
            self._orchestrator.adopt_pending(snapshot)
        orphans, in_flight, _ = self._sort_keys(active, await self._ledger.now())
        if in_flight:
            logger.info("Keeping pending secrets that may still land: %s", ", ".join(in_flight))
        if active is not None:
            slot = snapshot.slot_for(self.address)
            if slot is not None and slot.revealed and self._vault.load(active) is not None:
                orphans += (str(active),)
        elif self._session.get() is not None:
            await self._release_stale_session()

        targets = [k for k in orphans if key is None or k == key]
        for k in targets:
            self._vault.clear(k)
            self._record(EventKind.SECRET_DISCARDED, None, key=k)
            logger.info("Discarded orphaned secret %s", k)
        return targets

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _target(self, match_id: Optional[int]) -> int:
        if match_id is None:
            match_id = self._session.get()
        if match_id is None:
            raise RejectedError(RejectReason.NO_ACTIVE_MATCH, "No active match")
        return match_id

    @staticmethod
    def _stale_action(own_active: bool) -> RecoveryAction:
        return RecoveryAction.CLEAR_STUCK if own_active else RecoveryAction.FORCE_EXPIRE

    def _sort_keys(
        self, active: Optional[int], now: int,
    ) -> tuple[tuple[str, ...], tuple[str, ...], int]:
        """Split vault keys into orphans and pending submissions still in flight.

        A pending secret stays in flight for receipt_timeout + stale_after
        seconds after it was written. Returns (orphans, in_flight,
        seconds until the first in-flight key ages out).
        """
        keep = str(active) if active is not None else None
        window = int(self._config.receipt_timeout) + self._config.stale_after
        orphans: list[str] = []
        in_flight: list[str] = []
        remaining: list[int] = []
        for key in self._vault.keys():
            if key == keep:
                continue
            if is_pending_key(key):
                secret = self._vault.load(key)
                created_at = secret.created_at if secret is not None else None
                if created_at is not None and now - created_at < window:
                    in_flight.append(key)
                    remaining.append(created_at + window - now)
                    continue
            orphans.append(key)
        return tuple(orphans), tuple(in_flight), min(remaining, default=0)

    async def _resolve(self, label: str, match_id: int, call: Awaitable[None]) -> None:
        try:
            await call
        except RejectedError as exc:
            if exc.reason not in _ALREADY_RESOLVED:
                logger.warning("%s rejected for match %s: %s", label, match_id, exc)
                raise
            logger.info("%s: match %s already resolved (%s)", label, match_id, exc.reason.value)

    async def _settled_by_race(self, match_id: int, kind: EventKind) -> MatchSnapshot:
        snapshot = await self._ledger.get_match(match_id)
        self._orchestrator.release_terminal(snapshot, quiet=True)
        self._record(kind, match_id, phase=snapshot.phase.name)
        return snapshot

    async def _release_stale_session(self) -> None:
        local = self._session.get()
        if local is None:
            return
        snapshot = await self._ledger.get_match(local)
        if snapshot.is_terminal or not snapshot.is_participant(self.address):
            self._orchestrator.release_terminal(snapshot)

    def _record(self, kind: EventKind, match_id: Optional[int], **payload: Any) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, self.address, match_id, **payload)
