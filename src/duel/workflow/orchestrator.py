"""Match orchestrator — drives one participant through a duel.

The orchestrator is the coordination layer between the portfolio rules,
the commitment builder, the local secret vault and session, and the
ledger. It never owns match state: the ledger does. Every action is a
read-then-act sequence:

1. Read a fresh snapshot.
2. Refuse locally if the ledger would certainly reject (wrong phase,
   slot filled, not a participant).
3. Submit.
4. Re-read until the snapshot confirms the transition, or report a
   TransientError if it never does.

Secret handling:
- The secret is written to the vault BEFORE the commitment is submitted,
  under a pending key derived from the commitment. A crash mid-submit
  therefore never loses it; resume() adopts it once the ledger shows the
  matching commitment.
- After confirmation it is re-keyed by match id and the session is set.
- It is read back at reveal, checked against the ledger's stored
  commitment, and cleared once the ledger shows it revealed.

Failure handling:
- RejectedError: the attempt's pending secret is dropped; nothing else
  changes.
- TransientError: the pending secret is kept (the call may have landed).
- InconsistentError: raised when local state contradicts the ledger;
  the RecoveryCoordinator decides what to do with it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, ContextManager, Optional

from duel.config import DuelConfig
from duel.countdown.timers import Countdown, Sleeper, WaitingCounter
from duel.crypto.commitment_builder import build_commitment, commitment_of, generate_salt
from duel.engine.state_machine import MatchStateMachine
from duel.errors import InconsistentError, RejectedError, RejectReason, TransientError
from duel.ledger.client import LedgerClient
from duel.models.match import MatchPhase, MatchSnapshot, StakeRef, same_address
from duel.models.secret import CommitmentSecret, PortfolioSelection
from duel.persistence.event_log import EventKind, EventLog
from duel.persistence.local_state import PENDING_KEY, SecretVault, SessionStore
from duel.portfolio.validator import PortfolioValidator, ValidationResult

logger = logging.getLogger(__name__)

TickCallback = Callable[[str, int], None]


def pending_key(commitment: str) -> str:
    """Vault key for a secret whose submission is not yet confirmed."""
    return f"{PENDING_KEY}-{commitment[2:18]}"


def is_pending_key(key: str) -> bool:
    return key.startswith(PENDING_KEY)


class MatchOrchestrator:
    """Commit-reveal protocol driver for one participant.

    Usage:
        orch = MatchOrchestrator(ledger, vault=store, session=store)
        await orch.resume()
        snapshot = await orch.create_match(selection, stake)
        await orch.watch(snapshot.match_id)   # start, countdown, reveal
    """

    def __init__(
        self,
        ledger: LedgerClient,
        vault: SecretVault,
        session: SessionStore,
        config: Optional[DuelConfig] = None,
        event_log: Optional[EventLog] = None,
        validator: Optional[PortfolioValidator] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._ledger = ledger
        self._vault = vault
        self._session = session
        self._config = config or DuelConfig()
        self._event_log = event_log
        self._validator = validator or PortfolioValidator()
        self._sleep = sleep or asyncio.sleep
        self._reveal_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._ledger.address

    @property
    def active_match_id(self) -> Optional[int]:
        return self._session.get()

    def validate(self, selection: PortfolioSelection) -> ValidationResult:
        """Live feedback for a draft; never touches the ledger."""
        return self._validator.validate(selection)

    # ------------------------------------------------------------------
    # Session reconciliation
    # ------------------------------------------------------------------

    async def resume(self) -> Optional[MatchSnapshot]:
        """Re-derive the local view from the ledger on process start.

        Returns the active match snapshot, or None if the caller is not
        bound to any match. Raises InconsistentError if the vault cannot
        back the caller's unrevealed commitment.
        """
        ledger_id = await self._ledger.get_active_match(self.address)
        local_id = self._session.get()

        if ledger_id is None:
            if local_id is None:
                return None
            snapshot = await self._ledger.get_match(local_id)
            if snapshot.is_terminal or not snapshot.is_participant(self.address):
                logger.info("Dropping stale session for match %s (%s)", local_id, snapshot.phase.name)
                self._release_local(local_id)
                self._record(EventKind.SESSION_RESUMED, local_id, outcome="stale_cleared")
                return None
            self._record(EventKind.INCONSISTENCY_DETECTED, local_id, issue="ledger_not_bound")
            raise InconsistentError(
                f"Session holds match {local_id} but the ledger binds no active match",
                local_id,
            )

        if local_id is not None and local_id != ledger_id:
            logger.warning("Session held match %s but ledger binds %s", local_id, ledger_id)
            old = await self._ledger.get_match(local_id)
            if old.is_terminal:
                self._vault.clear(local_id)

        snapshot = await self._ledger.get_match(ledger_id)
        self._session.set(ledger_id)
        self.adopt_pending(snapshot)
        self._ensure_consistent(snapshot)
        self._record(EventKind.SESSION_RESUMED, ledger_id, phase=snapshot.phase.name)
        return snapshot

    def local_state_issues(self, snapshot: MatchSnapshot) -> list[str]:
        """Ways the local vault contradicts this snapshot (empty = OK)."""
        issues: list[str] = []
        secret = self._vault.load(snapshot.match_id)
        slot = snapshot.slot_for(self.address)

        if slot is None:
            if secret is not None:
                issues.append(
                    f"Secret held for match {snapshot.match_id} where caller has no slot"
                )
            return issues
        if snapshot.is_terminal or slot.revealed:
            return issues
        if slot.committed and secret is None:
            issues.append(
                f"No secret held for the caller's commitment in match {snapshot.match_id}"
            )
        elif secret is not None and not slot.committed:
            issues.append(
                f"Secret held but ledger shows no commitment in match {snapshot.match_id}"
            )
        elif secret is not None and commitment_of(secret) != slot.commitment:
            issues.append(
                f"Held secret does not reproduce the commitment in match {snapshot.match_id}"
            )
        return issues

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_match(
        self,
        selection: PortfolioSelection,
        stake: StakeRef,
    ) -> MatchSnapshot:
        """Commit a portfolio and open a new match. → CREATED"""
        await self._require_idle()
        secret = self._prepare_secret(selection, await self._ledger.now())
        commitment = build_commitment(secret.selection, secret.salt, self._validator)
        key = pending_key(commitment)
        self._vault.store(key, secret)

        try:
            match_id = await self._submit(
                "createMatch", None, self._ledger.create_match(stake, commitment),
            )
        except RejectedError:
            self._vault.clear(key)
            raise

        snapshot = await self._confirm(
            match_id,
            "createMatch",
            lambda s: _holds_commitment(s, self.address, commitment),
        )
        self._bind(match_id, key, secret)
        self._record(
            EventKind.MATCH_CREATED, match_id,
            commitment=commitment, stake_contract=stake.contract, stake_token=stake.token_id,
        )
        logger.info("Created match %s", match_id)
        return snapshot

    async def join_match(
        self,
        match_id: int,
        selection: PortfolioSelection,
        stake: StakeRef,
    ) -> MatchSnapshot:
        """Commit a portfolio into an open match. → COMMITTED"""
        await self._require_idle()
        snapshot = await self._ledger.get_match(match_id)
        self._require_transition(snapshot, MatchPhase.COMMITTED)
        if not snapshot.player2.is_empty:
            raise RejectedError(RejectReason.SLOT_FILLED, "Match is full", match_id)
        if same_address(snapshot.player1.address, self.address):
            raise RejectedError(RejectReason.SLOT_FILLED, "Cannot join own match", match_id)

        secret = self._prepare_secret(selection, await self._ledger.now())
        commitment = build_commitment(secret.selection, secret.salt, self._validator)
        key = pending_key(commitment)
        self._vault.store(key, secret)

        try:
            await self._submit(
                "joinMatch", match_id, self._ledger.join_match(match_id, stake, commitment),
            )
        except RejectedError:
            self._vault.clear(key)
            raise

        snapshot = await self._confirm(
            match_id,
            "joinMatch",
            lambda s: (
                MatchStateMachine.has_reached(s.phase, MatchPhase.COMMITTED)
                and _holds_commitment(s, self.address, commitment)
            ),
        )
        self._bind(match_id, key, secret)
        self._record(
            EventKind.MATCH_JOINED, match_id,
            commitment=commitment, stake_contract=stake.contract, stake_token=stake.token_id,
        )
        logger.info("Joined match %s", match_id)
        return snapshot

    async def start_match(self, match_id: Optional[int] = None) -> MatchSnapshot:
        """Open the price window once both players have committed. → STARTED"""
        match_id = self._resolve(match_id)
        snapshot = await self._ledger.get_match(match_id)
        self._require_participant(snapshot)
        if snapshot.phase in (MatchPhase.STARTED, MatchPhase.ENDED):
            return snapshot
        self._require_transition(snapshot, MatchPhase.STARTED)
        if not snapshot.both_committed:
            raise RejectedError(
                RejectReason.WRONG_PHASE, "Both players must commit before start", match_id,
            )

        await self._submit("startMatch", match_id, self._ledger.start_match(match_id))
        snapshot = await self._confirm(
            match_id,
            "startMatch",
            lambda s: s.phase in (MatchPhase.STARTED, MatchPhase.ENDED),
        )
        self._record(EventKind.MATCH_STARTED, match_id, started_at=snapshot.started_at)
        logger.info("Started match %s at %s", match_id, snapshot.started_at)
        return snapshot

    async def reveal(self, match_id: Optional[int] = None) -> MatchSnapshot:
        """Reveal the held secret once the ledger reports the window ended.

        → SETTLED when the opponent has already revealed; otherwise the
        match stays ENDED with the caller marked revealed.
        """
        match_id = self._resolve(match_id)
        async with self._reveal_lock:
            snapshot = await self._ledger.get_match(match_id)
            slot = self._require_participant(snapshot)

            if snapshot.phase == MatchPhase.SETTLED:
                self.release_terminal(snapshot)
                return snapshot
            if snapshot.is_terminal:
                self.release_terminal(snapshot)
                raise RejectedError(
                    RejectReason.ALREADY_TERMINAL,
                    f"Match {match_id} is {snapshot.phase.name}", match_id,
                )
            if snapshot.phase != MatchPhase.ENDED:
                raise RejectedError(
                    RejectReason.WRONG_PHASE,
                    f"Reveal needs ENDED, ledger reports {snapshot.phase.name}", match_id,
                )
            if slot.revealed:
                self._vault.clear(match_id)
                return snapshot

            secret = self._vault.load(match_id)
            if secret is None:
                self._record(EventKind.INCONSISTENCY_DETECTED, match_id, issue="secret_missing")
                raise InconsistentError(
                    f"No secret held for match {match_id}; reveal impossible", match_id,
                )
            if commitment_of(secret) != slot.commitment:
                self._record(EventKind.INCONSISTENCY_DETECTED, match_id, issue="secret_mismatch")
                raise InconsistentError(
                    f"Held secret does not reproduce the commitment of match {match_id}",
                    match_id,
                )

            await self._submit(
                "revealAndSettle",
                match_id,
                self._ledger.reveal_and_settle(
                    match_id,
                    list(secret.selection.assets),
                    secret.selection.role_codes(),
                    secret.salt,
                ),
            )
            snapshot = await self._confirm(
                match_id,
                "revealAndSettle",
                lambda s: _revealed(s, self.address) or s.phase == MatchPhase.SETTLED,
            )
            self._vault.clear(match_id)
            self._record(EventKind.REVEAL_SUBMITTED, match_id, phase=snapshot.phase.name)
            logger.info("Revealed in match %s (%s)", match_id, snapshot.phase.name)
            if snapshot.phase == MatchPhase.SETTLED:
                self.release_terminal(snapshot)
            return snapshot

    async def cancel_match(self, match_id: Optional[int] = None) -> MatchSnapshot:
        """Withdraw an unjoined match and recover the stake. → CANCELLED"""
        match_id = self._resolve(match_id)
        snapshot = await self._ledger.get_match(match_id)
        if snapshot.phase == MatchPhase.CANCELLED:
            self.release_terminal(snapshot)
            return snapshot
        if not same_address(snapshot.player1.address, self.address):
            raise RejectedError(RejectReason.NOT_PARTICIPANT, "Only the creator can cancel", match_id)
        self._require_transition(snapshot, MatchPhase.CANCELLED)
        if not snapshot.player2.is_empty:
            raise RejectedError(RejectReason.SLOT_FILLED, "Opponent already joined", match_id)

        await self._submit("cancelMatch", match_id, self._ledger.cancel_match(match_id))
        snapshot = await self._confirm(
            match_id, "cancelMatch", lambda s: s.phase == MatchPhase.CANCELLED,
        )
        self.release_terminal(snapshot)
        logger.info("Cancelled match %s", match_id)
        return snapshot

    async def refresh(self, match_id: Optional[int] = None) -> MatchSnapshot:
        return await self._ledger.get_match(self._resolve(match_id))

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def watch(
        self,
        match_id: Optional[int] = None,
        on_tick: Optional[TickCallback] = None,
        auto_start: bool = False,
        auto_reveal: bool = True,
        max_polls: Optional[int] = None,
    ) -> MatchSnapshot:
        """Poll the ledger until the match is terminal (or max_polls).

        Runs the waiting counter while CREATED without an opponent and the
        countdown while STARTED; each is cancelled as soon as its phase is
        left. Both tick once per second. The countdown reaching zero only
        flags a reveal attempt, which this loop makes itself; reveal()
        re-reads the ledger before submitting.
        """
        match_id = self._resolve(match_id)
        countdown: Optional[Countdown] = None
        waiting: Optional[WaitingCounter] = None
        reveal_due = False
        polls = 0

        def tick(kind: str) -> Callable[[int], None]:
            return lambda value: on_tick(kind, value) if on_tick else None

        async def window_closed() -> None:
            nonlocal reveal_due
            reveal_due = True

        try:
            while True:
                snapshot = await self._ledger.get_match(match_id)
                polls += 1

                if snapshot.awaiting_opponent:
                    if waiting is None:
                        elapsed = await self._ledger.now() - snapshot.created_at
                        waiting = WaitingCounter(
                            elapsed, tick("waiting"), interval=1.0, sleep=self._sleep,
                        )
                        waiting.start()
                elif waiting is not None:
                    waiting.cancel()
                    waiting = None

                if snapshot.phase == MatchPhase.STARTED:
                    if countdown is None:
                        ends_at = snapshot.window_ends_at(self._config.match_duration)
                        remaining = ends_at - await self._ledger.now()
                        countdown = Countdown(
                            remaining, tick("countdown"),
                            on_expire=window_closed, interval=1.0, sleep=self._sleep,
                        )
                        countdown.start()
                elif countdown is not None:
                    countdown.cancel()
                    countdown = None

                if snapshot.is_terminal:
                    self.release_terminal(snapshot)
                    return snapshot

                if (
                    auto_start
                    and snapshot.phase == MatchPhase.COMMITTED
                    and snapshot.both_committed
                ):
                    snapshot = await self._try(self.start_match(match_id)) or snapshot

                if auto_reveal and (reveal_due or snapshot.phase == MatchPhase.ENDED):
                    reveal_due = False
                    slot = snapshot.slot_for(self.address)
                    if slot is not None and not slot.revealed:
                        await self._attempt_reveal(match_id)

                if max_polls is not None and polls >= max_polls:
                    return snapshot
                await self._sleep(self._config.poll_interval)
        finally:
            if countdown is not None:
                countdown.cancel()
            if waiting is not None:
                waiting.cancel()

    async def _attempt_reveal(self, match_id: int) -> None:
        await self._try(self.reveal(match_id))

    async def _try(self, call: Awaitable[MatchSnapshot]) -> Optional[MatchSnapshot]:
        """Run a phase-dependent action the ledger may not be ready for."""
        try:
            return await call
        except RejectedError as exc:
            if exc.reason not in (RejectReason.WRONG_PHASE, RejectReason.ALREADY_REVEALED):
                raise
            logger.debug("Action not ready yet: %s", exc)
        except TransientError as exc:
            logger.warning("Transient failure in watch loop: %s", exc)
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, match_id: Optional[int]) -> int:
        if match_id is None:
            match_id = self._session.get()
        if match_id is None:
            raise RejectedError(RejectReason.NO_ACTIVE_MATCH, "No active match")
        return match_id

    async def _require_idle(self) -> None:
        active = await self._ledger.get_active_match(self.address)
        if active is not None:
            raise RejectedError(
                RejectReason.ACTIVE_MATCH_EXISTS, f"Already in match {active}", active,
            )
        if self._session.get() is not None:
            await self.resume()

    def _require_participant(self, snapshot: MatchSnapshot):
        slot = snapshot.slot_for(self.address)
        if slot is None:
            raise RejectedError(
                RejectReason.NOT_PARTICIPANT,
                f"{self.address} is not a player in match {snapshot.match_id}",
                snapshot.match_id,
            )
        return slot

    @staticmethod
    def _require_transition(snapshot: MatchSnapshot, target: MatchPhase) -> None:
        errors = MatchStateMachine.validate_transition(snapshot.phase, target)
        if errors:
            reason = (
                RejectReason.ALREADY_TERMINAL
                if MatchStateMachine.is_terminal(snapshot.phase)
                else RejectReason.WRONG_PHASE
            )
            raise RejectedError(reason, errors[0], snapshot.match_id)

    def _prepare_secret(self, selection: PortfolioSelection, now: int) -> CommitmentSecret:
        self._validator.validate(selection).raise_if_invalid()
        return CommitmentSecret(selection=selection, salt=generate_salt(), created_at=now)

    async def _submit(self, label: str, match_id: Optional[int], call: Awaitable[Any]) -> Any:
        try:
            return await call
        except RejectedError as exc:
            logger.warning("%s rejected: %s", label, exc)
            self._record(
                EventKind.SUBMISSION_FAILED, match_id,
                action=label, category="rejected", reason=exc.reason.value, error=str(exc),
            )
            raise
        except TransientError as exc:
            logger.warning("%s transient failure: %s", label, exc)
            self._record(
                EventKind.SUBMISSION_FAILED, match_id,
                action=label, category="transient", error=str(exc),
            )
            raise

    async def _confirm(
        self,
        match_id: int,
        label: str,
        predicate: Callable[[MatchSnapshot], bool],
    ) -> MatchSnapshot:
        attempts = max(1, self._config.confirm_attempts)
        for attempt in range(attempts):
            snapshot = await self._ledger.get_match(match_id)
            if predicate(snapshot):
                return snapshot
            if attempt + 1 < attempts:
                logger.debug("%s not yet visible for match %s, re-reading", label, match_id)
                await self._sleep(self._config.confirm_interval)
        raise TransientError(
            f"{label} for match {match_id} not confirmed after {attempts} reads"
        )

    def _bind(self, match_id: int, key: str, secret: CommitmentSecret) -> None:
        with self._local_batch():
            self._vault.store(match_id, secret)
            self._vault.clear(key)
            self._session.set(match_id)

    def _local_batch(self) -> ContextManager[Any]:
        # One write when the vault and session share a backing file.
        batch = getattr(self._vault, "batch", None)
        if batch is not None and self._vault is self._session:
            return batch()
        return contextlib.nullcontext()

    def adopt_pending(self, snapshot: MatchSnapshot) -> None:
        """Re-key a pending secret that matches the caller's ledger commitment."""
        slot = snapshot.slot_for(self.address)
        if slot is None or not slot.committed or slot.revealed:
            return
        if self._vault.load(snapshot.match_id) is not None:
            return
        for key in self._vault.keys():
            if not is_pending_key(key):
                continue
            secret = self._vault.load(key)
            if secret is not None and commitment_of(secret) == slot.commitment:
                self._bind(snapshot.match_id, key, secret)
                self._record(EventKind.SECRET_ADOPTED, snapshot.match_id, pending_key=key)
                logger.info("Adopted pending secret %s for match %s", key, snapshot.match_id)
                return

    def _ensure_consistent(self, snapshot: MatchSnapshot) -> None:
        issues = self.local_state_issues(snapshot)
        if issues:
            self._record(EventKind.INCONSISTENCY_DETECTED, snapshot.match_id, issues=issues)
            raise InconsistentError("; ".join(issues), snapshot.match_id)

    def release_terminal(self, snapshot: MatchSnapshot, quiet: bool = False) -> None:
        """Release local state for a terminal match (idempotent)."""
        held = self._session.get() == snapshot.match_id
        had_secret = self._vault.load(snapshot.match_id) is not None
        if not held and not had_secret:
            return
        self._release_local(snapshot.match_id)
        if quiet:
            return
        kind = {
            MatchPhase.SETTLED: EventKind.MATCH_SETTLED,
            MatchPhase.CANCELLED: EventKind.MATCH_CANCELLED,
        }.get(snapshot.phase, EventKind.MATCH_FORCE_EXPIRED)
        self._record(
            kind, snapshot.match_id,
            phase=snapshot.phase.name, outcome=snapshot.outcome_for(self.address),
        )

    def _release_local(self, match_id: int) -> None:
        if self._session.get() == match_id:
            self._session.clear()
        self._vault.clear(match_id)

    def _record(self, kind: EventKind, match_id: Optional[int], **payload: Any) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, self.address, match_id, **payload)


def _holds_commitment(snapshot: MatchSnapshot, address: str, commitment: str) -> bool:
    slot = snapshot.slot_for(address)
    return slot is not None and slot.committed and slot.commitment.lower() == commitment.lower()


def _revealed(snapshot: MatchSnapshot, address: str) -> bool:
    slot = snapshot.slot_for(address)
    return slot is not None and slot.revealed
