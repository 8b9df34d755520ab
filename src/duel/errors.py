"""Error taxonomy for the duel client.

Every failure the orchestrator reports falls into one of four classes so
the caller can decide between fixing the selection, retrying, correcting
a protocol mistake, or running a recovery action:

- ValidationError: local rule violation, never reaches the ledger.
- TransientError: network or timeout failure, safe to retry.
- RejectedError: the ledger (or a local pre-check mirroring it) declined
  the call for a protocol reason.
- InconsistentError: local persisted state contradicts the ledger.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from duel.portfolio.validator import Violation


class RejectReason(str, enum.Enum):
    """Protocol reasons a ledger call is declined."""
    WRONG_PHASE = "wrong_phase"
    ACTIVE_MATCH_EXISTS = "active_match_exists"
    SLOT_FILLED = "slot_filled"
    NOT_PARTICIPANT = "not_participant"
    COMMITMENT_MISMATCH = "commitment_mismatch"
    ALREADY_REVEALED = "already_revealed"
    NOT_EXPIRED = "not_expired"
    ALREADY_TERMINAL = "already_terminal"
    NO_ACTIVE_MATCH = "no_active_match"
    STAKE_UNAVAILABLE = "stake_unavailable"
    UNKNOWN_MATCH = "unknown_match"
    UNKNOWN = "unknown"


class DuelError(Exception):
    """Base class for all duel client failures."""

    retryable: bool = False


class ValidationError(DuelError):
    """Portfolio selection broke one or more local rules."""

    def __init__(self, violations: list["Violation"]) -> None:
        self.violations = list(violations)
        detail = "; ".join(v.message for v in self.violations)
        super().__init__(f"Invalid portfolio: {detail}")

    @property
    def kinds(self) -> list:
        return [v.kind for v in self.violations]


class TransientError(DuelError):
    """Network or timeout failure talking to the ledger."""

    retryable = True


class RejectedError(DuelError):
    """The ledger declined a call for a protocol reason."""

    def __init__(
        self,
        reason: RejectReason,
        message: str,
        match_id: Optional[int] = None,
    ) -> None:
        self.reason = reason
        self.match_id = match_id
        super().__init__(f"[{reason.value}] {message}")


class InconsistentError(DuelError):
    """Local persisted state disagrees with the ledger snapshot."""

    def __init__(self, message: str, match_id: Optional[int] = None) -> None:
        self.match_id = match_id
        super().__init__(message)


# Substrings of revert messages mapped to reject reasons. First match wins.
_REVERT_PATTERNS: tuple[tuple[str, RejectReason], ...] = (
    ("no active", RejectReason.NO_ACTIVE_MATCH),
    ("already in", RejectReason.ACTIVE_MATCH_EXISTS),
    ("active match", RejectReason.ACTIVE_MATCH_EXISTS),
    ("full", RejectReason.SLOT_FILLED),
    ("slot", RejectReason.SLOT_FILLED),
    ("mismatch", RejectReason.COMMITMENT_MISMATCH),
    ("invalid commit", RejectReason.COMMITMENT_MISMATCH),
    ("already revealed", RejectReason.ALREADY_REVEALED),
    ("not expired", RejectReason.NOT_EXPIRED),
    ("too early", RejectReason.NOT_EXPIRED),
    ("already expired", RejectReason.ALREADY_TERMINAL),
    ("already settled", RejectReason.ALREADY_TERMINAL),
    ("terminal", RejectReason.ALREADY_TERMINAL),
    ("not a player", RejectReason.NOT_PARTICIPANT),
    ("not player", RejectReason.NOT_PARTICIPANT),
    ("unauthorized", RejectReason.NOT_PARTICIPANT),
    ("not owner", RejectReason.STAKE_UNAVAILABLE),
    ("not approved", RejectReason.STAKE_UNAVAILABLE),
    ("does not exist", RejectReason.UNKNOWN_MATCH),
    ("invalid state", RejectReason.WRONG_PHASE),
    ("wrong state", RejectReason.WRONG_PHASE),
    ("not started", RejectReason.WRONG_PHASE),
    ("not ended", RejectReason.WRONG_PHASE),
)


def classify_revert(message: str) -> RejectReason:
    """Classify a ledger revert message into a RejectReason."""
    lowered = message.lower()
    for needle, reason in _REVERT_PATTERNS:
        if needle in lowered:
            return reason
    return RejectReason.UNKNOWN
