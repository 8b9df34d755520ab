"""Match state machine — the valid phase transitions of a duel.

Lifecycle:
    CREATED → COMMITTED → STARTED → ENDED → SETTLED
    CREATED → CANCELLED
    Any non-terminal state → EXPIRED

Phase semantics:
- CREATED: creator committed and staked, opponent slot empty.
- COMMITTED: both players committed, waiting for an explicit start.
- STARTED: price window running, origin timestamped by the ledger.
- ENDED: window elapsed, waiting for reveals.
- SETTLED: terminal, both revealed, scored and paid out.
- CANCELLED: terminal, creator withdrew before an opponent joined.
- EXPIRED: terminal, cleared as stuck; stakes returned.

The ledger owns the phase. This table is the client's copy of the rules,
used to refuse a submission that the ledger would certainly reject.
Fail-closed: there are no implicit transitions.
"""

from __future__ import annotations

from duel.models.match import TERMINAL_PHASES, MatchPhase


_TRANSITIONS: dict[MatchPhase, set[MatchPhase]] = {
    MatchPhase.CREATED: {
        MatchPhase.COMMITTED,
        MatchPhase.CANCELLED,
        MatchPhase.EXPIRED,
    },
    MatchPhase.COMMITTED: {MatchPhase.STARTED, MatchPhase.EXPIRED},
    MatchPhase.STARTED: {MatchPhase.ENDED, MatchPhase.EXPIRED},
    MatchPhase.ENDED: {MatchPhase.SETTLED, MatchPhase.EXPIRED},
    MatchPhase.SETTLED: set(),
    MatchPhase.CANCELLED: set(),
    MatchPhase.EXPIRED: set(),
}


class MatchStateMachine:
    """Validates match phase transitions. Pure computation."""

    @staticmethod
    def validate_transition(
        current: MatchPhase,
        target: MatchPhase,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(p.name for p in sorted(allowed))
            return [
                f"Invalid match transition: {current.name} → {target.name}. "
                f"Allowed from {current.name}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def is_terminal(phase: MatchPhase) -> bool:
        return phase in TERMINAL_PHASES

    @staticmethod
    def valid_transitions(phase: MatchPhase) -> set[MatchPhase]:
        return set(_TRANSITIONS.get(phase, set()))

    @staticmethod
    def has_reached(current: MatchPhase, target: MatchPhase) -> bool:
        """Whether current is target or lies after it on the main path."""
        if current == target:
            return True
        frontier = [target]
        seen: set[MatchPhase] = set()
        while frontier:
            phase = frontier.pop()
            for nxt in _TRANSITIONS.get(phase, set()):
                if nxt == current:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return False
