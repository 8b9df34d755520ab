"""Match phase rules."""

from duel.engine.state_machine import MatchStateMachine

__all__ = ["MatchStateMachine"]
