"""Match workflow — the commit-reveal protocol driver."""

from duel.workflow.orchestrator import MatchOrchestrator, is_pending_key, pending_key

__all__ = ["MatchOrchestrator", "is_pending_key", "pending_key"]
