"""Ledger access — the RPC contract and its implementations."""

from duel.ledger.client import LedgerClient
from duel.ledger.memory import InMemoryLedger, InMemoryLedgerClient, ManualClock

__all__ = ["InMemoryLedger", "InMemoryLedgerClient", "LedgerClient", "ManualClock"]
