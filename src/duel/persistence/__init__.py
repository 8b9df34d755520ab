"""Durable local state — reveal secrets, active session, audit trail."""

from duel.persistence.event_log import EventKind, EventLog, EventRecord
from duel.persistence.local_state import (
    PENDING_KEY,
    FileStateStore,
    InMemorySecretVault,
    InMemorySessionStore,
    SecretVault,
    SessionStore,
)

__all__ = [
    "PENDING_KEY",
    "EventKind",
    "EventLog",
    "EventRecord",
    "FileStateStore",
    "InMemorySecretVault",
    "InMemorySessionStore",
    "SecretVault",
    "SessionStore",
]
