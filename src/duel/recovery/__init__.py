"""Recovery of stalled matches — abandonment, staleness, lost secrets."""

from duel.recovery.coordinator import (
    RecoveryAction,
    RecoveryAssessment,
    RecoveryCoordinator,
    StallKind,
)

__all__ = [
    "RecoveryAction",
    "RecoveryAssessment",
    "RecoveryCoordinator",
    "StallKind",
]
