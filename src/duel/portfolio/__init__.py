"""Portfolio drafting rules."""

from duel.portfolio.validator import (
    PortfolioValidator,
    ValidationResult,
    Violation,
    ViolationKind,
)

__all__ = ["PortfolioValidator", "ValidationResult", "Violation", "ViolationKind"]
