"""Portfolio validator — selection-budget and role-uniqueness rules.

A selection is committable only if:
1. It has exactly 7 assets.
2. All symbols are distinct and present in the catalog.
3. The summed catalog cost is within the 100-point budget.
4. Exactly one Leader and exactly one CoLeader; the rest Regular.

Pure and deterministic. Cheap enough to run on every incremental
selection change, so the draft screen can show targeted guidance for
each rule that is currently broken.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from duel.errors import ValidationError
from duel.models.asset import ASSETS, GAME_RULES, GameRules, Role, portfolio_cost
from duel.models.secret import PortfolioSelection


class ViolationKind(str, enum.Enum):
    """Distinguishable reasons a selection is rejected."""
    TOO_FEW_ASSETS = "too_few_assets"
    TOO_MANY_ASSETS = "too_many_assets"
    DUPLICATE_ASSET = "duplicate_asset"
    UNKNOWN_ASSET = "unknown_asset"
    BUDGET_EXCEEDED = "budget_exceeded"
    ROLE_COUNT_MISMATCH = "role_count_mismatch"
    MISSING_LEADER = "missing_leader"
    DUPLICATE_LEADER = "duplicate_leader"
    MISSING_CO_LEADER = "missing_co_leader"
    DUPLICATE_CO_LEADER = "duplicate_co_leader"


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    message: str


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one selection."""
    total_cost: int
    violations: list[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def kinds(self) -> list[ViolationKind]:
        return [v.kind for v in self.violations]

    def raise_if_invalid(self) -> None:
        if self.violations:
            raise ValidationError(self.violations)


class PortfolioValidator:
    """Checks portfolio selections against the game rules."""

    def __init__(self, rules: GameRules = GAME_RULES) -> None:
        self._rules = rules

    def validate(self, selection: PortfolioSelection) -> ValidationResult:
        rules = self._rules
        assets = selection.assets
        violations: list[Violation] = []

        if len(assets) < rules.required_assets:
            violations.append(Violation(
                ViolationKind.TOO_FEW_ASSETS,
                f"Select {rules.required_assets - len(assets)} more "
                f"({len(assets)}/{rules.required_assets})",
            ))
        elif len(assets) > rules.required_assets:
            violations.append(Violation(
                ViolationKind.TOO_MANY_ASSETS,
                f"Too many assets: {len(assets)}/{rules.required_assets}",
            ))

        seen: set[str] = set()
        for symbol in assets:
            if symbol in seen:
                violations.append(Violation(
                    ViolationKind.DUPLICATE_ASSET,
                    f"Asset selected more than once: {symbol}",
                ))
            seen.add(symbol)
            if symbol not in ASSETS:
                violations.append(Violation(
                    ViolationKind.UNKNOWN_ASSET,
                    f"Unknown asset symbol: {symbol}",
                ))

        total = portfolio_cost(assets)
        if total > rules.max_budget:
            violations.append(Violation(
                ViolationKind.BUDGET_EXCEEDED,
                f"Budget exceeded: {total}/{rules.max_budget}",
            ))

        if len(selection.roles) != len(assets):
            violations.append(Violation(
                ViolationKind.ROLE_COUNT_MISMATCH,
                f"{len(selection.roles)} roles for {len(assets)} assets",
            ))

        violations.extend(_role_violations(
            selection.roles, Role.LEADER,
            ViolationKind.MISSING_LEADER, ViolationKind.DUPLICATE_LEADER,
            "Leader",
        ))
        violations.extend(_role_violations(
            selection.roles, Role.CO_LEADER,
            ViolationKind.MISSING_CO_LEADER, ViolationKind.DUPLICATE_CO_LEADER,
            "Co-Leader",
        ))

        return ValidationResult(total_cost=total, violations=violations)

    def remaining_budget(self, assets: list[str] | tuple[str, ...]) -> int:
        return self._rules.max_budget - portfolio_cost(assets)

    def can_add(self, assets: list[str] | tuple[str, ...], symbol: str) -> bool:
        """Whether symbol can be drafted next without breaking a rule."""
        if symbol not in ASSETS or symbol in assets:
            return False
        if len(assets) >= self._rules.required_assets:
            return False
        return ASSETS[symbol].cost <= self.remaining_budget(assets)


def _role_violations(
    roles: tuple[Role, ...],
    role: Role,
    missing: ViolationKind,
    duplicate: ViolationKind,
    label: str,
) -> list[Violation]:
    count = sum(1 for r in roles if r == role)
    if count == 0:
        return [Violation(missing, f"Choose a {label}")]
    if count > 1:
        return [Violation(duplicate, f"Only one {label} allowed ({count} assigned)")]
    return []


def validate(selection: PortfolioSelection) -> ValidationResult:
    """Validate against the default game rules."""
    return PortfolioValidator().validate(selection)
