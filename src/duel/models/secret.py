"""Portfolio selection and the commitment secret.

A selection is the ordered list of drafted symbols plus a parallel tuple
of roles. The order matters: the commitment hash is computed over the
symbols in exactly this order, so it must survive persistence unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from duel.models.asset import Role


@dataclass(frozen=True)
class PortfolioSelection:
    """Ordered assets with their role assignment."""
    assets: tuple[str, ...]
    roles: tuple[Role, ...]

    @staticmethod
    def from_indices(
        assets: list[str] | tuple[str, ...],
        leader_index: Optional[int],
        co_leader_index: Optional[int],
    ) -> PortfolioSelection:
        """Build a selection the way the draft screen tracks it.

        The draft keeps one leader index and one co-leader index over the
        picked assets; every other pick is Regular. If both indices point
        at the same pick, the leader wins and the co-leader is dropped.
        """
        roles = []
        for i in range(len(assets)):
            if i == leader_index:
                roles.append(Role.LEADER)
            elif i == co_leader_index:
                roles.append(Role.CO_LEADER)
            else:
                roles.append(Role.REGULAR)
        return PortfolioSelection(assets=tuple(assets), roles=tuple(roles))

    @property
    def leader(self) -> Optional[str]:
        return self._symbol_for(Role.LEADER)

    @property
    def co_leader(self) -> Optional[str]:
        return self._symbol_for(Role.CO_LEADER)

    def role_codes(self) -> list[int]:
        return [int(r) for r in self.roles]

    def _symbol_for(self, role: Role) -> Optional[str]:
        for symbol, r in zip(self.assets, self.roles):
            if r == role:
                return symbol
        return None


@dataclass(frozen=True)
class CommitmentSecret:
    """Everything needed to reproduce a commitment at reveal time.

    Never transmitted before reveal. The salt is single-use. created_at
    is the ledger time the secret was written, used to tell a submission
    that may still land from one that never will.
    """
    selection: PortfolioSelection
    salt: str
    created_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "portfolio": list(self.selection.assets),
            "roles": self.selection.role_codes(),
            "salt": self.salt,
        }
        if self.created_at is not None:
            data["created_at"] = self.created_at
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CommitmentSecret:
        created_at = data.get("created_at")
        return CommitmentSecret(
            selection=PortfolioSelection(
                assets=tuple(data["portfolio"]),
                roles=tuple(Role(int(r)) for r in data["roles"]),
            ),
            salt=data["salt"],
            created_at=int(created_at) if created_at is not None else None,
        )
