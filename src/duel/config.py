"""Client configuration.

Values come from, in increasing precedence:
1. The defaults below (Monad testnet deployment).
2. A JSON overrides file (DuelConfig.from_json).
3. DUEL_* environment variables, optionally seeded from a .env file.

Timeouts and confirmation polling are client configuration, not protocol:
a ledger call that exceeds rpc_timeout is reported as a TransientError.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


DEFAULT_DATA = Path.home() / ".duel"


@dataclass(frozen=True)
class ContractAddresses:
    """Deployed contract addresses for the target chain."""
    matchmaker: str = "0x1E5152468537309Bd797f6EDc1fe112e98a09402"
    nft: str = "0x3B5a097c560636D5090266d5cBf5578B9940543F"
    nft_vault: str = "0xAEB69e308A2580e48F0371FCD89EcAe7f700775a"
    asset_registry: str = "0x898bcA461cE3B7f0697e15Dd2209C673dae5fbe2"


@dataclass(frozen=True)
class DuelConfig:
    rpc_url: str = "https://testnet-rpc.monad.xyz"
    private_key: Optional[str] = None
    chain_id: int = 10143
    contracts: ContractAddresses = field(default_factory=ContractAddresses)

    data_dir: Path = DEFAULT_DATA

    # Protocol timing (ledger seconds)
    match_duration: int = 120
    stale_after: int = 120
    abandon_grace: int = 120

    # Transport
    rpc_timeout: float = 30.0
    receipt_timeout: float = 120.0
    gas_limit: int = 10_000_000
    reveal_gas_limit: int = 20_000_000
    approve_gas_limit: int = 5_000_000

    # Read-after-write confirmation and watch loop
    confirm_attempts: int = 5
    confirm_interval: float = 2.0
    poll_interval: float = 1.0

    # NFT ownership scan range for stake discovery
    token_scan_limit: int = 20

    @property
    def state_path(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def event_log_path(self) -> Path:
        return self.data_dir / "events.jsonl"

    def with_overrides(self, **overrides: Any) -> DuelConfig:
        return dataclasses.replace(self, **overrides)

    @classmethod
    def from_json(cls, path: Path) -> DuelConfig:
        """Load overrides from a JSON file. Unknown keys are rejected."""
        params = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls()._merge(params)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        base: Optional[DuelConfig] = None,
    ) -> DuelConfig:
        """Build a config from DUEL_* environment variables.

        If env_file is given (or a .env exists in the working directory)
        it is loaded first; variables already set in the environment win.
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()
        config = base or cls()
        overrides: dict[str, Any] = {}
        for name, cast in _ENV_FIELDS.items():
            raw = os.getenv(f"DUEL_{name.upper()}")
            if raw is not None and raw != "":
                overrides[name] = cast(raw)
        contracts = {}
        for name in ("matchmaker", "nft", "nft_vault", "asset_registry"):
            raw = os.getenv(f"DUEL_{name.upper()}_ADDRESS")
            if raw:
                contracts[name] = raw
        if contracts:
            overrides["contracts"] = dataclasses.replace(config.contracts, **contracts)
        return dataclasses.replace(config, **overrides)

    def _merge(self, params: dict[str, Any]) -> DuelConfig:
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(params) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        overrides: dict[str, Any] = {}
        for key, value in params.items():
            if key == "contracts":
                overrides[key] = dataclasses.replace(self.contracts, **value)
            elif key == "data_dir":
                overrides[key] = Path(value).expanduser()
            else:
                overrides[key] = value
        return dataclasses.replace(self, **overrides)


_ENV_FIELDS: dict[str, Any] = {
    "rpc_url": str,
    "private_key": str,
    "chain_id": int,
    "data_dir": lambda v: Path(v).expanduser(),
    "match_duration": int,
    "stale_after": int,
    "abandon_grace": int,
    "rpc_timeout": float,
    "receipt_timeout": float,
    "gas_limit": int,
    "reveal_gas_limit": int,
    "approve_gas_limit": int,
    "confirm_attempts": int,
    "confirm_interval": float,
    "poll_interval": float,
    "token_scan_limit": int,
}
