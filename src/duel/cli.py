"""Duel CLI — command-line interface for the match client.

Usage:
    duel validate --assets BTC,ETH,SOL,DOGE,PEPE,SHIB,HYPE --leader BTC --co-leader ETH
    duel create --assets ... --leader BTC --co-leader ETH --token-id 3
    duel join --match 7 --assets ... --leader BTC --co-leader ETH --token-id 4
    duel start
    duel watch
    duel reveal
    duel assess
    duel clear-stuck
    duel force-expire --match 7

Configuration comes from DUEL_* environment variables (or --env-file).
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

from duel.config import DuelConfig
from duel.countdown.timers import format_clock
from duel.errors import (
    InconsistentError,
    RejectedError,
    TransientError,
    ValidationError,
)
from duel.ledger.web3_client import Web3LedgerClient
from duel.models.asset import ASSETS, GAME_RULES, portfolio_cost
from duel.models.match import MatchSnapshot, StakeRef
from duel.models.secret import PortfolioSelection
from duel.persistence.event_log import EventLog
from duel.persistence.local_state import FileStateStore
from duel.portfolio.validator import PortfolioValidator
from duel.recovery.coordinator import RecoveryCoordinator
from duel.workflow.orchestrator import MatchOrchestrator

T = TypeVar("T")


@dataclasses.dataclass
class _Context:
    config: DuelConfig
    ledger: Web3LedgerClient
    store: FileStateStore
    event_log: EventLog

    def orchestrator(self) -> MatchOrchestrator:
        return MatchOrchestrator(
            self.ledger, self.store, self.store,
            config=self.config, event_log=self.event_log,
        )

    def recovery(self) -> RecoveryCoordinator:
        return RecoveryCoordinator(
            self.ledger, self.store, self.store,
            config=self.config, event_log=self.event_log,
        )


def _load_config(args: argparse.Namespace) -> DuelConfig:
    base = DuelConfig.from_json(args.config) if args.config else None
    return DuelConfig.from_env(env_file=args.env_file, base=base)


def _make_context(args: argparse.Namespace) -> _Context:
    """Wire the ledger client and durable local state."""
    config = _load_config(args)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return _Context(
        config=config,
        ledger=Web3LedgerClient(config, address=args.address),
        store=FileStateStore(config.state_path),
        event_log=EventLog(storage_path=config.event_log_path),
    )


def _run(coro: Awaitable[T]) -> T:
    return asyncio.run(coro)


def _selection(args: argparse.Namespace) -> PortfolioSelection:
    assets = [s.strip().upper() for s in args.assets.split(",") if s.strip()]
    leader = args.leader.upper() if args.leader else None
    co_leader = args.co_leader.upper() if args.co_leader else None
    return PortfolioSelection.from_indices(
        assets,
        assets.index(leader) if leader in assets else None,
        assets.index(co_leader) if co_leader in assets else None,
    )


def _stake(args: argparse.Namespace, config: DuelConfig) -> StakeRef:
    return StakeRef(contract=args.nft or config.contracts.nft, token_id=args.token_id)


def _snapshot_dict(snapshot: MatchSnapshot, address: Optional[str] = None) -> dict[str, Any]:
    data = dataclasses.asdict(snapshot)
    data["phase"] = snapshot.phase.name
    if address is not None:
        data["outcome"] = snapshot.outcome_for(address)
    return data


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.orchestrator().resume())
    _print_json({
        "address": ctx.ledger.address,
        "chain_id": ctx.config.chain_id,
        "rpc_url": ctx.config.rpc_url,
        "active_match_id": ctx.store.get(),
        "held_secrets": ctx.store.keys(),
        "events": ctx.event_log.count,
        "match": _snapshot_dict(snapshot, ctx.ledger.address) if snapshot else None,
    })
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check a draft offline against the portfolio rules."""
    selection = _selection(args)
    result = PortfolioValidator().validate(selection)
    print(f"Cost: {result.total_cost}/{GAME_RULES.max_budget}")
    if result.valid:
        print("Portfolio is valid")
        return 0
    for violation in result.violations:
        print(f"  - {violation.message}", file=sys.stderr)
    return 2


def cmd_assets(args: argparse.Namespace) -> int:
    for asset in sorted(ASSETS.values(), key=lambda a: (-a.cost, a.symbol)):
        print(f"{asset.symbol:<6} {asset.tier.value}  {asset.cost:>3}  {asset.name}")
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    selection = _selection(args)
    snapshot = _run(ctx.orchestrator().create_match(selection, _stake(args, ctx.config)))
    print(f"Created match: {snapshot.match_id} (cost: {portfolio_cost(selection.assets)})")
    return 0


def cmd_join(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.orchestrator().join_match(
        args.match, _selection(args), _stake(args, ctx.config),
    ))
    print(f"Joined match: {snapshot.match_id} ({snapshot.phase.name})")
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.orchestrator().start_match(args.match))
    print(f"Started match: {snapshot.match_id} at {snapshot.started_at}")
    return 0


def cmd_reveal(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.orchestrator().reveal(args.match))
    outcome = snapshot.outcome_for(ctx.ledger.address)
    print(f"Revealed in match: {snapshot.match_id} ({snapshot.phase.name})")
    if outcome is not None:
        print(f"Result: {outcome}")
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.recovery().cancel_abandoned(args.match))
    print(f"Match {snapshot.match_id}: {snapshot.phase.name}")
    return 0


def cmd_clear_stuck(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.recovery().clear_stuck_match())
    if snapshot is None:
        print("No active match to clear")
    else:
        print(f"Match {snapshot.match_id}: {snapshot.phase.name}")
    return 0


def cmd_force_expire(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.recovery().force_expire(args.match))
    print(f"Match {snapshot.match_id}: {snapshot.phase.name}")
    return 0


def cmd_discard_secret(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    removed = _run(ctx.recovery().discard_orphaned_secret(args.key))
    print(f"Discarded: {', '.join(removed) if removed else 'nothing'}")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    snapshot = _run(ctx.orchestrator().refresh(args.match))
    _print_json(_snapshot_dict(snapshot, ctx.ledger.address))
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    ctx = _make_context(args)

    def on_tick(kind: str, value: int) -> None:
        label = "Time left" if kind == "countdown" else "Waiting"
        print(f"{label}: {format_clock(value)}", flush=True)

    snapshot = _run(ctx.orchestrator().watch(
        args.match, on_tick=on_tick, auto_start=args.auto_start,
    ))
    print(f"Match {snapshot.match_id}: {snapshot.phase.name}")
    outcome = snapshot.outcome_for(ctx.ledger.address)
    if outcome is not None:
        print(f"Result: {outcome}")
    return 0


def cmd_tokens(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    tokens = _run(ctx.ledger.owned_tokens(ctx.ledger.address, ctx.config.token_scan_limit))
    if not tokens:
        print("No stake tokens found")
        return 0
    for token_id in tokens:
        print(f"{ctx.config.contracts.nft} #{token_id}")
    return 0


def cmd_assess(args: argparse.Namespace) -> int:
    ctx = _make_context(args)
    assessment = _run(ctx.recovery().assess(args.match))
    _print_json({
        "kind": assessment.kind.value,
        "action": assessment.action.value,
        "match_id": assessment.match_id,
        "phase": assessment.snapshot.phase.name if assessment.snapshot else None,
        "idle_seconds": assessment.idle_seconds,
        "wait_seconds": assessment.wait_seconds,
        "issues": list(assessment.issues),
        "orphaned_keys": list(assessment.orphaned_keys),
        "pending_keys": list(assessment.pending_keys),
    })
    return 0


def _add_selection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--assets", required=True, help="Comma-separated symbols, e.g. BTC,ETH,SOL")
    p.add_argument("--leader", help="Symbol to play as Leader (2x)")
    p.add_argument("--co-leader", help="Symbol to play as Co-Leader (1.5x)")


def _add_stake_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--token-id", type=int, required=True, help="Stake NFT token id")
    p.add_argument("--nft", help="Stake NFT contract (default: configured NFT)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="duel",
        description="Portfolio duel — commit-reveal match client",
    )
    parser.add_argument("--env-file", type=Path, help="Load DUEL_* variables from this file")
    parser.add_argument("--config", type=Path, help="JSON config overrides")
    parser.add_argument("--address", help="Read-only address when no private key is set")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Reconcile local state and show the active match")
    sub.add_parser("assets", help="List draftable assets and costs")

    p_val = sub.add_parser("validate", help="Check a portfolio offline")
    _add_selection_args(p_val)

    p_create = sub.add_parser("create", help="Commit a portfolio and open a match")
    _add_selection_args(p_create)
    _add_stake_args(p_create)

    p_join = sub.add_parser("join", help="Commit a portfolio into an open match")
    p_join.add_argument("--match", type=int, required=True, help="Match ID")
    _add_selection_args(p_join)
    _add_stake_args(p_join)

    for name, help_text in (
        ("start", "Open the price window"),
        ("reveal", "Reveal the held portfolio after the window ends"),
        ("cancel", "Cancel an unjoined match"),
        ("show", "Show a match as the ledger reports it"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--match", type=int, help="Match ID (default: active match)")

    p_watch = sub.add_parser("watch", help="Follow a match until it is terminal")
    p_watch.add_argument("--match", type=int, help="Match ID (default: active match)")
    p_watch.add_argument("--auto-start", action="store_true", help="Start once both committed")

    sub.add_parser("clear-stuck", help="Expire your own stale active match")

    p_fe = sub.add_parser("force-expire", help="Expire any stale match by id")
    p_fe.add_argument("--match", type=int, required=True, help="Match ID")

    p_disc = sub.add_parser("discard-secret", help="Drop secrets no live match needs")
    p_disc.add_argument("--key", help="Only this vault key")

    sub.add_parser("tokens", help="List stake NFTs owned by this address")

    p_assess = sub.add_parser("assess", help="Diagnose a stalled match")
    p_assess.add_argument("--match", type=int, help="Match ID (default: active match)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "status": cmd_status,
        "assets": cmd_assets,
        "validate": cmd_validate,
        "create": cmd_create,
        "join": cmd_join,
        "start": cmd_start,
        "reveal": cmd_reveal,
        "cancel": cmd_cancel,
        "clear-stuck": cmd_clear_stuck,
        "force-expire": cmd_force_expire,
        "discard-secret": cmd_discard_secret,
        "show": cmd_show,
        "watch": cmd_watch,
        "tokens": cmd_tokens,
        "assess": cmd_assess,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except ValidationError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 2
    except TransientError as exc:
        print(f"Failed (network, safe to retry): {exc}", file=sys.stderr)
        return 1
    except RejectedError as exc:
        print(f"Failed (rejected by ledger): {exc}", file=sys.stderr)
        return 1
    except InconsistentError as exc:
        print(f"Failed (local state out of sync, run `duel assess`): {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
