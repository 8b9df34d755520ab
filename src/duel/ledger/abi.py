"""Minimal ABIs for the contracts the client calls.

Only the entry points the orchestrator uses are declared. The match
struct returned by getMatch is positional:

    (id, state, createdAt, startTime, lastActionAt, winner, player1, player2)

and each player is

    (player, nftContract, tokenId, commitHash, committed, revealed, score)
"""

from __future__ import annotations

from typing import Any


def _fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[dict[str, Any]] | None = None,
    mutability: str = "nonpayable",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs or [],
    }


_PLAYER_COMPONENTS = [
    {"name": "player", "type": "address"},
    {"name": "nftContract", "type": "address"},
    {"name": "tokenId", "type": "uint256"},
    {"name": "commitHash", "type": "bytes32"},
    {"name": "committed", "type": "bool"},
    {"name": "revealed", "type": "bool"},
    {"name": "score", "type": "int256"},
]

_MATCH_OUTPUT = {
    "name": "",
    "type": "tuple",
    "components": [
        {"name": "id", "type": "uint256"},
        {"name": "state", "type": "uint8"},
        {"name": "createdAt", "type": "uint256"},
        {"name": "startTime", "type": "uint256"},
        {"name": "lastActionAt", "type": "uint256"},
        {"name": "winner", "type": "address"},
        {"name": "player1", "type": "tuple", "components": _PLAYER_COMPONENTS},
        {"name": "player2", "type": "tuple", "components": _PLAYER_COMPONENTS},
    ],
}

MATCHMAKER_ABI: list[dict[str, Any]] = [
    _fn("createMatch", [
        ("nftContract", "address"),
        ("tokenId", "uint256"),
        ("commitHash", "bytes32"),
    ]),
    _fn("joinMatch", [
        ("matchId", "uint256"),
        ("nftContract", "address"),
        ("tokenId", "uint256"),
        ("commitHash", "bytes32"),
    ]),
    _fn("startMatch", [("matchId", "uint256")]),
    _fn("revealAndSettle", [
        ("matchId", "uint256"),
        ("assets", "bytes32[]"),
        ("roles", "uint8[]"),
        ("salt", "bytes32"),
    ]),
    _fn("cancelMatch", [("matchId", "uint256")]),
    _fn("clearStuckMatch", []),
    _fn("forceExpireMatch", [("matchId", "uint256")]),
    _fn("getMatch", [("matchId", "uint256")], [_MATCH_OUTPUT], "view"),
    _fn(
        "getPlayerActiveMatch",
        [("player", "address")],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
]

NFT_ABI: list[dict[str, Any]] = [
    _fn("approve", [("to", "address"), ("tokenId", "uint256")]),
    _fn(
        "ownerOf",
        [("tokenId", "uint256")],
        [{"name": "", "type": "address"}],
        "view",
    ),
    _fn(
        "balanceOf",
        [("owner", "address")],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
]
