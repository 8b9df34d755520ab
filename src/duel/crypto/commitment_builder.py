"""Commitment builder — binds a player to a hidden portfolio.

Encoding (all fields 32 bytes wide, no separators, fixed count):

    asset_id(s)  = keccak256(utf8(symbol))             × 7, in pick order
    role_word(r) = uint256 big-endian role code         × 7, same order
    salt_hash    = keccak256(utf8(salt))
    commitment   = keccak256(asset_ids ‖ role_words ‖ salt_hash)

This is byte-identical to the Matchmaker contract's
keccak256(abi.encodePacked(bytes32[] assets, uint8[] roles, bytes32 salt)),
where packed array elements are padded to 32 bytes. With a fixed
selection size every field sits at a fixed offset, so two distinct
(selection, salt) inputs cannot serialize to the same bytes.

The commitment must be reproducible byte-for-byte at reveal time. Any
reordering or re-encoding of the persisted secret yields a different
hash and an unrecoverable reveal failure.
"""

from __future__ import annotations

import secrets
import time
from typing import Optional

from web3 import Web3

from duel.models.secret import CommitmentSecret, PortfolioSelection
from duel.portfolio.validator import PortfolioValidator

WORD_SIZE = 32
SALT_PREFIX = "duel"


def _keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def asset_id(symbol: str) -> bytes:
    """Stable 32-byte identifier of an asset symbol."""
    return _keccak(symbol.encode("utf-8"))


def salt_hash(salt: str) -> bytes:
    return _keccak(salt.encode("utf-8"))


def role_word(code: int) -> bytes:
    return int(code).to_bytes(WORD_SIZE, "big")


def encode_commitment_preimage(selection: PortfolioSelection, salt: str) -> bytes:
    """Canonical byte string hashed into the commitment."""
    parts = [asset_id(s) for s in selection.assets]
    parts.extend(role_word(code) for code in selection.role_codes())
    parts.append(salt_hash(salt))
    return b"".join(parts)


def build_commitment(
    selection: PortfolioSelection,
    salt: str,
    validator: Optional[PortfolioValidator] = None,
) -> str:
    """Compute the 0x-prefixed commitment hash for a selection.

    Fails closed: raises ValidationError for a malformed selection and
    ValueError for an empty salt. Nothing is returned for partial input.
    """
    if not salt:
        raise ValueError("Salt must be non-empty")
    (validator or PortfolioValidator()).validate(selection).raise_if_invalid()
    return _hex(_keccak(encode_commitment_preimage(selection, salt)))


def commitment_of(secret: CommitmentSecret) -> str:
    return build_commitment(secret.selection, secret.salt)


def generate_salt(now_ms: Optional[int] = None) -> str:
    """Fresh single-use salt: timestamp plus 128 random bits."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{SALT_PREFIX}-{now_ms}-{secrets.token_hex(16)}"


def reveal_payload(secret: CommitmentSecret) -> tuple[list[str], list[int], str]:
    """The (asset ids, role codes, salt hash) triple the ledger verifies."""
    return (
        [_hex(asset_id(s)) for s in secret.selection.assets],
        secret.selection.role_codes(),
        _hex(salt_hash(secret.salt)),
    )
