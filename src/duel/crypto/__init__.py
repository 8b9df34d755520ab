"""Cryptographic primitives — commitment encoding, salts, reveal payloads."""

from duel.crypto.commitment_builder import (
    build_commitment,
    generate_salt,
    reveal_payload,
)

__all__ = ["build_commitment", "generate_salt", "reveal_payload"]
