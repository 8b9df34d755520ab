"""Web3 ledger client — the Matchmaker contract over JSON-RPC.

Writes are signed locally with the configured key and sent as raw
transactions with a fixed gas limit (the target chain under-estimates
gas for the oracle reads done during settlement). Each write is
preflighted with eth_call so a revert surfaces with its reason string
before any gas is spent.

Failure mapping:
    ContractLogicError / Web3RPCError  → RejectedError (reason classified)
    receipt status 0                   → RejectedError
    TimeExhausted, timeouts, I/O       → TransientError
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from duel.config import DuelConfig
from duel.crypto.commitment_builder import reveal_payload
from duel.errors import (
    RejectedError,
    RejectReason,
    TransientError,
    classify_revert,
)
from duel.ledger.abi import MATCHMAKER_ABI, NFT_ABI
from duel.models.asset import Role
from duel.models.match import (
    ZERO_ADDRESS,
    MatchPhase,
    MatchSnapshot,
    PlayerSlot,
    StakeRef,
)
from duel.models.secret import CommitmentSecret, PortfolioSelection

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT = (
    TimeExhausted,
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ConnectionError,
    OSError,
)


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _decode_slot(raw: Any) -> PlayerSlot:
    player, nft_contract, token_id, commit_hash, committed, revealed, score = raw
    stake = None
    if str(nft_contract).lower() != ZERO_ADDRESS:
        stake = StakeRef(contract=str(nft_contract), token_id=int(token_id))
    return PlayerSlot(
        address=str(player),
        stake=stake,
        commitment=_to_hex(commit_hash),
        committed=bool(committed),
        revealed=bool(revealed),
        score=int(score),
    )


def decode_match(raw: Any) -> MatchSnapshot:
    """Translate the getMatch struct into a MatchSnapshot."""
    match_id, state, created_at, start_time, last_action, winner, p1, p2 = raw
    winner = str(winner)
    return MatchSnapshot(
        match_id=int(match_id),
        phase=MatchPhase(int(state)),
        player1=_decode_slot(p1),
        player2=_decode_slot(p2),
        created_at=int(created_at),
        started_at=int(start_time),
        updated_at=int(last_action),
        winner=None if winner.lower() == ZERO_ADDRESS else winner,
    )


class Web3LedgerClient:
    """LedgerClient over an EVM JSON-RPC endpoint."""

    def __init__(
        self,
        config: DuelConfig,
        w3: Optional[AsyncWeb3] = None,
        account: Optional[LocalAccount] = None,
        address: Optional[str] = None,
    ) -> None:
        self._config = config
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.rpc_timeout},
        ))
        if account is None and config.private_key:
            account = Account.from_key(config.private_key)
        self._account = account
        if account is not None:
            self._address = account.address
        elif address is not None:
            self._address = AsyncWeb3.to_checksum_address(address)
        else:
            raise ValueError("Web3LedgerClient needs a private key or a read-only address")
        self._matchmaker = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(config.contracts.matchmaker),
            abi=MATCHMAKER_ABI,
        )

    @property
    def address(self) -> str:
        return self._address

    async def now(self) -> int:
        block = await self._read(self._w3.eth.get_block("latest"))
        return int(block["timestamp"])

    # -- reads ------------------------------------------------------------

    async def get_match(self, match_id: int) -> MatchSnapshot:
        raw = await self._read(self._matchmaker.functions.getMatch(match_id).call())
        snapshot = decode_match(raw)
        if snapshot.match_id != match_id:
            raise RejectedError(
                RejectReason.UNKNOWN_MATCH, f"Match {match_id} does not exist", match_id,
            )
        return snapshot

    async def get_active_match(self, address: str) -> Optional[int]:
        fn = self._matchmaker.functions.getPlayerActiveMatch(
            AsyncWeb3.to_checksum_address(address),
        )
        match_id = int(await self._read(fn.call()))
        return match_id or None

    async def owned_tokens(self, address: str, scan_limit: int) -> list[int]:
        nft = self._nft(self._config.contracts.nft)
        results = await asyncio.gather(
            *(nft.functions.ownerOf(i).call() for i in range(scan_limit)),
            return_exceptions=True,
        )
        owned = []
        for token_id, result in enumerate(results):
            if isinstance(result, ContractLogicError):
                continue  # unminted
            if isinstance(result, Exception):
                raise self._classify(result, "ownerOf") from result
            if str(result).lower() == address.lower():
                owned.append(token_id)
        return owned

    # -- writes -----------------------------------------------------------

    async def create_match(self, stake: StakeRef, commitment: str) -> int:
        await self._approve_stake(stake)
        await self._transact(
            "createMatch",
            self._matchmaker.functions.createMatch(
                AsyncWeb3.to_checksum_address(stake.contract),
                stake.token_id,
                bytes.fromhex(commitment[2:]),
            ),
            self._config.gas_limit,
        )
        match_id = await self.get_active_match(self.address)
        if match_id is None:
            raise TransientError("createMatch mined but no active match is visible yet")
        return match_id

    async def join_match(self, match_id: int, stake: StakeRef, commitment: str) -> None:
        await self._approve_stake(stake)
        await self._transact(
            "joinMatch",
            self._matchmaker.functions.joinMatch(
                match_id,
                AsyncWeb3.to_checksum_address(stake.contract),
                stake.token_id,
                bytes.fromhex(commitment[2:]),
            ),
            self._config.gas_limit,
        )

    async def start_match(self, match_id: int) -> None:
        await self._transact(
            "startMatch",
            self._matchmaker.functions.startMatch(match_id),
            self._config.gas_limit,
        )

    async def reveal_and_settle(
        self,
        match_id: int,
        portfolio: list[str],
        roles: list[int],
        salt: str,
    ) -> None:
        secret = CommitmentSecret(
            selection=PortfolioSelection(
                assets=tuple(portfolio), roles=tuple(Role(r) for r in roles),
            ),
            salt=salt,
        )
        asset_ids, role_codes, salt_digest = reveal_payload(secret)
        await self._transact(
            "revealAndSettle",
            self._matchmaker.functions.revealAndSettle(
                match_id,
                [bytes.fromhex(a[2:]) for a in asset_ids],
                role_codes,
                bytes.fromhex(salt_digest[2:]),
            ),
            self._config.reveal_gas_limit,
        )

    async def cancel_match(self, match_id: int) -> None:
        await self._transact(
            "cancelMatch",
            self._matchmaker.functions.cancelMatch(match_id),
            self._config.gas_limit,
        )

    async def clear_stuck_match(self) -> None:
        await self._transact(
            "clearStuckMatch",
            self._matchmaker.functions.clearStuckMatch(),
            self._config.gas_limit,
        )

    async def force_expire_match(self, match_id: int) -> None:
        await self._transact(
            "forceExpireMatch",
            self._matchmaker.functions.forceExpireMatch(match_id),
            self._config.gas_limit,
        )

    # -- internals --------------------------------------------------------

    def _nft(self, contract: str) -> Any:
        return self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract), abi=NFT_ABI,
        )

    async def _approve_stake(self, stake: StakeRef) -> None:
        nft = self._nft(stake.contract)
        await self._transact(
            "approve",
            nft.functions.approve(
                AsyncWeb3.to_checksum_address(self._config.contracts.nft_vault),
                stake.token_id,
            ),
            self._config.approve_gas_limit,
        )

    async def _read(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:
            classified = self._classify(exc, "read")
            if classified is exc:
                raise
            raise classified from exc

    async def _transact(self, label: str, fn: Any, gas: int) -> str:
        if self._account is None:
            raise RejectedError(
                RejectReason.NOT_PARTICIPANT,
                f"{label}: client is read-only (no private key configured)",
            )
        sender = self._account.address
        try:
            # Preflight: surfaces the revert reason without spending gas.
            await fn.call({"from": sender})
            nonce = await self._w3.eth.get_transaction_count(sender, "pending")
            gas_price = await self._w3.eth.gas_price
            tx = await fn.build_transaction({
                "from": sender,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
                "chainId": self._config.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("%s sent: %s", label, _to_hex(tx_hash))
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._config.receipt_timeout,
            )
        except Exception as exc:
            classified = self._classify(exc, label)
            if classified is exc:
                raise
            raise classified from exc

        if receipt["status"] != 1:
            logger.warning("%s reverted in block %s", label, receipt["blockNumber"])
            raise RejectedError(RejectReason.UNKNOWN, f"{label} reverted on chain")
        logger.info("%s confirmed in block %s", label, receipt["blockNumber"])
        return _to_hex(tx_hash)

    @staticmethod
    def _classify(exc: Exception, label: str) -> Exception:
        if isinstance(exc, (RejectedError, TransientError)):
            return exc
        if isinstance(exc, ContractLogicError):
            message = str(exc)
            logger.warning("%s rejected: %s", label, message)
            return RejectedError(classify_revert(message), f"{label}: {message}")
        if isinstance(exc, _TRANSIENT):
            logger.warning("%s transient failure: %s", label, exc)
            return TransientError(f"{label}: {exc}")
        if isinstance(exc, Web3RPCError):
            message = str(exc)
            logger.warning("%s RPC error: %s", label, message)
            return RejectedError(classify_revert(message), f"{label}: {message}")
        return exc
