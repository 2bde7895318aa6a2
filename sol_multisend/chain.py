"""
Solana chain access for sol-multisend.

Defines the contracts the core relies on (ChainClient, Signer,
TransferBuilder) and their solana-py / solders backed implementations.
The batch submitter and the consensus verifier only ever talk to these
through the protocols, so tests can swap in fakes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from sol_multisend.errors import ConfirmationTimeout, SignerRejected, ValidationError

logger = logging.getLogger(__name__)

# Offset of the `decimals` byte in the SPL mint account layout:
# mint_authority (4 + 32) | supply (8) | decimals (1) | ...
MINT_DECIMALS_OFFSET = 44


def _confirmation_tier(status: Optional[TransactionConfirmationStatus]) -> Optional[str]:
    # solders enum members are not hashable, so no dict lookup here.
    if status is None:
        return None
    if status == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if status == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    if status == TransactionConfirmationStatus.Processed:
        return "processed"
    return None


@dataclass(frozen=True)
class AccountInfo:
    owner: str
    lamports: int
    data: bytes


@dataclass(frozen=True)
class LatestBlockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SimulationResult:
    err: Any
    logs: list[str]


@dataclass(frozen=True)
class SignatureStatus:
    confirmation_status: Optional[str]  # processed | confirmed | finalized
    err: Any = None
    slot: Optional[int] = None


@dataclass(frozen=True)
class MintContext:
    """Everything about the mint and the sender needed to build transfers."""

    mint: str
    program_id: str
    decimals: int
    owner: str  # sender wallet, also fee payer
    source: str  # sender's associated token account

    @property
    def is_token_2022(self) -> bool:
        return self.program_id == str(TOKEN_2022_PROGRAM_ID)


class ChainClient(Protocol):
    async def get_account_info(self, address: str, commitment: str) -> Optional[AccountInfo]: ...

    async def get_latest_blockhash(self, commitment: str) -> LatestBlockhash: ...

    async def simulate(self, tx: Any) -> SimulationResult: ...

    async def send_raw(self, signed_tx: Any) -> str: ...

    async def confirm(
        self, signature: str, blockhash: str, last_valid_block_height: int, commitment: str
    ) -> Any: ...

    async def get_signature_status(
        self, signature: str, search_history: bool = True
    ) -> Optional[SignatureStatus]: ...

    async def close(self) -> None: ...


class Signer(Protocol):
    @property
    def pubkey(self) -> str: ...

    async def sign(self, tx: Any) -> Any: ...


class TransferBuilder(Protocol):
    def associated_account(self, owner: str, mint: str, program_id: str) -> str: ...

    def create_account_instruction(
        self, payer: str, owner: str, mint: str, program_id: str
    ) -> Any: ...

    def transfer_instruction(self, ctx: MintContext, destination: str, amount: int) -> Any: ...

    def compile(self, instructions: Sequence[Any], payer: str, blockhash: str) -> Any: ...


def is_valid_address(address: str) -> bool:
    """True if `address` decodes to a 32-byte base58 public key."""
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


# ── solana-py backed implementations ────────────────────────────


class SolanaChainClient:
    """Async Solana RPC client bound to a single endpoint URL."""

    def __init__(self, rpc_url: str, commitment: str = "confirmed", timeout: float = 30.0,
                 confirm_sleep: float = 0.5):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.confirm_sleep = confirm_sleep
        self._client = AsyncClient(rpc_url, commitment=Commitment(commitment), timeout=timeout)

    async def __aenter__(self) -> "SolanaChainClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    async def get_account_info(self, address: str, commitment: str) -> Optional[AccountInfo]:
        resp = await self._client.get_account_info(
            Pubkey.from_string(address), commitment=Commitment(commitment)
        )
        if resp.value is None:
            return None
        return AccountInfo(
            owner=str(resp.value.owner),
            lamports=resp.value.lamports,
            data=bytes(resp.value.data),
        )

    async def get_latest_blockhash(self, commitment: str) -> LatestBlockhash:
        resp = await self._client.get_latest_blockhash(commitment=Commitment(commitment))
        return LatestBlockhash(
            blockhash=str(resp.value.blockhash),
            last_valid_block_height=resp.value.last_valid_block_height,
        )

    async def simulate(self, tx: Transaction) -> SimulationResult:
        resp = await self._client.simulate_transaction(tx, sig_verify=False)
        return SimulationResult(err=resp.value.err, logs=list(resp.value.logs or []))

    async def send_raw(self, signed_tx: Transaction) -> str:
        resp = await self._client.send_raw_transaction(
            bytes(signed_tx), opts=TxOpts(skip_preflight=False)
        )
        return str(resp.value)

    async def confirm(
        self, signature: str, blockhash: str, last_valid_block_height: int, commitment: str
    ) -> Any:
        """Wait for `commitment`; returns the on-chain error or None."""
        try:
            resp = await self._client.confirm_transaction(
                Signature.from_string(signature),
                commitment=Commitment(commitment),
                sleep_seconds=self.confirm_sleep,
                last_valid_block_height=last_valid_block_height,
            )
        except (UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
            raise ConfirmationTimeout(signature, str(e)) from e
        status = resp.value[0] if resp.value else None
        return status.err if status is not None else None

    async def get_signature_status(
        self, signature: str, search_history: bool = True
    ) -> Optional[SignatureStatus]:
        resp = await self._client.get_signature_statuses(
            [Signature.from_string(signature)], search_transaction_history=search_history
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        return SignatureStatus(
            confirmation_status=_confirmation_tier(status.confirmation_status),
            err=status.err,
            slot=status.slot,
        )


class KeypairSigner:
    """Signs transactions with a local ed25519 keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_file(cls, path: str | Path) -> "KeypairSigner":
        """Load a Solana CLI keypair file (JSON array of 64 ints)."""
        with open(Path(path).expanduser(), "r") as f:
            secret = json.load(f)
        if not isinstance(secret, list) or len(secret) != 64:
            raise ValidationError(f"Keypair file {path} must contain a JSON array of 64 bytes")
        return cls(Keypair.from_bytes(bytes(secret)))

    @property
    def pubkey(self) -> str:
        return str(self._keypair.pubkey())

    async def sign(self, tx: Transaction) -> Transaction:
        try:
            return Transaction([self._keypair], tx.message, tx.message.recent_blockhash)
        except Exception as e:
            raise SignerRejected(f"Signing failed: {e}") from e


class SplTransferBuilder:
    """Builds SPL Token / Token-2022 instructions and legacy transactions."""

    def associated_account(self, owner: str, mint: str, program_id: str) -> str:
        return str(get_associated_token_address(
            Pubkey.from_string(owner),
            Pubkey.from_string(mint),
            token_program_id=Pubkey.from_string(program_id),
        ))

    def create_account_instruction(
        self, payer: str, owner: str, mint: str, program_id: str
    ) -> Instruction:
        return create_associated_token_account(
            payer=Pubkey.from_string(payer),
            owner=Pubkey.from_string(owner),
            mint=Pubkey.from_string(mint),
            token_program_id=Pubkey.from_string(program_id),
        )

    def transfer_instruction(self, ctx: MintContext, destination: str, amount: int) -> Instruction:
        return transfer_checked(TransferCheckedParams(
            program_id=Pubkey.from_string(ctx.program_id),
            source=Pubkey.from_string(ctx.source),
            mint=Pubkey.from_string(ctx.mint),
            dest=Pubkey.from_string(destination),
            owner=Pubkey.from_string(ctx.owner),
            amount=amount,
            decimals=ctx.decimals,
            signers=[],
        ))

    def compile(self, instructions: Sequence[Instruction], payer: str, blockhash: str) -> Transaction:
        message = Message.new_with_blockhash(
            list(instructions), Pubkey.from_string(payer), Hash.from_string(blockhash)
        )
        return Transaction.new_unsigned(message)


async def resolve_mint(
    chain: ChainClient,
    builder: TransferBuilder,
    mint: str,
    owner: str,
    commitment: str = "confirmed",
) -> MintContext:
    """
    Look up the mint account and derive everything needed for transfers.

    The token program is picked from the mint account's owner, so both
    legacy SPL Token and Token-2022 mints work.
    """
    if not mint:
        raise ValidationError("Mint address required")
    if not is_valid_address(mint):
        raise ValidationError(f"Invalid mint address: {mint}")

    info = await chain.get_account_info(mint, commitment)
    if info is None:
        raise ValidationError(f"Mint account not found on this cluster: {mint}")

    program_id = str(TOKEN_2022_PROGRAM_ID) if info.owner == str(TOKEN_2022_PROGRAM_ID) \
        else str(TOKEN_PROGRAM_ID)
    if len(info.data) <= MINT_DECIMALS_OFFSET:
        raise ValidationError(f"Account {mint} is not a token mint")
    decimals = info.data[MINT_DECIMALS_OFFSET]

    source = builder.associated_account(owner, mint, program_id)
    logger.info(
        "Mint %s: program=%s decimals=%d sender account=%s",
        mint, "Token-2022" if program_id == str(TOKEN_2022_PROGRAM_ID) else "SPL Token (legacy)",
        decimals, source,
    )
    return MintContext(
        mint=mint, program_id=program_id, decimals=decimals, owner=owner, source=source,
    )
