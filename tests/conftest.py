"""
Shared fakes for sol-multisend tests.

FakeChain stands in for the primary RPC connection, FakeBuilder for the
SPL instruction encoder and FakeSigner for the wallet, so the batch and
consensus logic can be exercised without a network.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from typing import Callable, Optional

import pytest
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from sol_multisend.chain import AccountInfo, LatestBlockhash, SignatureStatus, SimulationResult
from sol_multisend.config import Settings
from sol_multisend.endpoints import EndpointRegistry
from sol_multisend.errors import SignerRejected
from sol_multisend.models import Endpoint, Recipient
from sol_multisend.session import SendSession


def new_address() -> str:
    return str(Pubkey.new_unique())


def mint_account(decimals: int = 6, owner: str = str(TOKEN_PROGRAM_ID)) -> AccountInfo:
    data = bytes(44) + bytes([decimals]) + bytes(37)
    return AccountInfo(owner=owner, lamports=1_461_600, data=data)


@dataclass(frozen=True)
class FakeTx:
    instructions: tuple
    payer: str
    blockhash: str
    signed: bool = False

    @property
    def transfers(self) -> list[tuple]:
        return [ix for ix in self.instructions if ix[0] == "transfer"]

    @property
    def creates(self) -> list[tuple]:
        return [ix for ix in self.instructions if ix[0] == "create"]

    @property
    def owners(self) -> list[str]:
        return [ix[1].removeprefix("ata-") for ix in self.transfers]


class FakeBuilder:
    def associated_account(self, owner: str, mint: str, program_id: str) -> str:
        return f"ata-{owner}"

    def create_account_instruction(self, payer, owner, mint, program_id):
        return ("create", f"ata-{owner}", payer)

    def transfer_instruction(self, ctx, destination, amount):
        return ("transfer", destination, amount)

    def compile(self, instructions, payer, blockhash):
        return FakeTx(tuple(instructions), payer, blockhash)


class FakeSigner:
    def __init__(self, pubkey: Optional[str] = None, reject: bool = False):
        self._pubkey = pubkey or new_address()
        self.reject = reject
        self.signed: list[FakeTx] = []

    @property
    def pubkey(self) -> str:
        return self._pubkey

    async def sign(self, tx: FakeTx) -> FakeTx:
        if self.reject:
            raise SignerRejected("User rejected the request")
        self.signed.append(tx)
        return replace(tx, signed=True)


class FakeChain:
    """
    In-memory chain. `fail_when(tx)` returns an on-chain error for a
    transaction (or None to let it land); landed transactions create
    their destination accounts.
    """

    def __init__(self, fail_when: Optional[Callable[[FakeTx], object]] = None):
        self.accounts: dict[str, AccountInfo] = {}
        self.fail_when = fail_when or (lambda tx: None)
        self.blockhash_calls = 0
        self.simulated: list[FakeTx] = []
        self.sent: list[FakeTx] = []
        self.landed: list[FakeTx] = []
        self.statuses: dict[str, Optional[SignatureStatus]] = {}
        self.on_landed: Optional[Callable[[FakeTx], None]] = None
        self._sig_counter = itertools.count(1)
        self._pending: dict[str, FakeTx] = {}
        self.closed = False

    async def get_account_info(self, address, commitment):
        return self.accounts.get(address)

    async def get_latest_blockhash(self, commitment):
        self.blockhash_calls += 1
        return LatestBlockhash(f"blockhash-{self.blockhash_calls}", 1000 + self.blockhash_calls)

    async def simulate(self, tx):
        self.simulated.append(tx)
        err = self.fail_when(tx)
        logs = [f"Program log: Error: {err}"] if err else []
        return SimulationResult(err=err, logs=logs)

    async def send_raw(self, signed_tx):
        assert signed_tx.signed
        signature = f"sig-{next(self._sig_counter)}"
        self.sent.append(signed_tx)
        self._pending[signature] = signed_tx
        return signature

    async def confirm(self, signature, blockhash, last_valid_block_height, commitment):
        tx = self._pending.pop(signature)
        err = self.fail_when(tx)
        if err:
            return err
        for ix in tx.creates:
            self.accounts[ix[1]] = AccountInfo(owner=str(TOKEN_PROGRAM_ID), lamports=2_039_280, data=bytes(165))
        self.landed.append(tx)
        self.statuses[signature] = SignatureStatus("finalized")
        if self.on_landed is not None:
            self.on_landed(tx)
        return None

    async def get_signature_status(self, signature, search_history=True):
        return self.statuses.get(signature)

    async def close(self):
        self.closed = True


class FakeStatusClient:
    """Verification endpoint client returning a fixed status or raising."""

    def __init__(self, status: Optional[SignatureStatus] = None, exc: Optional[Exception] = None):
        self.status = status
        self.exc = exc
        self.queries: list[str] = []
        self.closed = False

    async def get_signature_status(self, signature, search_history=True):
        assert search_history
        self.queries.append(signature)
        if self.exc is not None:
            raise self.exc
        return self.status

    async def close(self):
        self.closed = True


def make_registry(count: int, threshold: int = 2, network: str = "devnet") -> EndpointRegistry:
    endpoints = [
        Endpoint(id=f"ep{i}", label=f"Endpoint {i}", url=f"https://rpc-{i}.test")
        for i in range(count)
    ]
    return EndpointRegistry({network: endpoints}, network=network, min_consensus_threshold=threshold)


def make_recipients(count: int, amount: int = 1_000_000) -> list[Recipient]:
    return [Recipient(address=new_address(), amount=amount + i) for i in range(count)]


@pytest.fixture
def settings():
    return Settings(retry_delay=0)


@pytest.fixture
def mint():
    return new_address()


@pytest.fixture
def chain(mint):
    fake = FakeChain()
    fake.accounts[mint] = mint_account(decimals=6)
    return fake


@pytest.fixture
def signer(chain):
    fake = FakeSigner()
    # Sender token account already exists unless a test removes it.
    chain.accounts[f"ata-{fake.pubkey}"] = AccountInfo(str(TOKEN_PROGRAM_ID), 2_039_280, bytes(165))
    return fake


@pytest.fixture
def status_clients():
    """url -> FakeStatusClient; every endpoint reports finalized unless overridden."""
    return {}


@pytest.fixture
def session(chain, signer, settings, status_clients):
    registry = make_registry(3)

    def factory(url: str):
        return status_clients.setdefault(url, FakeStatusClient(SignatureStatus("finalized")))

    return SendSession(
        chain=chain,
        signer=signer,
        registry=registry,
        settings=settings,
        builder=FakeBuilder(),
        client_factory=factory,
    )
