"""Per-invocation wiring of chain client, signer and endpoint registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sol_multisend.chain import ChainClient, Signer, SolanaChainClient, SplTransferBuilder, TransferBuilder
from sol_multisend.config import Settings
from sol_multisend.consensus import ClientFactory, ConsensusVerifier
from sol_multisend.endpoints import EndpointRegistry, build_endpoint_url

logger = logging.getLogger(__name__)


def verification_client_factory(settings: Settings) -> ClientFactory:
    """Opens one client per verification endpoint."""

    def factory(url: str) -> SolanaChainClient:
        # Status queries are at least as strict as the send confirmation.
        return SolanaChainClient(url, commitment="finalized", timeout=settings.rpc_timeout)

    return factory


@dataclass
class SendSession:
    """
    Everything one send invocation needs.

    `chain` is the primary connection used to build, send and confirm.
    `client_factory` opens short-lived clients for verification endpoints.
    """

    chain: ChainClient
    signer: Signer
    registry: EndpointRegistry
    settings: Settings = field(default_factory=Settings)
    builder: TransferBuilder = field(default_factory=SplTransferBuilder)
    client_factory: Optional[ClientFactory] = None

    def __post_init__(self) -> None:
        if self.client_factory is None:
            self.client_factory = verification_client_factory(self.settings)

    @classmethod
    def open(cls, settings: Settings, registry: EndpointRegistry, signer: Signer) -> "SendSession":
        """Connect to the registry's primary endpoint (or the network default)."""
        endpoint = registry.connection_endpoint()
        if endpoint is not None:
            url = build_endpoint_url(endpoint)
            logger.info("Primary RPC set to: %s", endpoint.label)
        else:
            url = settings.default_url
            logger.info("No endpoints configured; using default RPC %s", url)
        chain = SolanaChainClient(
            url,
            commitment=settings.commitment,
            timeout=settings.rpc_timeout,
            confirm_sleep=settings.confirm_sleep,
        )
        return cls(chain=chain, signer=signer, registry=registry, settings=settings)

    def verifier(self) -> ConsensusVerifier:
        return ConsensusVerifier(self.registry, self.client_factory)

    async def close(self) -> None:
        await self.chain.close()

    async def __aenter__(self) -> "SendSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
