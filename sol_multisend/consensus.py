"""
Multi-endpoint consensus verification.

After a batch transaction is confirmed on the primary connection, every
enabled endpoint is asked (in parallel) for the signature's status. Only
endpoints reporting `finalized` count toward the quorum. The verdict is
advisory: it is logged and returned, never used to undo a completed batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from sol_multisend.chain import ChainClient, SignatureStatus
from sol_multisend.config import RECOMMENDED_ENDPOINTS
from sol_multisend.endpoints import EndpointRegistry, build_endpoint_url
from sol_multisend.errors import VerificationError
from sol_multisend.models import ConsensusOutcome, Endpoint, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], ChainClient]


def _stringify_err(err: Any) -> str:
    try:
        return json.dumps(err)
    except (TypeError, ValueError):
        return str(err)


def map_signature_status(label: str, status) -> VerificationResult:
    """Translate one endpoint's signature status into a VerificationResult."""
    if status is None:
        return VerificationResult(label, False, VerificationStatus.NOT_FOUND,
                                  "Transaction not recognized by this endpoint")
    if status.err:
        return VerificationResult(label, False, VerificationStatus.ERROR, _stringify_err(status.err))
    tier = status.confirmation_status
    if tier == "finalized":
        return VerificationResult(label, True, VerificationStatus.FINALIZED)
    if tier == "confirmed":
        return VerificationResult(label, True, VerificationStatus.CONFIRMED)
    if tier == "processed":
        return VerificationResult(label, False, VerificationStatus.PROCESSED,
                                  "Only processed, not yet confirmed")
    return VerificationResult(label, False, VerificationStatus.UNKNOWN,
                              f"Unexpected confirmation status: {tier!r}")


class ConsensusVerifier:
    """Checks a signature's finality across all enabled endpoints."""

    def __init__(self, registry: EndpointRegistry, client_factory: ClientFactory):
        self.registry = registry
        self.client_factory = client_factory

    async def query_endpoint(self, signature: str, endpoint: Endpoint) -> Optional[SignatureStatus]:
        """Raw status from one endpoint. Any failure is raised as VerificationError."""
        try:
            client = self.client_factory(build_endpoint_url(endpoint))
            try:
                return await client.get_signature_status(signature, search_history=True)
            finally:
                await client.close()
        except Exception as e:
            raise VerificationError(endpoint.label, str(e) or type(e).__name__) from e

    async def verify_on_endpoint(self, signature: str, endpoint: Endpoint) -> VerificationResult:
        """Query one endpoint. A VerificationError becomes an `error` result."""
        try:
            status = await self.query_endpoint(signature, endpoint)
        except VerificationError as e:
            logger.debug("Status query failed on %s: %s", e.endpoint_label, e)
            return VerificationResult(e.endpoint_label, False, VerificationStatus.ERROR, str(e))
        return map_signature_status(endpoint.label, status)

    async def verify(self, signature: str) -> ConsensusOutcome:
        endpoints = self.registry.list_enabled_endpoints()
        threshold = self.registry.min_consensus_threshold()

        if not endpoints:
            logger.warning("No RPC endpoints enabled for verification. Skipping consensus check.")
            return ConsensusOutcome(signature, False, 0, 0, threshold)

        if len(endpoints) < threshold:
            logger.warning(
                "Only %d endpoint(s) enabled but consensus threshold is %d: "
                "quorum cannot be reached for %s",
                len(endpoints), threshold, signature,
            )
        elif len(endpoints) < RECOMMENDED_ENDPOINTS:
            logger.warning(
                "Only %d endpoint(s) enabled. Recommend at least %d for reliable consensus.",
                len(endpoints), RECOMMENDED_ENDPOINTS,
            )

        logger.info("Consensus verification: querying %d endpoint(s) for %s", len(endpoints), signature)
        results = await asyncio.gather(
            *(self.verify_on_endpoint(signature, ep) for ep in endpoints)
        )

        confirmed = sum(1 for r in results if r.status is VerificationStatus.FINALIZED)
        outcome = ConsensusOutcome(
            signature=signature,
            consensus_reached=confirmed >= threshold,
            confirmed_count=confirmed,
            total_count=len(results),
            threshold=threshold,
            results=tuple(results),
        )

        for r in results:
            if r.success:
                logger.info("  %s: %s", r.endpoint_label, r.status.value)
            else:
                logger.warning("  %s: %s - %s", r.endpoint_label, r.status.value, r.error)

        if outcome.consensus_reached:
            logger.info("Consensus reached: %d/%d endpoints finalized (threshold: %d)",
                        confirmed, len(results), threshold)
        else:
            logger.warning(
                "Consensus NOT reached: only %d/%d endpoints finalized (threshold: %d). "
                "This may be network sync delay; check https://solscan.io/tx/%s",
                confirmed, len(results), threshold, signature,
            )
        return outcome
