"""
Tests for sol_multisend/consensus.py

Covers per-endpoint status mapping, quorum math and the parallel
fan-out's tolerance of failing endpoints.
"""

import asyncio
import logging

import pytest

from sol_multisend.chain import SignatureStatus
from sol_multisend.consensus import ConsensusVerifier, map_signature_status
from sol_multisend.errors import VerificationError
from sol_multisend.models import VerificationStatus

from tests.conftest import FakeStatusClient, make_registry


def verifier_for(clients: list, threshold: int = 2):
    registry = make_registry(len(clients), threshold=threshold)
    by_url = {f"https://rpc-{i}.test": client for i, client in enumerate(clients)}
    return ConsensusVerifier(registry, lambda url: by_url[url])


class TestStatusMapping:
    def test_not_found(self):
        r = map_signature_status("A", None)
        assert (r.success, r.status) == (False, VerificationStatus.NOT_FOUND)

    def test_error_payload_stringified(self):
        r = map_signature_status("A", SignatureStatus("finalized", err={"InstructionError": [0, "Custom"]}))
        assert r.status is VerificationStatus.ERROR
        assert not r.success
        assert r.error == '{"InstructionError": [0, "Custom"]}'

    @pytest.mark.parametrize("tier,success,status", [
        ("finalized", True, VerificationStatus.FINALIZED),
        ("confirmed", True, VerificationStatus.CONFIRMED),
        ("processed", False, VerificationStatus.PROCESSED),
        (None, False, VerificationStatus.UNKNOWN),
        ("rooted", False, VerificationStatus.UNKNOWN),
    ])
    def test_tiers(self, tier, success, status):
        r = map_signature_status("A", SignatureStatus(tier))
        assert r.success is success
        assert r.status is status
        assert r.endpoint_label == "A"


class TestVerify:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("finalized,reached", [(0, False), (1, False), (2, True), (3, True), (5, True)])
    async def test_quorum_math(self, finalized, reached):
        clients = [
            FakeStatusClient(SignatureStatus("finalized" if i < finalized else "confirmed"))
            for i in range(5)
        ]
        outcome = await verifier_for(clients, threshold=2).verify("sig")
        assert outcome.consensus_reached is reached
        assert outcome.confirmed_count == finalized
        assert outcome.total_count == 5

    @pytest.mark.asyncio
    async def test_confirmed_tier_does_not_count(self):
        clients = [FakeStatusClient(SignatureStatus("confirmed")) for _ in range(3)]
        outcome = await verifier_for(clients).verify("sig")
        assert all(r.success for r in outcome.results)
        assert outcome.confirmed_count == 0
        assert not outcome.consensus_reached

    @pytest.mark.asyncio
    async def test_failing_endpoints_still_reported(self):
        clients = [
            FakeStatusClient(exc=asyncio.TimeoutError("timed out")),
            FakeStatusClient(None),
            FakeStatusClient(SignatureStatus("finalized")),
        ]
        outcome = await verifier_for(clients).verify("sig")
        assert len(outcome.results) == 3
        assert outcome.confirmed_count == 1
        assert [r.status for r in outcome.results] == [
            VerificationStatus.ERROR,
            VerificationStatus.NOT_FOUND,
            VerificationStatus.FINALIZED,
        ]
        assert outcome.results[0].error == "timed out"
        assert all(c.closed for c in clients)

    @pytest.mark.asyncio
    async def test_results_follow_endpoint_order(self):
        class SlowClient(FakeStatusClient):
            def __init__(self, delay, tier):
                super().__init__(SignatureStatus(tier))
                self.delay = delay

            async def get_signature_status(self, signature, search_history=True):
                await asyncio.sleep(self.delay)
                return await super().get_signature_status(signature, search_history)

        clients = [SlowClient(0.03, "finalized"), SlowClient(0.0, "processed"), SlowClient(0.01, "confirmed")]
        outcome = await verifier_for(clients).verify("sig")
        assert [r.endpoint_label for r in outcome.results] == ["Endpoint 0", "Endpoint 1", "Endpoint 2"]
        assert [r.status.value for r in outcome.results] == ["finalized", "processed", "confirmed"]

    @pytest.mark.asyncio
    async def test_client_factory_failure_is_an_error_result(self):
        registry = make_registry(2)

        def factory(url):
            raise ValueError("bad url")

        outcome = await ConsensusVerifier(registry, factory).verify("sig")
        assert [r.status for r in outcome.results] == [VerificationStatus.ERROR] * 2
        assert outcome.results[0].error == "bad url"

    @pytest.mark.asyncio
    async def test_query_failure_raises_verification_error(self):
        registry = make_registry(1)
        client = FakeStatusClient(exc=ConnectionError())
        verifier = ConsensusVerifier(registry, lambda url: client)

        with pytest.raises(VerificationError) as exc_info:
            await verifier.query_endpoint("sig", registry.list_enabled_endpoints()[0])
        assert exc_info.value.endpoint_label == "Endpoint 0"
        assert str(exc_info.value) == "ConnectionError"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert client.closed

    @pytest.mark.asyncio
    async def test_no_endpoints(self, caplog):
        verifier = ConsensusVerifier(make_registry(0), lambda url: pytest.fail("no query expected"))
        with caplog.at_level(logging.WARNING):
            outcome = await verifier.verify("sig")
        assert (outcome.consensus_reached, outcome.confirmed_count, outcome.total_count) == (False, 0, 0)
        assert outcome.results == ()
        assert "No RPC endpoints enabled" in caplog.text

    @pytest.mark.asyncio
    async def test_fewer_endpoints_than_threshold_warns(self, caplog):
        clients = [FakeStatusClient(SignatureStatus("finalized"))]
        with caplog.at_level(logging.WARNING):
            outcome = await verifier_for(clients, threshold=2).verify("sig")
        assert not outcome.consensus_reached
        assert "quorum cannot be reached" in caplog.text

    @pytest.mark.asyncio
    async def test_summary(self):
        clients = [FakeStatusClient(SignatureStatus("finalized")), FakeStatusClient(None)]
        outcome = await verifier_for(clients, threshold=1).verify("sig")
        text = outcome.summary()
        assert "REACHED: 1/2" in text
        assert "not_found" in text
