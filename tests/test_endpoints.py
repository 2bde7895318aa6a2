"""Tests for sol_multisend/endpoints.py"""

import json
import logging

from sol_multisend.endpoints import (
    EndpointRegistry,
    build_endpoint_url,
    load_config,
    obfuscate_api_key,
    split_api_key,
)
from sol_multisend.models import Endpoint


def write_config(tmp_path, data) -> str:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


class TestEndpointUrl:
    def test_no_key(self):
        ep = Endpoint(id="a", label="A", url="https://rpc.test")
        assert build_endpoint_url(ep) == "https://rpc.test"

    def test_key_without_query(self):
        ep = Endpoint(id="a", label="A", url="https://rpc.test", api_key="k123")
        assert build_endpoint_url(ep) == "https://rpc.test?api-key=k123"

    def test_key_after_existing_query(self):
        ep = Endpoint(id="a", label="A", url="https://rpc.test/?x=1", api_key="k123")
        assert build_endpoint_url(ep) == "https://rpc.test/?x=1&api-key=k123"

    def test_split_api_key(self):
        assert split_api_key("https://rpc.test/?api-key=abc&x=1") == ("https://rpc.test/?x=1", "abc")
        assert split_api_key("https://rpc.test/?apikey=abc") == ("https://rpc.test/", "abc")
        assert split_api_key("https://rpc.test/?x=1") == ("https://rpc.test/?x=1", "")

    def test_obfuscate(self):
        assert obfuscate_api_key("abcdefghijkl") == "abcd••••ijkl"
        assert obfuscate_api_key("short") == "••••••"


class TestLoadConfig:
    def test_missing_file_is_not_fatal(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            config = load_config(tmp_path / "nope.json")
        assert config["rpc"]["mainnet"] == []
        assert config["minConsensusThreshold"] == 2
        assert "not found" in caplog.text

    def test_missing_rpc_key(self, tmp_path):
        config = load_config(write_config(tmp_path, {"other": 1}))
        assert config["rpc"] == {"mainnet": [], "devnet": [], "testnet": []}

    def test_non_list_network_coerced(self, tmp_path):
        config = load_config(write_config(tmp_path, {"rpc": {"devnet": "oops", "mainnet": []}}))
        assert config["rpc"]["devnet"] == []

    def test_bad_threshold_falls_back(self, tmp_path):
        config = load_config(write_config(tmp_path, {"rpc": {}, "minConsensusThreshold": 0}))
        assert config["minConsensusThreshold"] == 2


class TestRegistry:
    def make(self, tmp_path, **extra):
        data = {
            "rpc": {
                "devnet": [
                    {"id": "a", "label": "A", "url": "https://a.test", "enabled": False},
                    {"id": "b", "label": "B", "url": "https://b.test", "apiKey": "kb"},
                    {"id": "c", "label": "C", "url": "https://c.test"},
                    {"label": "broken"},
                ],
            },
            "minConsensusThreshold": 3,
        }
        data.update(extra)
        return EndpointRegistry.from_config(write_config(tmp_path, data), "devnet")

    def test_enabled_in_order(self, tmp_path):
        registry = self.make(tmp_path)
        assert [ep.id for ep in registry.list_enabled_endpoints()] == ["b", "c"]
        assert registry.min_consensus_threshold() == 3

    def test_threshold_override(self, tmp_path):
        path = write_config(tmp_path, {"rpc": {}, "minConsensusThreshold": 3})
        registry = EndpointRegistry.from_config(path, "devnet", threshold_override=1)
        assert registry.min_consensus_threshold() == 1

    def test_primary_from_config(self, tmp_path):
        registry = self.make(tmp_path, primary={"devnet": "c"})
        assert registry.primary_endpoint().id == "c"
        assert registry.connection_endpoint().id == "c"

    def test_connection_falls_back_to_first_enabled(self, tmp_path):
        registry = self.make(tmp_path)
        assert registry.primary_endpoint() is None
        assert registry.connection_endpoint().id == "b"

    def test_connection_falls_back_to_first(self):
        registry = EndpointRegistry(
            {"devnet": [Endpoint(id="x", label="X", url="https://x.test", enabled=False)]}
        )
        assert registry.connection_endpoint().id == "x"

    def test_empty_network(self):
        registry = EndpointRegistry({}, network="mainnet")
        assert registry.list_enabled_endpoints() == []
        assert registry.connection_endpoint() is None

    def test_other_network_isolated(self, tmp_path):
        registry = self.make(tmp_path)
        registry.network = "mainnet"
        assert registry.list_enabled_endpoints() == []

    def test_add_endpoint_extracts_key(self):
        registry = EndpointRegistry({}, network="devnet")
        ep = registry.add_endpoint("Helius", "https://rpc.helius.test/?api-key=secret")
        assert ep.api_key == "secret"
        assert ep.url == "https://rpc.helius.test/"
        assert build_endpoint_url(ep) == "https://rpc.helius.test/?api-key=secret"
        assert registry.list_enabled_endpoints() == [ep]

    def test_set_primary(self, tmp_path):
        registry = self.make(tmp_path)
        registry.set_primary("a")
        assert registry.connection_endpoint().id == "a"
