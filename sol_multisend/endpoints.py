"""
RPC endpoint registry.

Endpoints are configured per network in a JSON file:

    {
        "rpc": {
            "mainnet": [{"id": "helius", "label": "Helius", "url": "...", "apiKey": "..."}],
            "devnet": [...],
            "testnet": [...]
        },
        "primary": {"mainnet": "helius"},
        "minConsensusThreshold": 2
    }

The registry is read-only while a send is running.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sol_multisend.config import DEFAULT_MIN_CONSENSUS, NETWORKS
from sol_multisend.models import Endpoint

logger = logging.getLogger(__name__)

_API_KEY_PARAMS = ("api-key", "apikey")


def build_endpoint_url(endpoint: Endpoint) -> str:
    """Request URL for `endpoint`, with its API key appended if it has one."""
    if not endpoint.api_key:
        return endpoint.url
    sep = "&" if "?" in endpoint.url else "?"
    return f"{endpoint.url}{sep}api-key={endpoint.api_key}"


def split_api_key(url: str) -> tuple[str, str]:
    """Pull an `api-key`/`apikey` query parameter out of `url`."""
    parts = urlsplit(url)
    if not parts.query:
        return url, ""
    key = ""
    kept = []
    for name, value in parse_qsl(parts.query, keep_blank_values=True):
        if name in _API_KEY_PARAMS:
            key = key or value
        else:
            kept.append((name, value))
    if not key:
        return url, ""
    return urlunsplit(parts._replace(query=urlencode(kept))), key


def obfuscate_api_key(key: str) -> str:
    if not key or len(key) < 8:
        return "••••••"
    return key[:4] + "••••" + key[-4:]


def _coerce_threshold(value) -> int:
    try:
        threshold = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MIN_CONSENSUS
    return threshold if threshold > 0 else DEFAULT_MIN_CONSENSUS


def load_config(path: str | Path) -> dict:
    """
    Load the endpoint config file.

    A missing or malformed file is not fatal: it yields empty endpoint
    lists and a warning.
    """
    empty = {"rpc": {net: [] for net in NETWORKS}, "primary": {},
             "minConsensusThreshold": DEFAULT_MIN_CONSENSUS}
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("Endpoint config %s not found; no endpoints configured", path)
        return empty
    except json.JSONDecodeError as e:
        logger.warning("Endpoint config %s is not valid JSON (%s); no endpoints configured", path, e)
        return empty

    if not isinstance(data, dict) or not isinstance(data.get("rpc"), dict):
        logger.warning('Endpoint config %s is missing the "rpc" object', path)
        return empty

    rpc = {}
    for net in NETWORKS:
        entries = data["rpc"].get(net)
        rpc[net] = entries if isinstance(entries, list) else []
    primary = data.get("primary") if isinstance(data.get("primary"), dict) else {}
    return {
        "rpc": rpc,
        "primary": primary,
        "minConsensusThreshold": _coerce_threshold(
            data.get("minConsensusThreshold", DEFAULT_MIN_CONSENSUS)
        ),
    }


class EndpointRegistry:
    """Ordered endpoint lists per network plus the primary selection."""

    def __init__(
        self,
        endpoints_by_network: Optional[dict[str, list[Endpoint]]] = None,
        network: str = "devnet",
        primary_by_network: Optional[dict[str, Optional[str]]] = None,
        min_consensus_threshold: int = DEFAULT_MIN_CONSENSUS,
    ):
        self.network = network
        self._endpoints = {net: [] for net in NETWORKS}
        for net, endpoints in (endpoints_by_network or {}).items():
            self._endpoints[net] = list(endpoints)
        self._primary = dict(primary_by_network or {})
        self._threshold = _coerce_threshold(min_consensus_threshold)

    @classmethod
    def from_config(
        cls,
        path: str | Path,
        network: str,
        threshold_override: Optional[int] = None,
    ) -> "EndpointRegistry":
        config = load_config(path)
        endpoints = {}
        for net, entries in config["rpc"].items():
            endpoints[net] = []
            for i, entry in enumerate(entries):
                try:
                    endpoints[net].append(Endpoint.from_dict(entry))
                except (KeyError, TypeError) as e:
                    logger.warning("Skipping %s endpoint #%d in %s: missing %s", net, i + 1, path, e)
        registry = cls(
            endpoints,
            network=network,
            primary_by_network=config["primary"],
            min_consensus_threshold=threshold_override or config["minConsensusThreshold"],
        )
        logger.info(
            "Loaded endpoints from %s: %s", path,
            ", ".join(f"{net}={len(eps)}" for net, eps in endpoints.items()),
        )
        return registry

    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints.get(self.network, []))

    def list_enabled_endpoints(self) -> list[Endpoint]:
        return [ep for ep in self._endpoints.get(self.network, []) if ep.enabled]

    def primary_endpoint(self) -> Optional[Endpoint]:
        primary_id = self._primary.get(self.network)
        if not primary_id:
            return None
        return next((ep for ep in self._endpoints.get(self.network, []) if ep.id == primary_id), None)

    def min_consensus_threshold(self) -> int:
        return self._threshold

    def connection_endpoint(self) -> Optional[Endpoint]:
        """Endpoint that backs the sending connection: primary, else first enabled, else first."""
        endpoints = self._endpoints.get(self.network, [])
        return (
            self.primary_endpoint()
            or next((ep for ep in endpoints if ep.enabled), None)
            or (endpoints[0] if endpoints else None)
        )

    def set_primary(self, endpoint_id: str) -> None:
        if not any(ep.id == endpoint_id for ep in self._endpoints.get(self.network, [])):
            raise KeyError(f"No {self.network} endpoint with id {endpoint_id!r}")
        self._primary[self.network] = endpoint_id

    def add_endpoint(self, label: str, url: str, api_key: str = "", enabled: bool = True) -> Endpoint:
        """Add a custom endpoint; an API key embedded in `url` is moved to `api_key`."""
        stripped, key_from_url = split_api_key(url)
        if key_from_url and not api_key:
            api_key = key_from_url
            url = stripped
        taken = {ep.id for ep in self._endpoints.get(self.network, [])}
        endpoint_id = f"custom-{uuid.uuid4().hex[:8]}"
        while endpoint_id in taken:
            endpoint_id = f"custom-{uuid.uuid4().hex[:8]}"
        endpoint = Endpoint(id=endpoint_id, label=label, url=url, api_key=api_key, enabled=enabled)
        self._endpoints.setdefault(self.network, []).append(endpoint)
        return endpoint
