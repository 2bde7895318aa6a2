"""
Runtime settings for sol-multisend, read from SOL_MULTISEND_* environment
variables. Command-line flags override these in cli.py.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

# Recipients per transaction. This is an upper bound, not a size guarantee: a
# transfer plus an account creation costs roughly 90 bytes, so a batch of new
# token accounts exceeds the 1232-byte packet limit from about 10 recipients.
# Such a send fails and the batch is split like any other.
MAX_BATCH_SIZE = 12
DEFAULT_BATCH_SIZE = 8

DEFAULT_MIN_CONSENSUS = 2
# Below this many enabled verification endpoints a warning is logged.
RECOMMENDED_ENDPOINTS = 3

NETWORKS = ("mainnet", "devnet", "testnet")

# Used for the primary connection when no endpoint is configured at all.
DEFAULT_CLUSTER_URLS = {
    "mainnet": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
}


@dataclass
class Settings:
    network: str = "devnet"
    config_path: str = "config.json"
    keypair_path: str = "~/.config/solana/id.json"
    commitment: str = "confirmed"  # reads, blockhash, account lookups
    confirm_commitment: str = "finalized"  # waiting on a sent batch
    retry_delay: float = 0.5
    confirm_sleep: float = 0.5
    rpc_timeout: float = 30.0
    min_consensus: Optional[int] = None  # overrides the config file

    @property
    def default_url(self) -> str:
        return DEFAULT_CLUSTER_URLS[self.network]


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def get_settings() -> Settings:
    """Build settings from environment variables."""
    network = os.getenv("SOL_MULTISEND_NETWORK", "devnet").lower()
    if network not in NETWORKS:
        raise ValueError(f"SOL_MULTISEND_NETWORK must be one of {NETWORKS}, got {network!r}")
    min_consensus = os.getenv("SOL_MULTISEND_MIN_CONSENSUS")
    return Settings(
        network=network,
        config_path=os.getenv("SOL_MULTISEND_CONFIG", "config.json"),
        keypair_path=os.getenv("SOL_MULTISEND_KEYPAIR", "~/.config/solana/id.json"),
        commitment=os.getenv("SOL_MULTISEND_COMMITMENT", "confirmed"),
        confirm_commitment=os.getenv("SOL_MULTISEND_CONFIRM_COMMITMENT", "finalized"),
        retry_delay=_env_float("SOL_MULTISEND_RETRY_DELAY", 0.5),
        rpc_timeout=_env_float("SOL_MULTISEND_RPC_TIMEOUT", 30.0),
        min_consensus=int(min_consensus) if min_consensus else None,
    )
