"""
sol-multisend: batch SPL token transfers on Solana.

Sends many token transfers in small atomic transactions, isolates bad
recipients by retrying and splitting failed batches, and cross-checks
every confirmed transaction against several independent RPC endpoints.
"""

__version__ = "0.1.0"
