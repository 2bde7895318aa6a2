"""
Exception taxonomy for sol-multisend.

Invocation-fatal errors (ValidationError and anything raised while the
send session is being set up) stop the whole run. AttemptError and its
subclasses are per-attempt failures that the batch submitter recovers
from by retrying and splitting.
"""

from __future__ import annotations

from typing import Any, Optional


class MultisendError(Exception):
    """Base class for all sol-multisend errors."""


class ValidationError(MultisendError):
    """Bad input detected before any submission begins."""


class RpcConnectionError(MultisendError):
    """The primary RPC connection failed while the send was being set up."""


class AttemptError(MultisendError):
    """A single submission attempt failed."""

    kind = "attempt_error"


class SubmissionError(AttemptError):
    """Network or signing failure before the transaction was broadcast."""

    kind = "submission_error"


class SignerRejected(SubmissionError):
    """The signer refused to sign the transaction."""


class SimulationError(AttemptError):
    """Dry-run rejected the transaction."""

    kind = "simulation_error"

    def __init__(self, err: Any, logs: Optional[list[str]] = None):
        super().__init__(f"Simulation error: {err}")
        self.err = err
        self.logs = list(logs or [])


class ConfirmationError(AttemptError):
    """Broadcast succeeded but on-chain execution reported an error."""

    kind = "confirmation_error"

    def __init__(self, err: Any, signature: Optional[str] = None):
        super().__init__(f"Transaction {signature or '?'} failed on-chain: {err}")
        self.err = err
        self.signature = signature


class ConfirmationTimeout(AttemptError):
    """The blockhash expired before the signature reached the target commitment."""

    kind = "confirmation_timeout"

    def __init__(self, signature: Optional[str] = None, message: str = ""):
        super().__init__(message or f"Confirmation timed out for {signature or '?'}")
        self.signature = signature


class VerificationError(MultisendError):
    """A single endpoint could not answer a status query."""

    def __init__(self, endpoint_label: str, message: str):
        super().__init__(message)
        self.endpoint_label = endpoint_label
