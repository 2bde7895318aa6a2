"""
Data model for sol-multisend.

Recipients carry exact integer amounts in the token's smallest unit.
The ProgressLedger is the only mutable piece: it partitions one send
invocation's recipients into pending / completed / failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional

from sol_multisend.amounts import format_amount


@dataclass(frozen=True)
class Recipient:
    """A single transfer line item."""

    address: str
    amount: int  # smallest token unit
    label: str = ""
    index: int = -1  # position within the send invocation, set by the ledger

    def describe(self, decimals: int) -> str:
        label = f" ({self.label})" if self.label else ""
        return f"{self.address} ({format_amount(self.amount, decimals)}){label}"


@dataclass
class Endpoint:
    """A configured read/write RPC endpoint."""

    id: str
    label: str
    url: str
    api_key: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Endpoint":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data["id"]),
            url=str(data["url"]),
            api_key=str(data.get("apiKey") or data.get("api_key") or ""),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "url": self.url,
            "apiKey": self.api_key,
            "enabled": self.enabled,
        }


class VerificationStatus(Enum):
    """Per-endpoint status of a signature."""

    FINALIZED = "finalized"
    CONFIRMED = "confirmed"
    PROCESSED = "processed"
    NOT_FOUND = "not_found"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VerificationResult:
    """What one endpoint reported for one signature."""

    endpoint_label: str
    success: bool
    status: VerificationStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class ConsensusOutcome:
    """Quorum verdict across all enabled endpoints."""

    signature: str
    consensus_reached: bool
    confirmed_count: int
    total_count: int
    threshold: int
    results: tuple[VerificationResult, ...] = ()

    def summary(self) -> str:
        verdict = "REACHED" if self.consensus_reached else "NOT REACHED"
        lines = [
            f"=== Consensus {verdict}: {self.confirmed_count}/{self.total_count} "
            f"finalized (threshold: {self.threshold}) ===",
            f"Signature: {self.signature}",
        ]
        for r in self.results:
            mark = "ok" if r.success else "!!"
            detail = f" - {r.error}" if r.error else ""
            lines.append(f"  [{mark}] {r.endpoint_label}: {r.status.value}{detail}")
        return "\n".join(lines)


class ProgressLedger:
    """
    Tracks which recipients of one send invocation are pending, completed
    or failed. A recipient moves out of pending exactly once.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    def __init__(self) -> None:
        self.recipients: list[Recipient] = []
        self._state: dict[int, str] = {}

    def start(self, recipients: Iterable[Recipient]) -> list[Recipient]:
        """Reset the ledger and return the recipients with positions assigned."""
        self.recipients = [replace(r, index=i) for i, r in enumerate(recipients)]
        self._state = {r.index: self.PENDING for r in self.recipients}
        return list(self.recipients)

    def state_of(self, recipient: Recipient) -> str:
        try:
            return self._state[recipient.index]
        except KeyError:
            raise KeyError(f"Recipient {recipient.address} is not part of this ledger")

    def _settle(self, recipient: Recipient, state: str) -> None:
        current = self.state_of(recipient)
        if current != self.PENDING:
            raise ValueError(
                f"Recipient #{recipient.index + 1} ({recipient.address}) is already {current}"
            )
        self._state[recipient.index] = state

    def mark_completed(self, batch: Iterable[Recipient]) -> None:
        for r in batch:
            self._settle(r, self.COMPLETED)

    def mark_failed(self, recipient: Recipient) -> None:
        self._settle(recipient, self.FAILED)

    def _with_state(self, state: str) -> list[Recipient]:
        return [r for r in self.recipients if self._state[r.index] == state]

    @property
    def pending(self) -> list[Recipient]:
        return self._with_state(self.PENDING)

    @property
    def completed(self) -> list[Recipient]:
        return self._with_state(self.COMPLETED)

    @property
    def failed(self) -> list[Recipient]:
        return self._with_state(self.FAILED)

    @property
    def is_settled(self) -> bool:
        return self.PENDING not in self._state.values()


@dataclass
class SendOutcome:
    """Result of one send invocation."""

    completed: list[Recipient] = field(default_factory=list)
    failed: list[Recipient] = field(default_factory=list)
    pending: list[Recipient] = field(default_factory=list)
    decimals: int = 0
    batch_count: int = 0
    batches_processed: int = 0
    split_events: int = 0
    attempts: int = 0
    consensus: list[ConsensusOutcome] = field(default_factory=list)
    stopped: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed and not self.pending

    @property
    def total_amount(self) -> int:
        return sum(r.amount for r in self.completed)

    def summary(self) -> str:
        """Human-readable summary of the send."""
        status = "SUCCESS" if self.success else ("STOPPED" if self.stopped else "PARTIAL")
        total = len(self.completed) + len(self.failed) + len(self.pending)
        lines = [
            f"=== SPL Multisend: {status} ===",
            f"Completed: {len(self.completed)} / {total}",
            f"Transferred: {format_amount(self.total_amount, self.decimals)} tokens",
            f"Batches processed: {self.batches_processed} / {self.batch_count}",
            f"Transactions attempted: {self.attempts}",
            f"Split events: {self.split_events}",
        ]
        unverified = sum(1 for c in self.consensus if not c.consensus_reached)
        if self.consensus:
            lines.append(
                f"Consensus checks: {len(self.consensus)} ({unverified} below threshold)"
            )
        lines.append(f"Duration: {self.duration_seconds:.1f}s")
        if self.failed:
            lines.append(f"Failed recipients ({len(self.failed)}):")
            lines.extend(f"  - {r.describe(self.decimals)}" for r in self.failed)
        if self.pending:
            lines.append(f"Not attempted ({len(self.pending)}):")
            lines.extend(f"  - {r.describe(self.decimals)}" for r in self.pending)
        return "\n".join(lines)
