"""
Batch submission for sol-multisend.

Recipients are split into batches of at most MAX_BATCH_SIZE and each
batch is sent as one atomic transaction: every account creation and
transfer instruction lands together or not at all.

When a batch fails it is retried once with a simulation first (to get
program logs), and if that fails too it is split in half and each half
is processed the same way. A bad recipient is therefore isolated in
O(log n) attempts while valid recipients still go out in bulk.

Every confirmed batch is cross-checked against all enabled verification
endpoints; that check is advisory only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sol_multisend.amounts import format_amount
from sol_multisend.chain import MintContext, resolve_mint
from sol_multisend.config import MAX_BATCH_SIZE, RECOMMENDED_ENDPOINTS
from sol_multisend.consensus import ConsensusVerifier
from sol_multisend.errors import (
    AttemptError,
    ConfirmationError,
    MultisendError,
    RpcConnectionError,
    SimulationError,
    SubmissionError,
    ValidationError,
)
from sol_multisend.models import ConsensusOutcome, ProgressLedger, Recipient, SendOutcome
from sol_multisend.recipients import chunk_recipients, parse_recipients_text, validate_recipients
from sol_multisend.retry import sleep_backoff
from sol_multisend.session import SendSession

logger = logging.getLogger(__name__)


@dataclass
class PreparedBatch:
    """An unsigned batch transaction plus what is needed to confirm it."""

    transaction: Any
    blockhash: str
    last_valid_block_height: int
    created_accounts: int


def _rpc_hint(message: str) -> Optional[str]:
    lowered = message.lower()
    if "403" in message or "forbidden" in lowered:
        return "RPC returned 403 (forbidden). Use an RPC URL from your provider and try again."
    if "failed to get info about account" in lowered:
        return "RPC blocked account access. Use a provider RPC URL that allows it."
    return None


class BatchSubmitter:
    """
    Drives every recipient of a batch to a terminal state.

    Only this class writes to the ledger, and only from the running task.
    """

    def __init__(
        self,
        session: SendSession,
        mint: MintContext,
        ledger: ProgressLedger,
        verifier: Optional[ConsensusVerifier] = None,
    ):
        self.session = session
        self.mint = mint
        self.ledger = ledger
        self.verifier = verifier
        self.attempts = 0
        self.split_events = 0
        self.consensus: list[ConsensusOutcome] = []

    async def build_transaction(self, batch: Sequence[Recipient]) -> PreparedBatch:
        """
        Build the atomic transaction for `batch` with a fresh blockhash.

        Destination accounts are looked up concurrently on every call,
        since they may have been created by an earlier attempt.
        """
        chain, builder, ctx = self.session.chain, self.session.builder, self.mint
        commitment = self.session.settings.commitment

        latest = await chain.get_latest_blockhash(commitment)
        destinations = [builder.associated_account(r.address, ctx.mint, ctx.program_id) for r in batch]
        infos = await asyncio.gather(
            *(chain.get_account_info(dest, commitment) for dest in destinations)
        )

        instructions = []
        to_create = set()
        for r, dest, info in zip(batch, destinations, infos):
            if info is None and dest not in to_create:
                instructions.append(
                    builder.create_account_instruction(ctx.owner, r.address, ctx.mint, ctx.program_id)
                )
                to_create.add(dest)
            instructions.append(builder.transfer_instruction(ctx, dest, r.amount))

        return PreparedBatch(
            transaction=builder.compile(instructions, ctx.owner, latest.blockhash),
            blockhash=latest.blockhash,
            last_valid_block_height=latest.last_valid_block_height,
            created_accounts=len(to_create),
        )

    async def _submit(self, batch: Sequence[Recipient], simulate_first: bool, label: str) -> str:
        chain, signer = self.session.chain, self.session.signer

        try:
            prepared = await self.build_transaction(batch)
        except Exception as e:
            raise SubmissionError(f"Could not build batch transaction: {e}") from e
        logger.info("%sPrepared batch of %d. New accounts: %d",
                    label, len(batch), prepared.created_accounts)

        if simulate_first:
            try:
                sim = await chain.simulate(prepared.transaction)
            except Exception as e:
                raise SimulationError(str(e)) from e
            if sim.err:
                for line in sim.logs:
                    logger.error("%s  %s", label, line)
                raise SimulationError(sim.err, sim.logs)
            logger.info("%sSimulation OK.", label)

        try:
            signed = await signer.sign(prepared.transaction)
            signature = await chain.send_raw(signed)
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(str(e)) from e
        logger.info("%sTX sent: %s", label, signature)

        try:
            err = await chain.confirm(
                signature,
                prepared.blockhash,
                prepared.last_valid_block_height,
                self.session.settings.confirm_commitment,
            )
        except AttemptError:
            raise
        except Exception as e:
            raise ConfirmationError(str(e), signature) from e
        if err:
            raise ConfirmationError(err, signature)

        logger.info("%sConfirmed: https://solscan.io/tx/%s", label, signature)
        return signature

    async def try_send(
        self, batch: Sequence[Recipient], *, simulate_first: bool = False, label: str = ""
    ) -> Optional[str]:
        """One atomic attempt. Returns the signature, or None if the attempt failed."""
        self.attempts += 1
        try:
            return await self._submit(batch, simulate_first, label)
        except AttemptError as e:
            hint = _rpc_hint(str(e))
            if hint:
                logger.error("%s%s", label, hint)
            logger.error("%sBatch send error (%s): %s", label, e.kind, e)
            return None

    async def _verify(self, signature: str) -> None:
        if self.verifier is None:
            return
        outcome = await self.verifier.verify(signature)
        self.consensus.append(outcome)
        if not outcome.consensus_reached:
            logger.warning(
                "Consensus verification did not reach threshold for %s. "
                "Transaction may still be valid.", signature,
            )

    async def process_batch(
        self,
        batch: Sequence[Recipient],
        depth: int = 0,
        max_depth: Optional[int] = None,
    ) -> None:
        """
        Send `batch`, retrying once with simulation and then splitting in
        half until every recipient is completed or failed.
        """
        if not batch:
            return
        if max_depth is None:
            max_depth = len(batch).bit_length()
        if depth > max_depth:
            raise RuntimeError(f"Batch split depth {depth} exceeds {max_depth}")

        label = f"[Depth {depth}] " if depth else ""
        signature = await self.try_send(batch, label=label)
        if signature is None:
            await sleep_backoff(self.session.settings.retry_delay, 0)
            signature = await self.try_send(batch, simulate_first=True, label=f"{label}[Retry] ")

        if signature is not None:
            self.ledger.mark_completed(batch)
            await self._verify(signature)
            return

        if len(batch) == 1:
            self.ledger.mark_failed(batch[0])
            logger.error("%sRecipient failed permanently: %s", label, batch[0].address)
            return

        mid = len(batch) // 2
        left, right = batch[:mid], batch[mid:]
        self.split_events += 1
        logger.error("%sSplitting batch (%d) into %d + %d to isolate failures...",
                     label, len(batch), len(left), len(right))
        await self.process_batch(left, depth + 1, max_depth)
        await self.process_batch(right, depth + 1, max_depth)


async def ensure_sender_account(session: SendSession, ctx: MintContext) -> None:
    """Create the sender's associated token account if it does not exist yet."""
    chain, builder, signer = session.chain, session.builder, session.signer
    try:
        existing = await chain.get_account_info(ctx.source, session.settings.commitment)
    except Exception as e:
        raise RpcConnectionError(f"Could not look up sender token account {ctx.source}: {e}") from e
    if existing is not None:
        return

    logger.info("Sender token account missing, creating %s...", ctx.source)
    try:
        latest = await chain.get_latest_blockhash(session.settings.commitment)
        tx = builder.compile(
            [builder.create_account_instruction(ctx.owner, ctx.owner, ctx.mint, ctx.program_id)],
            ctx.owner,
            latest.blockhash,
        )
        signature = await chain.send_raw(await signer.sign(tx))
        logger.info("Sender account creation tx: %s", signature)
        err = await chain.confirm(
            signature, latest.blockhash, latest.last_valid_block_height, "finalized"
        )
    except AttemptError:
        raise
    except Exception as e:
        raise SubmissionError(f"Could not create sender token account: {e}") from e
    if err:
        raise ConfirmationError(err, signature)
    logger.info("Sender token account confirmed.")


def _log_endpoint_setup(session: SendSession) -> None:
    enabled = session.registry.list_enabled_endpoints()
    threshold = session.registry.min_consensus_threshold()
    logger.info("Verification endpoints enabled: %d", len(enabled))
    if len(enabled) < threshold:
        logger.warning(
            "%d verification endpoint(s) enabled but threshold is %d: consensus can never be reached.",
            len(enabled), threshold,
        )
    if len(enabled) < RECOMMENDED_ENDPOINTS:
        logger.warning("Less than %d RPC endpoints enabled for verification. Recommend enabling at least %d.",
                       RECOMMENDED_ENDPOINTS, RECOMMENDED_ENDPOINTS)
    else:
        logger.info("Using %d endpoints for consensus verification (threshold: %d)",
                    len(enabled), threshold)


def _check_recipients(recipients: list[Recipient]) -> list[Recipient]:
    if not recipients:
        raise ValidationError("Recipients list empty")
    is_valid, errors, warnings = validate_recipients(recipients)
    if not is_valid:
        raise ValidationError(
            f"Validation failed with {len(errors)} errors:\n" + "\n".join(errors)
        )
    for warning in warnings:
        logger.warning(warning)
    return recipients


async def send_multisend(
    session: SendSession,
    mint: str,
    recipients: str | list[Recipient],
    batch_size: int,
    *,
    stop_event: Optional[asyncio.Event] = None,
    verify: bool = True,
) -> SendOutcome:
    """
    Send `recipients` the `mint` token in batches of `batch_size`.

    `recipients` is either newline-delimited `address, amount` text
    (amounts in whole tokens) or already parsed Recipient objects
    (amounts in the smallest unit). Invalid input raises ValidationError
    before anything is submitted. `stop_event` is checked between
    batches only; an in-flight batch always runs to completion.
    """
    start_time = time.time()
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ValidationError(f"Batch size 1-{MAX_BATCH_SIZE} required, got {batch_size}")

    try:
        ctx = await resolve_mint(
            session.chain, session.builder, mint, session.signer.pubkey, session.settings.commitment
        )
    except MultisendError:
        raise
    except Exception as e:
        raise RpcConnectionError(f"Could not look up mint {mint}: {e}") from e
    if isinstance(recipients, str):
        parsed = parse_recipients_text(recipients, ctx.decimals)
    else:
        parsed = list(recipients)
    _check_recipients(parsed)

    await ensure_sender_account(session, ctx)
    _log_endpoint_setup(session)

    ledger = ProgressLedger()
    ordered = ledger.start(parsed)
    total = sum(r.amount for r in ordered)
    logger.info("Recipients: %d, Total: %s tokens.", len(ordered), format_amount(total, ctx.decimals))

    batches = chunk_recipients(ordered, batch_size)
    logger.info("Batches: %d (size %d)", len(batches), batch_size)

    submitter = BatchSubmitter(session, ctx, ledger, verifier=session.verifier() if verify else None)
    outcome = SendOutcome(decimals=ctx.decimals, batch_count=len(batches))

    for i, batch in enumerate(batches, start=1):
        if stop_event is not None and stop_event.is_set():
            logger.warning("Stop requested; %d batch(es) not attempted.", len(batches) - i + 1)
            outcome.stopped = True
            break
        logger.info("--- Batch %d/%d (recipients: %d) ---", i, len(batches), len(batch))
        await submitter.process_batch(batch)
        outcome.batches_processed += 1

    outcome.completed = ledger.completed
    outcome.failed = ledger.failed
    outcome.pending = ledger.pending
    outcome.split_events = submitter.split_events
    outcome.attempts = submitter.attempts
    outcome.consensus = list(submitter.consensus)
    outcome.duration_seconds = time.time() - start_time

    logger.info("Completed: %d / %d", len(outcome.completed), len(ordered))
    if outcome.failed:
        logger.error("Failed recipients: %d", len(outcome.failed))
        for r in outcome.failed:
            logger.error(" - %s", r.describe(ctx.decimals))
    elif not outcome.pending:
        logger.info("All recipients processed successfully.")
    return outcome
