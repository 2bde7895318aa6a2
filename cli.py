#!/usr/bin/env python3
"""
sol-multisend: CLI for batch SPL token transfers on Solana.

Usage:
    sol-multisend transfer --mint <mint> --file <path> [--keypair <path>] [--network <net>]
    sol-multisend validate --file <path> [--decimals <n>]
    sol-multisend verify --signature <sig> [--network <net>]
    sol-multisend endpoints [--network <net>]
    sol-multisend generate-template --output <path> [--format csv|json|txt] [--count <n>]

Examples:
    # Send tokens to every recipient in a file (devnet), 8 per transaction
    sol-multisend transfer --mint <MINT> --file recipients.txt --batch-size 8

    # Check a recipient list without sending anything
    sol-multisend validate --file recipients.csv --decimals 6

    # Re-run the multi-endpoint finality check for a signature
    sol-multisend verify --signature <SIG> --network mainnet
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from sol_multisend import __version__
from sol_multisend.amounts import format_amount
from sol_multisend.batch import send_multisend
from sol_multisend.chain import KeypairSigner
from sol_multisend.config import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE, NETWORKS, Settings, get_settings
from sol_multisend.consensus import ConsensusVerifier
from sol_multisend.endpoints import EndpointRegistry, obfuscate_api_key
from sol_multisend.errors import MultisendError
from sol_multisend.models import SendOutcome
from sol_multisend.recipients import (
    normalize_recipients,
    parse_recipients_file,
    read_recipients_text,
    render_template,
    validate_recipients,
)
from sol_multisend.session import SendSession, verification_client_factory


BANNER = """
  sol-multisend
  Batch SPL token transfers with multi-RPC verification
"""

# Sample addresses for templates (well-known program ids, replace before use)
SAMPLE_ADDRESSES = [
    "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL",
    "11111111111111111111111111111111",
]


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if getattr(args, "network", None):
        settings.network = args.network
    if getattr(args, "config", None):
        settings.config_path = args.config
    if getattr(args, "keypair", None):
        settings.keypair_path = args.keypair
    if getattr(args, "min_consensus", None):
        settings.min_consensus = args.min_consensus
    return settings


def _registry(settings: Settings) -> EndpointRegistry:
    return EndpointRegistry.from_config(
        settings.config_path, settings.network, threshold_override=settings.min_consensus
    )


async def _run_transfer(
    settings: Settings,
    registry: EndpointRegistry,
    signer: KeypairSigner,
    mint: str,
    recipients_text: str,
    batch_size: int,
) -> SendOutcome:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        print("\nStopping after the current batch (Ctrl-C again to abort)...")
        stop.set()
        loop.remove_signal_handler(signal.SIGINT)

    # Not available on Windows event loops.
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, request_stop)

    async with SendSession.open(settings, registry, signer) as session:
        return await send_multisend(session, mint, recipients_text, batch_size, stop_event=stop)


def cmd_transfer(args: argparse.Namespace) -> int:
    """Execute batch transfer."""
    print(BANNER)
    try:
        settings = _settings_from_args(args)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    try:
        recipients_text = normalize_recipients(read_recipients_text(args.file))
    except (OSError, ValueError, MultisendError) as e:
        print(f"Error reading file: {e}")
        return 1

    if not 1 <= args.batch_size <= MAX_BATCH_SIZE:
        print(f"Batch size 1-{MAX_BATCH_SIZE} required.")
        return 1

    try:
        signer = KeypairSigner.from_file(settings.keypair_path)
    except (OSError, ValueError, MultisendError) as e:
        print(f"Error loading keypair {settings.keypair_path}: {e}")
        return 1

    registry = _registry(settings)
    line_count = len(recipients_text.splitlines())
    print(f"Loaded {line_count} recipients from {args.file}")
    print(f"Network: {settings.network}")
    print(f"Sender: {signer.pubkey}")
    print(f"Mint: {args.mint}")
    print(f"Batch size: {args.batch_size}")
    print(f"Verification endpoints: {len(registry.list_enabled_endpoints())} "
          f"(threshold: {registry.min_consensus_threshold()})")

    if not args.yes:
        response = input(f"\nProceed with transfer to {line_count} recipients? [y/N]: ")
        if response.lower() not in ("y", "yes"):
            print("Aborted.")
            return 0

    print("\nExecuting batch transfer...")
    try:
        outcome = asyncio.run(_run_transfer(
            settings, registry, signer, args.mint, recipients_text, args.batch_size,
        ))
    except MultisendError as e:
        print(f"Error: {e}")
        return 1

    print()
    print(outcome.summary())
    return 0 if outcome.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a recipient list."""
    print(BANNER)

    try:
        recipients = parse_recipients_file(args.file, args.decimals)
    except (OSError, ValueError, MultisendError) as e:
        print(f"Error parsing file: {e}")
        return 1

    print(f"Loaded {len(recipients)} recipients from {args.file}")
    is_valid, errors, warnings = validate_recipients(recipients)

    for warning in warnings:
        print(f"  ! {warning}")

    if not is_valid:
        print(f"\n✗ Found {len(errors)} validation errors:")
        for err in errors:
            print(f"  ✗ {err}")
        return 1

    d = args.decimals
    total = sum(r.amount for r in recipients)
    print(f"\n✓ All {len(recipients)} recipients are valid")
    print(f"  Total amount: {format_amount(total, d)}")
    print(f"  Min: {format_amount(min(r.amount for r in recipients), d)}")
    print(f"  Max: {format_amount(max(r.amount for r in recipients), d)}")

    print("\nPreview (first 5):")
    for r in recipients[:5]:
        label = f" ({r.label})" if r.label else ""
        print(f"  {r.address[:16]}...{r.address[-8:]} → {format_amount(r.amount, d)}{label}")
    if len(recipients) > 5:
        print(f"  ... and {len(recipients) - 5} more")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Run consensus verification for an existing signature."""
    try:
        settings = _settings_from_args(args)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1
    registry = _registry(settings)
    verifier = ConsensusVerifier(registry, verification_client_factory(settings))

    outcome = asyncio.run(verifier.verify(args.signature))
    print(outcome.summary())
    return 0 if outcome.consensus_reached else 1


def cmd_endpoints(args: argparse.Namespace) -> int:
    """List configured endpoints for a network."""
    try:
        settings = _settings_from_args(args)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1
    registry = _registry(settings)
    endpoints = registry.endpoints()
    if not endpoints:
        print(f"No endpoints configured for {settings.network} in {settings.config_path}.")
        print(f"Default RPC: {settings.default_url}")
        return 0

    connection = registry.connection_endpoint()
    print(f"{settings.network} endpoints ({len(registry.list_enabled_endpoints())} enabled, "
          f"threshold {registry.min_consensus_threshold()}):")
    for ep in endpoints:
        flags = [
            "primary" if connection is not None and ep.id == connection.id else "",
            "enabled" if ep.enabled else "disabled",
        ]
        key = obfuscate_api_key(ep.api_key) if ep.api_key else "None"
        print(f"  [{', '.join(f for f in flags if f)}] {ep.label} ({ep.id})")
        print(f"      URL: {ep.url}")
        print(f"      API Key: {key}")
    return 0


def cmd_generate_template(args: argparse.Namespace) -> int:
    """Generate a template recipient file."""
    print(BANNER)
    output = Path(args.output)
    labels = ["Alice", "Bob", "Charlie", "Dave", "Eve"]

    with open(output, "w", newline="") as f:
        f.write(render_template(SAMPLE_ADDRESSES, args.count, args.format, labels))

    print(f"Generated template with {args.count} recipients: {output}")
    print(f"Format: {args.format.upper()}")
    print("\nEdit the file with your actual recipient addresses and amounts,")
    print(f"then run: sol-multisend validate --file {output}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="sol-multisend",
        description="Batch SPL token transfers with multi-RPC consensus verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"sol-multisend {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_network_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--network", "-n", choices=NETWORKS,
            help="Solana cluster. Default: $SOL_MULTISEND_NETWORK or devnet"
        )
        p.add_argument(
            "--config", help="Endpoint config JSON. Default: $SOL_MULTISEND_CONFIG or config.json"
        )
        p.add_argument(
            "--min-consensus", type=int,
            help="Endpoints that must report finalized (overrides the config file)"
        )

    # Transfer command
    transfer_parser = subparsers.add_parser(
        "transfer", help="Execute batch token transfers"
    )
    transfer_parser.add_argument(
        "--mint", "-m", required=True, help="Token mint address"
    )
    transfer_parser.add_argument(
        "--file", "-f", required=True, help="Recipient list (address, amount lines; CSV or JSON)"
    )
    transfer_parser.add_argument(
        "--keypair", "-k", help="Sender keypair file. Default: $SOL_MULTISEND_KEYPAIR"
    )
    transfer_parser.add_argument(
        "--batch-size", "-b", type=int, default=DEFAULT_BATCH_SIZE,
        help=f"Recipients per transaction (1-{MAX_BATCH_SIZE}). Default: {DEFAULT_BATCH_SIZE}"
    )
    transfer_parser.add_argument(
        "--yes", "-y", action="store_true", help="Skip confirmation prompt"
    )
    add_network_args(transfer_parser)

    # Validate command
    validate_parser = subparsers.add_parser(
        "validate", help="Validate a recipient list"
    )
    validate_parser.add_argument(
        "--file", "-f", required=True, help="Path to recipient list"
    )
    validate_parser.add_argument(
        "--decimals", "-d", type=int, default=6, help="Token decimals. Default: 6"
    )

    # Verify command
    verify_parser = subparsers.add_parser(
        "verify", help="Check a signature's finality across all enabled endpoints"
    )
    verify_parser.add_argument(
        "--signature", "-s", required=True, help="Transaction signature"
    )
    add_network_args(verify_parser)

    # Endpoints command
    endpoints_parser = subparsers.add_parser(
        "endpoints", help="List configured RPC endpoints"
    )
    add_network_args(endpoints_parser)

    # Generate template command
    template_parser = subparsers.add_parser(
        "generate-template", help="Generate a template recipient file"
    )
    template_parser.add_argument(
        "--output", "-o", default="recipients.csv", help="Output file path"
    )
    template_parser.add_argument(
        "--format", choices=["csv", "json", "txt"], default="csv", help="File format"
    )
    template_parser.add_argument(
        "--count", "-c", type=int, default=5, help="Number of sample recipients"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "transfer": cmd_transfer,
        "validate": cmd_validate,
        "verify": cmd_verify,
        "endpoints": cmd_endpoints,
        "generate-template": cmd_generate_template,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
