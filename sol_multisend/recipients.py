"""
Recipient list handling.

The primary input is newline-delimited text, one `address, amount` per
line. CSV and JSON files are accepted as well:

    address,amount[,label]
    9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin,10.5,Alice

    [{"address": "9xQe...", "amount": "10.5", "label": "Alice"}]

Amounts are decimal strings converted exactly into the mint's smallest unit.
"""

from __future__ import annotations

import csv
import json
import re
from pathlib import Path
from typing import Callable, Optional

from sol_multisend.amounts import format_amount, parse_amount
from sol_multisend.chain import is_valid_address
from sol_multisend.errors import ValidationError
from sol_multisend.models import Recipient

_ODD_SPACES = re.compile("[\u00a0\u2000-\u200b\u202f\ufeff]")
_WHITESPACE = re.compile(r"\s+")


def normalize_recipients(raw: str) -> str:
    """
    Clean up pasted recipient text.

    CRLF becomes LF, unicode spaces become plain spaces, blank lines are
    dropped, and all whitespace inside the address part is removed.
    """
    if not raw:
        return ""
    text = _ODD_SPACES.sub(" ", raw.replace("\r\n", "\n").replace("\r", "\n"))
    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        addr, sep, amount = line.partition(",")
        if not sep:
            lines.append(line)  # malformed; the parser reports it
            continue
        lines.append(f"{_WHITESPACE.sub('', addr)}, {amount.strip()}")
    return "\n".join(lines)


def _make_recipient(
    address: str,
    amount_str: str,
    decimals: int,
    where: str,
    label: str = "",
    address_ok: Callable[[str], bool] = is_valid_address,
) -> Recipient:
    if not address:
        raise ValidationError(f"{where}: missing address")
    if not address_ok(address):
        raise ValidationError(f"{where}: bad address {address}")
    try:
        amount = parse_amount(amount_str, decimals)
    except ValueError:
        raise ValidationError(f"{where}: invalid amount '{amount_str}'")
    if amount <= 0:
        raise ValidationError(f"{where}: amount must be > 0")
    return Recipient(address=address, amount=amount, label=label)


def parse_recipients_text(
    text: str,
    decimals: int,
    address_ok: Callable[[str], bool] = is_valid_address,
) -> list[Recipient]:
    """Parse `address, amount` lines. Raises ValidationError naming the line."""
    recipients = []
    lines = [line for line in normalize_recipients(text).split("\n") if line.strip()]
    for i, raw in enumerate(lines, start=1):
        parts = [p.strip() for p in raw.split(",")]
        if len(parts) != 2:
            raise ValidationError(f'Invalid line #{i}: "{raw}" (expected "address, amount")')
        recipients.append(_make_recipient(parts[0], parts[1], decimals, f"Line #{i}",
                                          address_ok=address_ok))
    if not recipients:
        raise ValidationError("Recipients list empty")
    return recipients


def parse_recipients_csv(filepath: str | Path, decimals: int) -> list[Recipient]:
    """Parse a CSV file with `address,amount[,label]` columns."""
    recipients = []
    filepath = Path(filepath)

    with open(filepath, "r", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValidationError("CSV file is empty or has no headers")

        for row_num, row in enumerate(reader, start=2):
            normalized = {
                (k or "").strip().lower(): (v or "").strip()
                for k, v in row.items() if isinstance(v, str) or v is None
            }
            recipients.append(_make_recipient(
                _WHITESPACE.sub("", normalized.get("address", "")),
                normalized.get("amount", ""),
                decimals,
                f"Row {row_num}",
                label=normalized.get("label", normalized.get("name", "")),
            ))

    return recipients


def parse_recipients_json(filepath: str | Path, decimals: int) -> list[Recipient]:
    """Parse a JSON list of `{"address", "amount", "label"?}` objects."""
    with open(Path(filepath), "r") as f:
        data = json.load(f, parse_float=str)

    if not isinstance(data, list):
        raise ValidationError("JSON must contain a list of recipient objects")

    recipients = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ValidationError(f"Entry {i}: must be an object")
        if "address" not in entry:
            raise ValidationError(f"Entry {i}: missing 'address' field")
        if "amount" not in entry:
            raise ValidationError(f"Entry {i}: missing 'amount' field")
        amount_str = str(entry["amount"])
        recipients.append(_make_recipient(
            str(entry["address"]).strip(), amount_str, decimals, f"Entry {i}",
            label=str(entry.get("label", "")),
        ))

    return recipients


def parse_recipients_file(filepath: str | Path, decimals: int) -> list[Recipient]:
    """Auto-detect file format and parse recipients."""
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()
    if suffix == ".json":
        return parse_recipients_json(filepath, decimals)
    if suffix == ".csv":
        return parse_recipients_csv(filepath, decimals)
    with open(filepath, "r") as f:
        return parse_recipients_text(f.read(), decimals)


def validate_recipients(recipients: list[Recipient]) -> tuple[bool, list[str], list[str]]:
    """
    Validate parsed recipients. Returns (is_valid, errors, warnings).

    Duplicate addresses are only a warning: each line is sent on its own.
    """
    errors = []
    warnings = []
    seen: dict[str, int] = {}

    for i, r in enumerate(recipients):
        if not is_valid_address(r.address):
            errors.append(f"Recipient {i + 1}: invalid address {r.address}")
        if r.amount <= 0:
            errors.append(f"Recipient {i + 1} ({r.address[:12]}...): amount must be > 0")
        if r.address in seen:
            warnings.append(
                f"Duplicate address at positions {seen[r.address] + 1} and {i + 1}: "
                f"{r.address[:16]}..."
            )
        else:
            seen[r.address] = i

    return not errors, errors, warnings


def chunk_recipients(recipients: list[Recipient], size: int) -> list[list[Recipient]]:
    """Split recipients into ordered batches of at most `size`."""
    if size <= 0:
        raise ValueError(f"Batch size must be positive, got {size}")
    return [recipients[i: i + size] for i in range(0, len(recipients), size)]


def render_template(
    addresses: list[str],
    count: int,
    fmt: str = "csv",
    labels: Optional[list[str]] = None,
) -> str:
    """Sample recipient file contents in `csv`, `json` or `txt` format."""
    rows = []
    for i in range(count):
        label = labels[i] if labels and i < len(labels) else f"Recipient_{i + 1}"
        amount = format_amount(1_000_000 + i * 500_000, 6)
        rows.append({"address": addresses[i % len(addresses)], "amount": amount, "label": label})

    if fmt == "json":
        return json.dumps(rows, indent=2) + "\n"
    if fmt == "txt":
        return "".join(f"{r['address']}, {r['amount']}\n" for r in rows)
    return "address,amount,label\n" + "".join(
        f"{r['address']},{r['amount']},{r['label']}\n" for r in rows
    )


def read_recipients_text(filepath: str | Path) -> str:
    """
    Read a recipient file as `address, amount` lines.

    CSV and JSON rows are flattened so the amounts can be parsed later,
    once the mint's decimals are known.
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()
    if suffix == ".json":
        with open(filepath, "r") as f:
            data = json.load(f, parse_float=str)
        if not isinstance(data, list):
            raise ValidationError("JSON must contain a list of recipient objects")
        lines = []
        for i, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise ValidationError(f"Entry {i}: must be an object")
            lines.append(f"{entry.get('address', '')}, {entry.get('amount', '')}")
        return "\n".join(lines)
    if suffix == ".csv":
        with open(filepath, "r", newline="") as f:
            rows = list(csv.DictReader(f))
        lines = []
        for row in rows:
            normalized = {(k or "").strip().lower(): v for k, v in row.items() if isinstance(v, str)}
            lines.append(f"{normalized.get('address', '')}, {normalized.get('amount', '')}")
        return "\n".join(lines)
    with open(filepath, "r") as f:
        return f.read()
