"""Exact conversion between decimal token strings and smallest-unit integers."""

from __future__ import annotations

import re

_AMOUNT_RE = re.compile(r"^\d+(?:\.\d+)?$")


def parse_amount(text: str, decimals: int) -> int:
    """
    Convert a decimal string into the token's smallest unit.

    Digits beyond ``decimals`` are truncated, never rounded:
        parse_amount("1.5", 6) == 1_500_000
    """
    s = str(text).strip()
    if not _AMOUNT_RE.match(s):
        raise ValueError(f"Invalid amount: {text!r}")
    if decimals < 0:
        raise ValueError(f"Decimals must be >= 0, got {decimals}")
    whole, _, frac = s.partition(".")
    frac = (frac + "0" * decimals)[:decimals]
    return int(whole + frac)


def format_amount(value: int, decimals: int) -> str:
    """Inverse of parse_amount, with trailing fractional zeros stripped."""
    if value < 0:
        return "-" + format_amount(-value, decimals)
    s = str(value)
    if decimals == 0:
        return s
    padded = s.rjust(decimals + 1, "0")
    whole, frac = padded[:-decimals], padded[-decimals:].rstrip("0")
    return f"{whole}.{frac}" if frac else whole
