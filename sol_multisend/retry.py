"""Backoff helper shared by the submission paths."""

from __future__ import annotations

import asyncio
import random


def backoff_delay(base: float, attempt: int, max_delay: float = 30.0) -> float:
    """Exponential backoff with up to 10% jitter."""
    delay = min(max_delay, base * (2 ** attempt))
    return delay + delay * 0.1 * random.random()


async def sleep_backoff(base: float, attempt: int, max_delay: float = 30.0) -> None:
    if base <= 0:
        return
    await asyncio.sleep(backoff_delay(base, attempt, max_delay))
