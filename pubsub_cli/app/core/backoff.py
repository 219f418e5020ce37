"""Backoff utilities.

`exponential_backoff` yields the current delay to the caller, which attempts the
operation, then sleeps before the next attempt. Used only for establishing broker
connections; listing, publish and receive are never retried.
"""
import asyncio
from typing import AsyncIterator


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[float]:
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        yield delay
        if attempt < max_attempts:
            await asyncio.sleep(delay)
            delay = min(delay * multiplier, max_delay)
