"""Backoff utilities.

`fixed_backoff` yields the 1-based attempt number for the caller to attempt an
operation, then sleeps for the fixed interval before the next attempt. No
sleep happens after the final attempt, so a caller that re-raises on the last
failure does not pay an extra interval.
"""
import asyncio
from typing import AsyncIterator


async def fixed_backoff(
    interval_seconds: float,
    max_attempts: int,
) -> AsyncIterator[int]:
    for attempt in range(1, max_attempts + 1):
        yield attempt
        if attempt < max_attempts:
            await asyncio.sleep(interval_seconds)
