from __future__ import annotations

import asyncio


def compute_backoff(attempt: int, base_delay_ms: int) -> int:
    """Compute exponential backoff in milliseconds for a 1-based ``attempt``."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return int(base_delay_ms * 2 ** (attempt - 1))


async def sleep_ms(delay_ms: int) -> None:
    """Sleep for ``delay_ms`` milliseconds; non-positive delays return at once."""
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)
