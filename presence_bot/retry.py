"""Optimistic compare-and-set with bounded, jittered retries.

Every multi-step mutation of shared records (queue, subscriber indexes,
status records) goes through ``cas_retry``. The caller supplies one attempt:
a coroutine that reads what it needs, builds an atomic batch checked against
the versionstamps it read, and returns the batch's ``commit()`` result.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable

from presence_bot.logger import logger

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MAX_JITTER = 0.1  # seconds


async def cas_retry(
    attempt: Callable[[], Awaitable[bool]],
    label: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    max_jitter: float = DEFAULT_MAX_JITTER,
) -> bool:
    """Run ``attempt`` until it commits or the attempts run out.

    Returns True on a successful commit. Exhausting the attempts is logged
    and reported as False; it never raises for a conflict.
    """
    for n in range(1, max_attempts + 1):
        if await attempt():
            if n > 1:
                logger.debug(f"[cas] {label} committed on attempt {n}")
            return True
        if n < max_attempts:
            await asyncio.sleep(random.uniform(0, max_jitter))

    logger.error(f"[cas] {label} abandoned after {max_attempts} conflicting attempts")
    return False
