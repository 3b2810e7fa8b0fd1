from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import Conflict


logger = logging.getLogger(__name__)

T = TypeVar("T")


class VersionConflict(Exception):
    """A version-conditioned write lost the race; the cycle must be rerun."""


async def run_optimistic(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 5,
    backoff_seconds: float = 0.05,
    label: str = "update",
) -> T:
    """
    Run a read-compute-write cycle until it commits.

    `operation` must re-read everything it depends on each time it is
    called and raise VersionConflict when its conditional write misses.
    Any other exception propagates immediately. After `attempts` misses the
    caller gets Conflict.
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except VersionConflict:
            if attempt == attempts - 1:
                break
            delay = backoff_seconds * (2**attempt)
            logger.debug("%s lost a version race (attempt %d), retrying in %.3fs", label, attempt + 1, delay)
            await asyncio.sleep(delay)

    logger.warning("%s gave up after %d conflicting attempts", label, attempts)
    raise Conflict(f"{label} kept conflicting with concurrent writers", attempts=attempts)
