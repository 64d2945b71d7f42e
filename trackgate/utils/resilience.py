"""Timeout handling for store round-trips.

Every call that leaves the process (Redis, the ban store) is bounded so a
slow or partitioned backend turns into ``StoreUnavailableError`` instead of
a handler that never returns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from trackgate.utils.exceptions import StoreUnavailableError

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def bounded(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str = "store operation",
) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Raises:
        StoreUnavailableError: if the deadline passes.

    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.3fs", operation, timeout)
        msg = f"{operation} timed out after {timeout} seconds"
        raise StoreUnavailableError(msg, {"operation": operation}) from None
