"""
Counter Store Interface

This module defines the contract between the rate limit decision function
and the stores that keep request counters. The decision function only calls
consume() and reset(), so a process-local store can be swapped for a shared
one without changing how decisions are made.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def now_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class StoreResult:
    """
    Outcome of counting one request against a key.

    Fields:
    - success: True while the key is within its quota
    - remaining: Requests left in the current window (never negative)
    - reset_epoch_seconds: When the quota next frees up (unix seconds)
    - total_hits: Requests counted in the current window, this one included
    """
    success: bool
    remaining: int
    reset_epoch_seconds: int
    total_hits: int


class CounterStore(ABC):
    """
    Abstract base class for rate limit counter stores.

    Stores that need housekeeping override sweep(); start() runs it on a
    background task owned by the store, stop() cancels that task.
    """

    sweep_interval: Optional[float] = None

    def __init__(self) -> None:
        self._sweep_task: Optional[asyncio.Task] = None

    @abstractmethod
    async def consume(self, key: str, max_requests: int, window_ms: int) -> StoreResult:
        """
        Count one request for key and report whether it is within quota.

        Raises:
            RateLimitStoreError: If the backing storage is unavailable
        """
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget every counter for key (manual unblock)."""
        pass

    def sweep(self) -> int:
        """Remove expired state. Returns the number of keys removed."""
        return 0

    def start(self) -> None:
        """Start the periodic sweep. Must be called from a running event loop."""
        if self.sweep_interval is None or self._sweep_task is not None:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_periodically())

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug(f"{type(self).__name__} sweep removed {removed} keys")
            except Exception as e:
                logger.error(f"{type(self).__name__} sweep failed: {e}", exc_info=True)

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
