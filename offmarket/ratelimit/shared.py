"""
Shared Fixed-Window Store

Fixed-window counters kept in an external storage backend through the
`limits` library (Redis, Memcached, MongoDB, or its own in-memory storage).
All service instances pointing at the same backend enforce one global quota,
which the in-memory stores cannot do.

Windows are whole seconds on these backends; sub-second windows are rounded up.
"""

from __future__ import annotations

import logging
import math

from limits.storage import storage_from_string

from offmarket.core.exceptions import RateLimitStoreError
from offmarket.ratelimit.interface import CounterStore, StoreResult

logger = logging.getLogger(__name__)


class SharedFixedWindowStore(CounterStore):
    """
    Fixed-window counter on a `limits` async storage backend.

    Args:
        storage_uri: limits storage URI, e.g. "async+redis://localhost:6379"
        key_prefix: Namespace for keys in the shared backend
    """

    def __init__(self, storage_uri: str, key_prefix: str = "offmarket"):
        super().__init__()
        self.storage_uri = storage_uri
        self.key_prefix = key_prefix
        self._storage = storage_from_string(storage_uri)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def consume(self, key: str, max_requests: int, window_ms: int) -> StoreResult:
        storage_key = self._key(key)
        expiry = max(1, math.ceil(window_ms / 1000))
        try:
            total_hits = await self._storage.incr(storage_key, expiry)
            reset_at = await self._storage.get_expiry(storage_key)
        except Exception as e:
            raise RateLimitStoreError(f"{self.storage_uri}: {e}", original_error=e) from e

        return StoreResult(
            success=total_hits <= max_requests,
            remaining=max(0, max_requests - total_hits),
            reset_epoch_seconds=math.ceil(reset_at),
            total_hits=total_hits,
        )

    async def reset(self, key: str) -> None:
        try:
            await self._storage.clear(self._key(key))
        except Exception as e:
            raise RateLimitStoreError(f"{self.storage_uri}: {e}", original_error=e) from e

    async def check(self) -> bool:
        """Return True when the backend is reachable."""
        try:
            return bool(await self._storage.check())
        except Exception as e:
            logger.warning(f"Rate limit storage {self.storage_uri} unreachable: {e}")
            return False
