"""
In-Memory Counter Stores

Two process-local strategies:

- FixedWindowCounterStore: one counter and reset time per key. Cheap, but a
  client can send up to twice the quota across a window boundary.
- SlidingWindowCounterStore: one timestamp list per key. Exact, at the cost of
  memory proportional to the number of requests in the window.

Every read-modify-write below is synchronous. On a single event loop nothing
else runs between the read and the write of an entry, so concurrent requests
cannot lose updates. Do not add an await inside increment() or check_limit().

State is not shared between processes: with several instances each one
enforces its own quota (see SharedFixedWindowStore for a shared alternative).
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from offmarket.ratelimit.interface import Clock, CounterStore, StoreResult, now_ms


@dataclass
class CounterEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class CounterHit:
    total_hits: int
    time_to_reset: float  # epoch ms at which the entry's window ends


@dataclass(frozen=True)
class SlidingWindowResult:
    success: bool
    remaining: int
    reset: int  # unix seconds


class FixedWindowCounterStore(CounterStore):
    """Per-key request counter over discrete, non-overlapping windows."""

    def __init__(self, clock: Clock = now_ms, sweep_interval: Optional[float] = 300.0):
        super().__init__()
        self._clock = clock
        self._entries: Dict[str, CounterEntry] = {}
        self.sweep_interval = sweep_interval

    def __len__(self) -> int:
        return len(self._entries)

    def increment(self, key: str, window_ms: int) -> CounterHit:
        """
        Count a request for key.

        An expired entry is replaced rather than incremented, so the first
        request after a window ends starts a new window with count 1.
        """
        now = self._clock()
        entry = self._entries.get(key)

        if entry is None or now > entry.reset_at:
            entry = CounterEntry(count=1, reset_at=now + window_ms)
            self._entries[key] = entry
        else:
            entry.count += 1

        return CounterHit(total_hits=entry.count, time_to_reset=entry.reset_at)

    async def consume(self, key: str, max_requests: int, window_ms: int) -> StoreResult:
        hit = self.increment(key, window_ms)
        return StoreResult(
            success=hit.total_hits <= max_requests,
            remaining=max(0, max_requests - hit.total_hits),
            reset_epoch_seconds=math.ceil(hit.time_to_reset / 1000),
            total_hits=hit.total_hits,
        )

    async def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.reset_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


class SlidingWindowCounterStore(CounterStore):
    """Per-key request timestamps over a continuously moving window."""

    def __init__(self, clock: Clock = now_ms, sweep_interval: Optional[float] = 60.0):
        super().__init__()
        self._clock = clock
        # key -> (window of the last check, timestamps oldest first)
        self._timestamps: Dict[str, Tuple[int, Deque[float]]] = {}
        self.sweep_interval = sweep_interval

    def __len__(self) -> int:
        return len(self._timestamps)

    def check_limit(self, key: str, max_requests: int, window_ms: int) -> SlidingWindowResult:
        """
        Record a request for key and check it against max_requests.

        Denied requests are recorded too, so a client that keeps retrying
        while over quota stays blocked until it slows down.
        """
        now = self._clock()
        window_start = now - window_ms

        _, timestamps = self._timestamps.get(key, (window_ms, deque()))
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()
        timestamps.append(now)
        self._timestamps[key] = (window_ms, timestamps)

        count = len(timestamps)
        return SlidingWindowResult(
            success=count <= max_requests,
            remaining=max(0, max_requests - count),
            reset=math.ceil((timestamps[0] + window_ms) / 1000),
        )

    async def consume(self, key: str, max_requests: int, window_ms: int) -> StoreResult:
        result = self.check_limit(key, max_requests, window_ms)
        _, timestamps = self._timestamps[key]
        return StoreResult(
            success=result.success,
            remaining=result.remaining,
            reset_epoch_seconds=result.reset,
            total_hits=len(timestamps),
        )

    async def reset(self, key: str) -> None:
        self._timestamps.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for key in list(self._timestamps):
            window_ms, timestamps = self._timestamps[key]
            while timestamps and timestamps[0] <= now - window_ms:
                timestamps.popleft()
            if not timestamps:
                del self._timestamps[key]
                removed += 1
        return removed
