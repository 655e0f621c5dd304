"""
Rate limit counter stores.

This module provides:
- CounterStore interface: The contract used by the decision function
- FixedWindowCounterStore / SlidingWindowCounterStore: Process-local stores
- SharedFixedWindowStore: Fixed window on a shared `limits` storage backend

To plug in another backend:
1. Create a class inheriting from CounterStore
2. Implement consume() and reset()
3. Pass it to RateLimiter (offmarket.core.rate_limit)
"""

from offmarket.ratelimit.interface import CounterStore, StoreResult, now_ms
from offmarket.ratelimit.memory import (
    CounterHit,
    FixedWindowCounterStore,
    SlidingWindowCounterStore,
    SlidingWindowResult,
)
from offmarket.ratelimit.shared import SharedFixedWindowStore

__all__ = [
    "CounterHit",
    "CounterStore",
    "FixedWindowCounterStore",
    "SharedFixedWindowStore",
    "SlidingWindowCounterStore",
    "SlidingWindowResult",
    "StoreResult",
    "now_ms",
]
