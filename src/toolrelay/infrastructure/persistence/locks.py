"""
TTL locks for conversation state

A conversation is processed by at most one execution at a time. Stores
implement ``lock``/``unlock`` on top of the helpers here: a lock expires
after its TTL so a crashed holder cannot block a conversation forever, and
acquisition retries with exponential backoff before giving up.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class LockPolicy:
    """
    Attributes:
        ttl_ms: Lifetime of an acquired lock
        max_retries: Attempts after the first one
        initial_delay_ms: Wait before the first retry
        backoff: Multiplier applied to the wait after each retry
    """

    ttl_ms: int = 120_000
    max_retries: int = 3
    initial_delay_ms: int = 100
    backoff: float = 1.5


async def acquire_with_backoff(
    try_acquire: Callable[[], Awaitable[bool]], policy: LockPolicy
) -> bool:
    delay_ms = float(policy.initial_delay_ms)
    for attempt in range(policy.max_retries + 1):
        if await try_acquire():
            return True
        if attempt < policy.max_retries:
            await asyncio.sleep(delay_ms / 1000)
            delay_ms *= policy.backoff
    return False


class TTLLockTable:
    """In-process keyed locks that expire after ``policy.ttl_ms``."""

    def __init__(
        self,
        policy: LockPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or LockPolicy()
        self._clock = clock
        self._expiry: dict[str, float] = {}

    async def acquire(self, key: str) -> bool:
        async def attempt() -> bool:
            now = self._clock()
            expires_at = self._expiry.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expiry[key] = now + self.policy.ttl_ms / 1000
            return True

        return await acquire_with_backoff(attempt, self.policy)

    def release(self, key: str) -> None:
        self._expiry.pop(key, None)

    def is_locked(self, key: str) -> bool:
        expires_at = self._expiry.get(key)
        return expires_at is not None and expires_at > self._clock()
