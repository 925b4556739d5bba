"""Concurrency gates for outbound model calls.

One counting semaphore per model tier keeps the cheap, highly parallel
fast-tier calls from starving the scarce reasoning-tier calls.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from supplier_negotiation.models import ModelTier

logger = structlog.get_logger(__name__)


class ModelRateLimiter:
    """Bounded concurrency per :class:`ModelTier`.

    ``asyncio.Semaphore`` wakes waiters in FIFO order, and :meth:`slot`
    releases on every exit path, so a failing call never leaks a slot.
    """

    def __init__(self, fast_limit: int = 3, reasoning_limit: int = 2) -> None:
        if fast_limit < 1 or reasoning_limit < 1:
            raise ValueError("concurrency limits must be at least 1")
        self._limits = {
            ModelTier.FAST: fast_limit,
            ModelTier.REASONING: reasoning_limit,
        }
        self._semaphores = {
            tier: asyncio.Semaphore(limit) for tier, limit in self._limits.items()
        }
        self._in_flight = {tier: 0 for tier in self._limits}

    @asynccontextmanager
    async def slot(self, tier: ModelTier) -> AsyncIterator[None]:
        """Hold one slot of *tier* for the duration of the block."""
        semaphore = self._semaphores[tier]
        if semaphore.locked():
            logger.debug("rate_limiter_waiting", tier=tier.value, limit=self._limits[tier])
        async with semaphore:
            self._in_flight[tier] += 1
            try:
                yield
            finally:
                self._in_flight[tier] -= 1

    def in_flight(self, tier: ModelTier) -> int:
        """Number of calls currently holding a slot of *tier*."""
        return self._in_flight[tier]

    def limit(self, tier: ModelTier) -> int:
        return self._limits[tier]
