"""
Per-stage concurrency limiting.
Bounds in-flight Stage Processor calls; every admitted slot is released exactly once.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Set

from config.constants import BATCH_STAGE_CONCURRENCY
from config.logging_config import get_logger
from batchflow.errors import InvalidStateError

logger = get_logger(__name__)


@dataclass(frozen=True)
class SlotToken:
    """Proof of admission; hand back to ConcurrencyLimiter.release()."""
    limiter_name: str
    serial: int


class ConcurrencyLimiter:
    """
    Slot pool for one stage.

    asyncio.Semaphore wakes waiters in FIFO order, so no waiter starves
    while the number of waiters is bounded.

    Usage:
        limiter = ConcurrencyLimiter("extract", max_concurrency=4)

        async with limiter.slot():
            result = await processor.process(request)
    """

    def __init__(self, name: str = "stage", max_concurrency: int = BATCH_STAGE_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._serials = itertools.count(1)
        self._outstanding: Set[int] = set()

        # Instrumentation
        self.admitted = 0
        self.released = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return len(self._outstanding)

    @property
    def available(self) -> int:
        return self.max_concurrency - self.in_flight

    async def admit(self) -> SlotToken:
        """Suspend until a slot is free, then take it."""
        await self._semaphore.acquire()
        token = SlotToken(self.name, next(self._serials))
        self._outstanding.add(token.serial)
        self.admitted += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        return token

    def release(self, token: SlotToken):
        """Return a slot. Releasing a token twice is an error."""
        if token.limiter_name != self.name or token.serial not in self._outstanding:
            raise InvalidStateError(
                f"Limiter {self.name}: token {token.serial} is not outstanding"
            )
        self._outstanding.discard(token.serial)
        self.released += 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[SlotToken]:
        """Scoped admission; the slot is released on every exit path."""
        token = await self.admit()
        try:
            yield token
        finally:
            self.release(token)

    def stats(self) -> Dict[str, int]:
        return {
            "max_concurrency": self.max_concurrency,
            "in_flight": self.in_flight,
            "peak_in_flight": self.peak_in_flight,
            "admitted": self.admitted,
            "released": self.released,
        }


class LimiterPool:
    """One ConcurrencyLimiter per stage name, created on first use."""

    def __init__(
        self,
        default_concurrency: int = BATCH_STAGE_CONCURRENCY,
        overrides: Optional[Dict[str, int]] = None,
    ):
        self.default_concurrency = default_concurrency
        self.overrides = dict(overrides or {})
        self._limiters: Dict[str, ConcurrencyLimiter] = {}

    def get(self, stage: str) -> ConcurrencyLimiter:
        limiter = self._limiters.get(stage)
        if limiter is None:
            limiter = ConcurrencyLimiter(
                name=stage,
                max_concurrency=self.overrides.get(stage, self.default_concurrency),
            )
            self._limiters[stage] = limiter
            logger.debug(f"Limiter created: {stage} (max={limiter.max_concurrency})")
        return limiter

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {name: limiter.stats() for name, limiter in self._limiters.items()}
