"""
Bounded retry wrapper for single-call stages with transient-error risk.
"""

import asyncio
from typing import Optional, Any, Callable, Awaitable

from config.constants import STAGE_MAX_ATTEMPTS, STAGE_RETRY_DELAY_SECONDS
from config.logging_config import get_logger
from batchflow.errors import UnitFailure, FatalBatchError

from .base import StageProcessor, StageRequest, StageResult

logger = get_logger(__name__)


class RetryingStage(StageProcessor):
    """
    Retries the wrapped stage up to ``max_attempts`` times with a fixed
    ``delay`` between attempts. Malformed responses count as failed
    attempts. FatalBatchError is never retried.

    Usage:
        scorer = RetryingStage(OpenAIScoringStage(...), max_attempts=3, delay=2.0)
    """

    def __init__(
        self,
        inner: StageProcessor,
        max_attempts: int = STAGE_MAX_ATTEMPTS,
        delay: float = STAGE_RETRY_DELAY_SECONDS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.inner = inner
        self.name = inner.name
        self.result_model = inner.result_model
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, inner: StageProcessor, settings, **kwargs) -> "RetryingStage":
        return cls(
            inner,
            max_attempts=settings.stage_max_attempts,
            delay=settings.stage_retry_delay,
            **kwargs,
        )

    async def open(self) -> None:
        await self.inner.open()

    async def close(self) -> None:
        await self.inner.close()

    async def run(self, request: StageRequest) -> Any:
        return await self.inner.run(request)

    async def process(self, request: StageRequest) -> StageResult:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.inner.process(request)
                result.attempts = attempt
                return result
            except FatalBatchError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"{self.name} attempt {attempt}/{self.max_attempts} "
                    f"failed for {request.unit_id}: {e}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.delay)

        raise UnitFailure(
            f"Failed {self.name} for {request.input.name} after "
            f"{self.max_attempts} attempts: {last_error}",
            stage=self.name,
            attempts=self.max_attempts,
        ) from last_error
