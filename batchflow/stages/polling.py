"""
Submit / poll / fetch adapter for remote multi-step stage jobs.
"""

import asyncio
from abc import abstractmethod
from typing import Optional, Any, Callable, Awaitable

from config.constants import (
    STAGE_POLL_INTERVAL_SECONDS,
    STAGE_POLL_MAX_ATTEMPTS,
    REMOTE_STATUS_SUCCESS,
    REMOTE_STATUS_FAILED,
)
from config.logging_config import get_logger
from batchflow.errors import UnitFailure, StageTimeoutError

from .base import StageProcessor, StageRequest

logger = get_logger(__name__)


class PollingStage(StageProcessor):
    """
    Remote job protocol: submit once, poll at a fixed interval up to a
    bounded number of attempts, then fetch the result.

    An explicit remote FAILED status stops polling immediately; running
    out of attempts is a StageTimeoutError.
    """

    success_status: str = REMOTE_STATUS_SUCCESS
    failed_status: str = REMOTE_STATUS_FAILED

    def __init__(
        self,
        poll_interval: float = STAGE_POLL_INTERVAL_SECONDS,
        max_polls: int = STAGE_POLL_MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep or asyncio.sleep

    @abstractmethod
    async def submit(self, request: StageRequest) -> str:
        """Start the remote job; return its id."""
        pass

    @abstractmethod
    async def poll(self, job_id: str) -> str:
        """Return the remote job's current status string."""
        pass

    @abstractmethod
    async def fetch_result(self, job_id: str) -> Any:
        """Download the finished job's payload."""
        pass

    async def run(self, request: StageRequest) -> Any:
        job_id = await self.submit(request)
        logger.debug(f"{self.name}: submitted job {job_id} for {request.unit_id}")

        for attempt in range(1, self.max_polls + 1):
            status = (await self.poll(job_id) or "").upper()

            if status == self.success_status:
                return await self.fetch_result(job_id)
            if status == self.failed_status:
                raise UnitFailure(
                    f"{self.name} job {job_id} failed remotely for {request.input.name}",
                    stage=self.name,
                )

            logger.debug(f"{self.name}: job {job_id} {status or 'PENDING'} ({attempt}/{self.max_polls})")
            if attempt < self.max_polls:
                await self._sleep(self.poll_interval)

        raise StageTimeoutError(
            f"{self.name} job {job_id} timed out after {self.max_polls} polls "
            f"({self.max_polls * self.poll_interval:.0f}s)",
            stage=self.name,
        )
