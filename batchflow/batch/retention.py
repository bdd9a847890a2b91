"""
Retention sweep for finished batches.
Runs only when called; there is no background timer.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from config.constants import RETENTION_MAX_AGE_SECONDS
from config.logging_config import get_logger
from batchflow.sinks.result_writer import ResultSink

from .job_registry import JobRegistry

logger = get_logger(__name__)


class RetentionPolicy:
    """
    Removes terminal batches whose completion is older than ``max_age_seconds``.

    Usage:
        policy = RetentionPolicy(max_age_seconds=7 * 24 * 3600, result_sink=sink)
        removed = await policy.sweep(registry)
    """

    def __init__(
        self,
        max_age_seconds: Optional[float] = RETENTION_MAX_AGE_SECONDS,
        result_sink: Optional[ResultSink] = None,
    ):
        if max_age_seconds is not None and max_age_seconds < 0:
            raise ValueError(f"max_age_seconds must be >= 0, got {max_age_seconds}")
        self.max_age_seconds = max_age_seconds
        self.result_sink = result_sink

    @property
    def enabled(self) -> bool:
        return self.max_age_seconds is not None

    async def sweep(self, registry: JobRegistry, now: Optional[datetime] = None) -> List[str]:
        """
        Remove expired batches from ``registry``.

        Returns:
            Ids of removed batches
        """
        if not self.enabled:
            return []

        cutoff = (now or datetime.now()) - timedelta(seconds=self.max_age_seconds)
        expired = [
            batch for batch in registry.list()
            if batch.is_terminal and batch.completed_at and batch.completed_at < cutoff
        ]

        removed = []
        for batch in expired:
            registry.remove(batch.id)
            removed.append(batch.id)
            if self.result_sink is not None:
                try:
                    await self.result_sink.discard(batch.id)
                except OSError as e:
                    logger.warning(f"[Batch:{batch.id}] Could not discard outputs: {e}")

        if removed:
            logger.info(f"Retention sweep removed {len(removed)} batch(es)")
        return removed
