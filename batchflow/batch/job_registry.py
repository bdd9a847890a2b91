"""
Job Registry - owns every Batch by id.

Callers get short-lived references; the coordinator driving a batch is the
only writer of its units.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from config.logging_config import get_logger
from batchflow.errors import NotFoundError, InvalidStateError, ValidationError

from .batch_job import Batch, BatchStatus

logger = get_logger(__name__)


class JobRegistry(ABC):
    """Batch storage keyed by id"""

    @abstractmethod
    def add(self, batch: Batch) -> Batch:
        pass

    @abstractmethod
    def find(self, batch_id: str) -> Optional[Batch]:
        pass

    @abstractmethod
    def remove(self, batch_id: str) -> Batch:
        pass

    @abstractmethod
    def list(self) -> List[Batch]:
        pass

    def get(self, batch_id: str) -> Batch:
        """Get batch by id or raise NotFoundError"""
        batch = self.find(batch_id)
        if batch is None:
            raise NotFoundError(batch_id)
        return batch

    def claim_for_start(self, batch_id: str) -> Batch:
        """
        Move a CREATED batch to PROCESSING.

        Raises:
            NotFoundError: unknown id
            InvalidStateError: batch was already started
        """
        batch = self.get(batch_id)
        if batch.status != BatchStatus.CREATED:
            raise InvalidStateError(
                f"Batch {batch_id} is not pending (status: {batch.status.value})",
                status=batch.status.value,
            )
        batch.update_status(BatchStatus.PROCESSING)
        return batch

    def __len__(self) -> int:
        return len(self.list())

    def __contains__(self, batch_id: str) -> bool:
        return self.find(batch_id) is not None


class InMemoryJobRegistry(JobRegistry):
    """Dict-backed registry; batches live for the life of the process."""

    def __init__(self):
        self._batches: Dict[str, Batch] = {}

    def add(self, batch: Batch) -> Batch:
        if batch.id in self._batches:
            raise ValidationError(f"Batch {batch.id} already exists")
        self._batches[batch.id] = batch
        logger.debug(f"[Batch:{batch.id}] Registered")
        return batch

    def find(self, batch_id: str) -> Optional[Batch]:
        return self._batches.get(batch_id)

    def remove(self, batch_id: str) -> Batch:
        batch = self._batches.pop(batch_id, None)
        if batch is None:
            raise NotFoundError(batch_id)
        logger.debug(f"[Batch:{batch_id}] Removed from registry")
        return batch

    def list(self) -> List[Batch]:
        return list(self._batches.values())
