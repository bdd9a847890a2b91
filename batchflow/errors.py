"""
Error taxonomy for batch orchestration.

Caller errors (ValidationError, NotFoundError, InvalidStateError) are raised
synchronously by BatchService. UnitFailure is recorded on a single unit and
never fails the batch. FatalBatchError is the only error that aborts a
batch's processing loop.
"""

from typing import Optional


class BatchError(Exception):
    """Base error for the orchestration engine"""
    pass


class ValidationError(BatchError):
    """Caller-supplied input is malformed (e.g. an empty batch)"""
    pass


class NotFoundError(BatchError):
    """Operation referenced an unknown batch id"""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} not found")


class InvalidStateError(BatchError):
    """Operation is not legal for the batch's current status"""

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message)


class UnitFailure(BatchError):
    """A single unit's stage attempt failed"""

    def __init__(self, message: str, stage: Optional[str] = None, attempts: int = 1):
        self.stage = stage
        self.attempts = attempts
        super().__init__(message)


class StageTimeoutError(UnitFailure):
    """Remote stage job did not finish within its polling budget"""
    pass


class MalformedResultError(UnitFailure):
    """Stage returned a payload that does not match its result schema"""
    pass


class FatalBatchError(BatchError):
    """Failure affecting the whole batch (e.g. shared session unavailable)"""
    pass
