"""
Batch orchestration: unit and batch state, concurrency limiting,
chunked coordination, progress reporting and the service API.
"""

from .unit_state import Unit, UnitInput, UnitStatus, UnitTiming
from .batch_job import Batch, BatchStatus, BatchLog, BatchMetrics, Track, TERMINAL_STATUSES
from .limiter import ConcurrencyLimiter, LimiterPool, SlotToken
from .coordinator import BatchCoordinator, CoordinatorConfig, ProcessorLeases
from .progress_tracker import (
    ProgressReporter,
    ProgressSnapshot,
    TrackProgress,
    ProgressCallback,
)
from .job_registry import JobRegistry, InMemoryJobRegistry
from .retention import RetentionPolicy
from .service import BatchService

__all__ = [
    # Units
    'Unit',
    'UnitInput',
    'UnitStatus',
    'UnitTiming',
    # Batches
    'Batch',
    'BatchStatus',
    'BatchLog',
    'BatchMetrics',
    'Track',
    'TERMINAL_STATUSES',
    # Concurrency
    'ConcurrencyLimiter',
    'LimiterPool',
    'SlotToken',
    # Coordination
    'BatchCoordinator',
    'CoordinatorConfig',
    'ProcessorLeases',
    # Progress
    'ProgressReporter',
    'ProgressSnapshot',
    'TrackProgress',
    'ProgressCallback',
    # Registry
    'JobRegistry',
    'InMemoryJobRegistry',
    'RetentionPolicy',
    # Service
    'BatchService',
]
