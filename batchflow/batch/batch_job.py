"""
Batch Job Definitions

Defines batch structure, status, per-track unit sets, metrics and the
batch activity log.
"""

import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Deque
from dataclasses import dataclass, field
from enum import Enum

from config.constants import BATCH_LOG_HISTORY
from config.logging_config import get_logger

from .unit_state import Unit, UnitInput, UnitStatus

logger = get_logger(__name__)


class BatchStatus(Enum):
    """Batch status states"""
    CREATED = "created"           # Submitted, not started
    PROCESSING = "processing"     # Chunks being dispatched
    PAUSED = "paused"             # Paused by caller at a chunk boundary
    COMPLETED = "completed"       # Every unit terminal, no fatal error
    FAILED = "failed"             # Fatal batch-level error
    CANCELLED = "cancelled"       # Cancelled by caller


TERMINAL_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
})


def new_batch_id() -> str:
    return str(uuid.uuid4())


@dataclass
class BatchLog:
    """One batch activity log entry"""
    message: str
    level: str = "info"           # info, success, warning, error, debug
    timestamp: datetime = field(default_factory=datetime.now)
    unit_id: Optional[str] = None
    track: Optional[str] = None
    processing_time: Optional[float] = None
    retry_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }
        if self.unit_id is not None:
            data["unit_id"] = self.unit_id
        if self.track is not None:
            data["track"] = self.track
        if self.processing_time is not None:
            data["processing_time"] = round(self.processing_time, 3)
        if self.retry_count is not None:
            data["retry_count"] = self.retry_count
        return data


@dataclass
class Track:
    """An ordered list of stages applied to its own copy of the batch's units."""
    name: str
    stages: List[str]
    units: List[Unit] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return all(u.is_terminal for u in self.units)

    def pending_units(self) -> List[Unit]:
        return [u for u in self.units if u.status == UnitStatus.PENDING]

    def count(self, status: UnitStatus) -> int:
        return sum(1 for u in self.units if u.status == status)


@dataclass
class BatchMetrics:
    """Cached aggregate counts and throughput for a batch"""
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    completed: int = 0               # succeeded on the final stage
    processed: int = 0               # completed + failed
    average_processing_time: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    throughput_per_minute: float = 0.0
    estimated_remaining_seconds: float = 0.0
    estimated_completion: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "completed": self.completed,
            "processed": self.processed,
            "average_processing_time": round(self.average_processing_time, 3),
            "success_rate": round(self.success_rate, 1),
            "error_rate": round(self.error_rate, 1),
            "throughput_per_minute": round(self.throughput_per_minute, 2),
            "estimated_remaining_seconds": round(self.estimated_remaining_seconds, 1),
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
        }


@dataclass
class Batch:
    """
    A caller-submitted collection of units processed under one coordinator.

    Units are mutated only by the BatchCoordinator driving this batch.
    """
    id: str
    inputs: List[UnitInput]
    tracks: Dict[str, Track]
    status: BatchStatus = BatchStatus.CREATED
    output_location: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None

    error: Optional[str] = None
    cancel_requested: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    metrics: BatchMetrics = field(default_factory=BatchMetrics)
    logs: Deque[BatchLog] = field(default_factory=lambda: deque(maxlen=BATCH_LOG_HISTORY))

    @classmethod
    def create(
        cls,
        inputs: List[UnitInput],
        tracks: Dict[str, List[str]],
        batch_id: Optional[str] = None,
        log_history: int = BATCH_LOG_HISTORY,
    ) -> "Batch":
        """Build a batch with one Pending unit per (input, track)."""
        batch_id = batch_id or new_batch_id()
        unit_ids = [inp.id or f"{batch_id[:8]}_{i}" for i, inp in enumerate(inputs)]

        batch_tracks = {}
        for track_name, stages in tracks.items():
            batch_tracks[track_name] = Track(
                name=track_name,
                stages=list(stages),
                units=[
                    Unit(id=unit_id, input=inp, track=track_name, final_stage=stages[-1])
                    for unit_id, inp in zip(unit_ids, inputs)
                ],
            )

        batch = cls(
            id=batch_id,
            inputs=list(inputs),
            tracks=batch_tracks,
            logs=deque(maxlen=log_history),
            metadata={
                "input_count": len(inputs),
                "total_size_bytes": sum(inp.size_bytes for inp in inputs),
                "tracks": {name: list(stages) for name, stages in tracks.items()},
            },
        )
        batch.refresh_metrics()
        return batch

    # =========================================
    # Views
    # =========================================

    @property
    def units(self) -> List[Unit]:
        """All unit records, track by track, each in input order."""
        return [u for track in self.tracks.values() for u in track.units]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def elapsed_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def get_unit(self, unit_id: str, track: Optional[str] = None) -> Optional[Unit]:
        tracks = [self.tracks[track]] if track else self.tracks.values()
        for t in tracks:
            for unit in t.units:
                if unit.id == unit_id:
                    return unit
        return None

    # =========================================
    # Mutation (coordinator / registry only)
    # =========================================

    def update_status(self, status: BatchStatus, error: Optional[str] = None):
        """Update batch status and its timestamps"""
        old = self.status
        self.status = status

        if status == BatchStatus.PROCESSING and not self.started_at:
            self.started_at = datetime.now()
        if status == BatchStatus.PAUSED:
            self.paused_at = datetime.now()
        elif old == BatchStatus.PAUSED:
            self.paused_at = None
        if status in TERMINAL_STATUSES:
            self.completed_at = datetime.now()
        if error:
            self.error = error

        logger.debug(f"[Batch:{self.id}] {old.value} → {status.value}")

    def add_log(
        self,
        message: str,
        level: str = "info",
        unit_id: Optional[str] = None,
        track: Optional[str] = None,
        processing_time: Optional[float] = None,
        retry_count: Optional[int] = None,
    ) -> BatchLog:
        """Append to the batch activity log (oldest entries drop off)."""
        entry = BatchLog(
            message=message,
            level=level,
            unit_id=unit_id,
            track=track,
            processing_time=processing_time,
            retry_count=retry_count,
        )
        self.logs.append(entry)

        log_fn = {
            "error": logger.error,
            "warning": logger.warning,
            "debug": logger.debug,
        }.get(level, logger.info)
        log_fn(f"[Batch:{self.id}] {message}")
        return entry

    def refresh_metrics(self) -> BatchMetrics:
        """Recompute cached metrics from unit states."""
        units = self.units
        m = BatchMetrics(total=len(units))

        processing_times = []
        for unit in units:
            if unit.status == UnitStatus.PENDING:
                m.pending += 1
            elif unit.status == UnitStatus.IN_PROGRESS:
                m.in_progress += 1
            elif unit.status == UnitStatus.SUCCEEDED:
                m.succeeded += 1
                if unit.is_terminal:
                    m.completed += 1
                    processing_times.append(unit.timing.processing_seconds)
            elif unit.status == UnitStatus.FAILED:
                m.failed += 1
                processing_times.append(unit.timing.processing_seconds)
            else:
                m.cancelled += 1

        m.processed = m.completed + m.failed
        if processing_times:
            m.average_processing_time = sum(processing_times) / len(processing_times)
        if m.processed:
            m.success_rate = m.completed / m.processed * 100
            m.error_rate = 100 - m.success_rate

        elapsed = self.elapsed_seconds
        if elapsed > 0 and m.processed:
            m.throughput_per_minute = m.processed / elapsed * 60
            remaining = m.total - m.processed - m.cancelled
            m.estimated_remaining_seconds = remaining / m.throughput_per_minute * 60
            if not self.is_terminal:
                m.estimated_completion = datetime.now() + timedelta(
                    seconds=m.estimated_remaining_seconds
                )

        self.metrics = m
        return m

    # =========================================
    # Serialization
    # =========================================

    def summary(self) -> Dict[str, Any]:
        """Short listing entry"""
        return {
            "id": self.id,
            "status": self.status.value,
            "total_units": len(self.inputs),
            "tracks": list(self.tracks.keys()),
            "succeeded": self.metrics.completed,
            "failed": self.metrics.failed,
            "cancelled": self.metrics.cancelled,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def report(self) -> Dict[str, Any]:
        """Processing report persisted when the batch reaches a terminal state"""
        duration = None
        if self.started_at and self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "batch_id": self.id,
            "status": self.status.value,
            "error": self.error,
            "summary": {
                "total": len(self.inputs),
                "units": self.metrics.total,
                "processed": self.metrics.processed,
                "success": self.metrics.completed,
                "errors": self.metrics.failed,
                "cancelled": self.metrics.cancelled,
                "created_at": self.created_at.isoformat(),
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "completed_at": self.completed_at.isoformat() if self.completed_at else None,
                "duration_seconds": duration,
                "average_processing_time": self.metrics.average_processing_time,
                "total_size_bytes": self.metadata.get("total_size_bytes", 0),
            },
            "results": [u.to_dict() for u in self.units],
            "logs": [entry.to_dict() for entry in self.logs],
            "metadata": self.metadata,
        }
