"""
Progress tracking and reporting.
Builds read-only progress snapshots of a batch, per track and overall.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Dict, Any, List
from datetime import datetime

from config.constants import PROGRESS_RECENT_LOGS
from config.logging_config import get_logger

from .batch_job import Batch, BatchStatus, Track
from .unit_state import UnitStatus

logger = get_logger(__name__)


# Type alias for progress callbacks
ProgressCallback = Callable[["ProgressSnapshot"], None]


@dataclass
class TrackProgress:
    """Unit counts for one track."""
    name: str
    stages: List[str]
    total: int = 0
    pending: int = 0
    failed: int = 0
    cancelled: int = 0
    in_progress: Dict[str, int] = field(default_factory=dict)
    succeeded: Dict[str, int] = field(default_factory=dict)
    complete: bool = False

    @property
    def completed(self) -> int:
        """Units that succeeded on the track's final stage."""
        return self.succeeded.get(self.stages[-1], 0) if self.stages else 0

    @property
    def percentage(self) -> float:
        if not self.total:
            return 100.0
        done = self.completed + self.failed + self.cancelled
        return round(done / self.total * 100, 1)

    @classmethod
    def from_track(cls, track: Track) -> "TrackProgress":
        progress = cls(
            name=track.name,
            stages=list(track.stages),
            total=len(track.units),
            in_progress={stage: 0 for stage in track.stages},
            succeeded={stage: 0 for stage in track.stages},
        )
        for unit in track.units:
            if unit.status == UnitStatus.PENDING:
                progress.pending += 1
            elif unit.status == UnitStatus.IN_PROGRESS:
                progress.in_progress[unit.stage] = progress.in_progress.get(unit.stage, 0) + 1
            elif unit.status == UnitStatus.SUCCEEDED:
                progress.succeeded[unit.stage] = progress.succeeded.get(unit.stage, 0) + 1
            elif unit.status == UnitStatus.FAILED:
                progress.failed += 1
            else:
                progress.cancelled += 1
        progress.complete = track.is_complete
        return progress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stages": self.stages,
            "total": self.total,
            "pending": self.pending,
            "in_progress": dict(self.in_progress),
            "succeeded": dict(self.succeeded),
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "percentage": self.percentage,
            "complete": self.complete,
        }


@dataclass
class ProgressSnapshot:
    """Point-in-time view of a batch."""
    batch_id: str
    status: BatchStatus
    total: int
    pending: int
    in_progress: int
    succeeded: int
    completed: int
    failed: int
    cancelled: int
    tracks: Dict[str, TrackProgress]
    all_tracks_complete: bool
    elapsed_seconds: float
    throughput_per_minute: float
    eta_seconds: Optional[float]
    metrics: Dict[str, Any]
    recent_logs: List[Dict[str, Any]]
    cancel_requested: bool = False
    error: Optional[str] = None
    output_location: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    taken_at: datetime = field(default_factory=datetime.now)

    @property
    def percentage(self) -> float:
        if not self.total:
            return 100.0
        return round((self.completed + self.failed + self.cancelled) / self.total * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "succeeded": self.succeeded,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "percentage": self.percentage,
            "tracks": {name: t.to_dict() for name, t in self.tracks.items()},
            "all_tracks_complete": self.all_tracks_complete,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "throughput_per_minute": round(self.throughput_per_minute, 2),
            "eta_seconds": round(self.eta_seconds, 1) if self.eta_seconds is not None else None,
            "metrics": self.metrics,
            "recent_logs": self.recent_logs,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "output_location": self.output_location,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ProgressReporter:
    """
    Produces ProgressSnapshots and forwards them to registered callbacks.

    Snapshots are computed from unit states on each call; nothing on the
    batch is modified.

    Usage:
        reporter = ProgressReporter()
        reporter.add_callback(websocket_callback)

        snapshot = reporter.snapshot(batch)
        print(snapshot.to_dict())
    """

    def __init__(self, recent_logs: int = PROGRESS_RECENT_LOGS):
        self.recent_logs = recent_logs
        self._callbacks: List[ProgressCallback] = []

    def add_callback(self, callback: ProgressCallback):
        """Add progress callback."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: ProgressCallback):
        """Remove progress callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def snapshot(self, batch: Batch) -> ProgressSnapshot:
        tracks = {name: TrackProgress.from_track(t) for name, t in batch.tracks.items()}

        pending = sum(t.pending for t in tracks.values())
        in_progress = sum(sum(t.in_progress.values()) for t in tracks.values())
        succeeded = sum(sum(t.succeeded.values()) for t in tracks.values())
        completed = sum(t.completed for t in tracks.values())
        failed = sum(t.failed for t in tracks.values())
        cancelled = sum(t.cancelled for t in tracks.values())
        total = pending + in_progress + succeeded + failed + cancelled

        elapsed = batch.elapsed_seconds
        processed = completed + failed
        throughput = processed / elapsed * 60 if elapsed > 0 and processed else 0.0

        eta = None
        if not batch.is_terminal and throughput > 0:
            eta = (total - processed - cancelled) / throughput * 60

        logs = list(batch.logs)[-self.recent_logs:] if self.recent_logs else []

        return ProgressSnapshot(
            batch_id=batch.id,
            status=batch.status,
            total=total,
            pending=pending,
            in_progress=in_progress,
            succeeded=succeeded,
            completed=completed,
            failed=failed,
            cancelled=cancelled,
            tracks=tracks,
            all_tracks_complete=all(t.complete for t in tracks.values()),
            elapsed_seconds=elapsed,
            throughput_per_minute=throughput,
            eta_seconds=eta,
            metrics=batch.metrics.to_dict(),
            recent_logs=[entry.to_dict() for entry in logs],
            cancel_requested=batch.cancel_requested,
            error=batch.error,
            output_location=batch.output_location,
            created_at=batch.created_at,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
        )

    def publish(self, batch: Batch) -> ProgressSnapshot:
        """Snapshot ``batch`` and notify all callbacks."""
        snapshot = self.snapshot(batch)
        for callback in self._callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")
        return snapshot
