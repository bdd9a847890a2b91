"""
Unit lifecycle management.
Tracks one input item's state, per-stage results, timing and retries.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
from pathlib import Path

from config.logging_config import get_logger
from batchflow.errors import InvalidStateError

logger = get_logger(__name__)


class UnitStatus(Enum):
    """Unit state. IN_PROGRESS and SUCCEEDED are qualified by Unit.stage."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UnitInput:
    """One caller-supplied item (e.g. an uploaded document)."""
    name: str
    id: Optional[str] = None
    path: Optional[Path] = None
    size_bytes: int = 0
    payload: Any = None


@dataclass
class UnitTiming:
    """Timing information for a unit's stages."""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stage_started: Dict[str, datetime] = field(default_factory=dict)
    stage_completed: Dict[str, datetime] = field(default_factory=dict)

    @property
    def processing_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()


@dataclass
class Unit:
    """
    One input item's record within a single track.

    Transitions:
        PENDING -> IN_PROGRESS[stage] -> SUCCEEDED[stage] -> IN_PROGRESS[next] ...
        any non-terminal -> FAILED | CANCELLED

    SUCCEEDED is terminal only for the track's final stage.
    """
    id: str
    input: UnitInput
    track: str
    final_stage: str
    status: UnitStatus = UnitStatus.PENDING
    stage: Optional[str] = None
    stage_results: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    retry_count: int = 0
    timing: UnitTiming = field(default_factory=UnitTiming)

    @property
    def name(self) -> str:
        return self.input.name

    @property
    def is_terminal(self) -> bool:
        if self.status in (UnitStatus.FAILED, UnitStatus.CANCELLED):
            return True
        return self.status == UnitStatus.SUCCEEDED and self.stage == self.final_stage

    @property
    def state(self) -> str:
        """State label, e.g. ``in_progress[extract]``."""
        if self.status in (UnitStatus.IN_PROGRESS, UnitStatus.SUCCEEDED) and self.stage:
            return f"{self.status.value}[{self.stage}]"
        return self.status.value

    def _ensure_mutable(self, action: str):
        if self.is_terminal:
            raise InvalidStateError(
                f"Unit {self.id} ({self.track}) is {self.state}; cannot {action}",
                status=self.state,
            )

    def begin_stage(self, stage: str):
        """Mark an attempt on ``stage`` as started."""
        self._ensure_mutable(f"start {stage}")
        now = datetime.now()
        if self.stage != stage:
            self.retry_count = 0
        if not self.timing.started_at:
            self.timing.started_at = now
        self.timing.stage_started[stage] = now
        self.status = UnitStatus.IN_PROGRESS
        self.stage = stage
        logger.debug(f"Unit {self.id} ({self.track}): → {self.state}")

    def succeed_stage(self, stage: str, result: Any, attempts: int = 1):
        """Record ``result`` for ``stage`` and advance the unit."""
        self._ensure_mutable(f"complete {stage}")
        now = datetime.now()
        self.stage_results[stage] = result
        self.timing.stage_completed[stage] = now
        self.status = UnitStatus.SUCCEEDED
        self.stage = stage
        self.error = None
        self.retry_count = attempts
        if stage == self.final_stage:
            self.timing.completed_at = now
        logger.debug(f"Unit {self.id} ({self.track}): → {self.state}")

    def fail(self, stage: Optional[str], error: str, attempts: int = 1):
        """Mark the unit failed on ``stage``."""
        self._ensure_mutable("fail")
        self.status = UnitStatus.FAILED
        if stage:
            self.stage = stage
        self.error = error or "Unknown error"
        self.retry_count = max(attempts, 1)
        self.timing.completed_at = datetime.now()
        logger.debug(f"Unit {self.id} ({self.track}): → failed ({self.error})")

    def cancel(self):
        """Mark an un-started or between-stage unit cancelled."""
        self._ensure_mutable("cancel")
        self.status = UnitStatus.CANCELLED
        self.timing.completed_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "track": self.track,
            "state": self.state,
            "status": self.status.value,
            "stage": self.stage,
            "error": self.error,
            "retry_count": self.retry_count,
            "size_bytes": self.input.size_bytes,
            "processing_seconds": round(self.timing.processing_seconds, 3),
            "stages_completed": list(self.timing.stage_completed.keys()),
        }
