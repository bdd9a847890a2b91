"""
Pytest configuration and shared fixtures for batchflow tests.
"""
import os
import sys
import asyncio
import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator, Dict, List, Optional

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Console logging only during tests
os.environ.setdefault("BATCHFLOW_LOG_FILE", "")

from batchflow.batch import (
    Batch,
    UnitInput,
    BatchService,
    CoordinatorConfig,
)
from batchflow.stages import CallableStage, StageProcessor, StageRequest
from batchflow.sinks import InMemoryResultSink


# ============================================================================
# Helpers
# ============================================================================

async def no_sleep(seconds: float):
    """Drop-in for asyncio.sleep that only yields to the loop."""
    await asyncio.sleep(0)


class RecordingStage(StageProcessor):
    """
    Stage that records every request and can be told to fail for
    particular units.
    """

    def __init__(
        self,
        name: str,
        fail_units: Optional[set] = None,
        delay: float = 0.0,
        payload: Optional[Dict] = None,
    ):
        self.name = name
        self.fail_units = fail_units or set()
        self.delay = delay
        self.payload = payload
        self.requests: List[StageRequest] = []
        self.active = 0
        self.peak_active = 0
        self.opened = 0
        self.closed = 0

    async def open(self):
        self.opened += 1

    async def close(self):
        self.closed += 1

    async def run(self, request: StageRequest):
        from batchflow.errors import UnitFailure

        self.requests.append(request)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if request.unit_id in self.fail_units or request.input.name in self.fail_units:
                raise UnitFailure(f"{self.name} rejected {request.input.name}", stage=self.name)
            if self.payload is not None:
                return dict(self.payload)
            return {"stage": self.name, "unit": request.unit_id}
        finally:
            self.active -= 1


def make_inputs(count: int, prefix: str = "doc") -> List[UnitInput]:
    return [UnitInput(name=f"{prefix}_{i}.pdf", id=f"u{i}", size_bytes=100) for i in range(count)]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def result_sink() -> InMemoryResultSink:
    return InMemoryResultSink()


@pytest.fixture
def extract_stage() -> RecordingStage:
    return RecordingStage("extract")


@pytest.fixture
def score_stage() -> RecordingStage:
    return RecordingStage("score")


@pytest.fixture
def service(extract_stage, score_stage, result_sink) -> BatchService:
    """Service with extract -> score stages and in-memory results."""
    return BatchService(
        {"extract": extract_stage, "score": score_stage},
        config=CoordinatorConfig(chunk_size=5, stage_concurrency=4),
        result_sink=result_sink,
    )


@pytest.fixture
def echo_stage() -> CallableStage:
    async def echo(request: StageRequest):
        return {"name": request.input.name}

    return CallableStage("echo", echo)


@pytest.fixture
def small_batch() -> Batch:
    """Three inputs on the default single track."""
    return Batch.create(make_inputs(3), {"main": ["extract", "score"]})
