"""
Batch coordinator.

Drives one batch's units through each track's stages in fixed-size chunks,
under per-stage concurrency limits, and owns the batch state machine:

    CREATED -> PROCESSING -> COMPLETED | FAILED | CANCELLED
    PROCESSING <-> PAUSED,  PAUSED -> CANCELLED
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, List, Iterator
import asyncio
import time

from config.logging_config import get_logger
from config.constants import (
    BATCH_CHUNK_SIZE,
    BATCH_STAGE_CONCURRENCY,
)
from batchflow.errors import (
    UnitFailure,
    FatalBatchError,
    InvalidStateError,
)
from batchflow.stages.base import StageProcessor, StageRequest
from batchflow.sinks.result_writer import ResultSink, InMemoryResultSink
from batchflow.sinks.cleanup import InputCleanup, NoopCleanup

from .batch_job import Batch, BatchStatus, Track
from .unit_state import Unit, UnitStatus
from .limiter import LimiterPool
from .progress_tracker import ProgressReporter

logger = get_logger(__name__)


@dataclass
class CoordinatorConfig:
    """Configuration for BatchCoordinator."""
    chunk_size: int = BATCH_CHUNK_SIZE
    stage_concurrency: int = BATCH_STAGE_CONCURRENCY
    stage_concurrency_overrides: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "CoordinatorConfig":
        return cls(
            chunk_size=settings.chunk_size,
            stage_concurrency=settings.stage_concurrency,
        )


class ProcessorLeases:
    """
    Open/close reference counts for stage processors.

    A processor is opened by its first user and closed when its last user
    releases it, so batches sharing one processor instance never close a
    session another batch is still using.
    """

    def __init__(self):
        self._counts: Dict[int, int] = {}
        self._lock = asyncio.Lock()

    def users(self, processor: StageProcessor) -> int:
        return self._counts.get(id(processor), 0)

    async def acquire(self, processor: StageProcessor):
        async with self._lock:
            key = id(processor)
            if not self._counts.get(key):
                await processor.open()
            self._counts[key] = self._counts.get(key, 0) + 1

    async def release(self, processor: StageProcessor):
        async with self._lock:
            key = id(processor)
            remaining = self._counts.get(key, 0) - 1
            if remaining > 0:
                self._counts[key] = remaining
                return
            self._counts.pop(key, None)
            await processor.close()


def chunked(units: List[Unit], size: int) -> Iterator[List[Unit]]:
    """Split units, in order, into consecutive chunks of ``size``."""
    for i in range(0, len(units), size):
        yield units[i:i + size]


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class BatchCoordinator:
    """
    Drives a single batch to a terminal state.

    Per track, units are split into chunks of ``config.chunk_size``. Each
    chunk fans out one attempt per unit and is awaited in full before the
    next chunk starts; pause and cancellation take effect at these chunk
    boundaries. A unit's failure is recorded on the unit only;
    FatalBatchError is the one error that ends the batch as FAILED.

    Usage:
        coordinator = BatchCoordinator(batch, {"extract": extractor}, config)
        batch.update_status(BatchStatus.PROCESSING)
        await coordinator.run()
    """

    def __init__(
        self,
        batch: Batch,
        processors: Dict[str, StageProcessor],
        config: Optional[CoordinatorConfig] = None,
        result_sink: Optional[ResultSink] = None,
        cleanup: Optional[InputCleanup] = None,
        limiters: Optional[LimiterPool] = None,
        progress: Optional[ProgressReporter] = None,
        leases: Optional[ProcessorLeases] = None,
    ):
        """
        Initialize coordinator.

        Args:
            batch: Batch to drive (borrowed from the registry)
            processors: Stage name -> StageProcessor
            config: Chunk size and concurrency settings
            result_sink: Persists stage results and the final report
            cleanup: Removes unit inputs once all their attempts finish
            limiters: Shared per-stage limiters (one pool per coordinator if omitted)
            progress: Receives a snapshot after every chunk
            leases: Shared open/close counts (one per coordinator if omitted)
        """
        self.config = config or CoordinatorConfig()
        if self.config.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.config.chunk_size}")

        missing = sorted({
            stage for track in batch.tracks.values() for stage in track.stages
        } - set(processors))
        if missing:
            raise ValueError(f"No stage processor for: {', '.join(missing)}")

        self.batch = batch
        self.processors = processors
        self.result_sink = result_sink or InMemoryResultSink()
        self.cleanup = cleanup or NoopCleanup()
        self.progress = progress
        self.leases = leases or ProcessorLeases()
        self.limiters = limiters or LimiterPool(
            default_concurrency=self.config.stage_concurrency,
            overrides=self.config.stage_concurrency_overrides,
        )

        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._fatal_error: Optional[BaseException] = None
        self._opened: List[StageProcessor] = []

        # unit id -> its record in every track
        self._records: Dict[str, List[Unit]] = {}
        for unit in batch.units:
            self._records.setdefault(unit.id, []).append(unit)
        self._cleaned: set = set()

        if batch.output_location is None:
            batch.output_location = self.result_sink.location(batch.id)

        logger.debug(
            f"[Batch:{batch.id}] Coordinator ready: "
            f"chunk_size={self.config.chunk_size}, "
            f"concurrency={self.config.stage_concurrency}, "
            f"tracks={list(batch.tracks)}"
        )

    # =========================================
    # Control (called by BatchService)
    # =========================================

    def request_pause(self):
        if self.batch.status != BatchStatus.PROCESSING:
            raise InvalidStateError(
                f"Batch {self.batch.id} cannot be paused (status: {self.batch.status.value})",
                status=self.batch.status.value,
            )
        self._resume_event.clear()
        self.batch.update_status(BatchStatus.PAUSED)
        self.batch.add_log("Batch paused by user", "warning")

    def request_resume(self):
        if self.batch.status != BatchStatus.PAUSED:
            raise InvalidStateError(
                f"Batch {self.batch.id} is not paused (status: {self.batch.status.value})",
                status=self.batch.status.value,
            )
        self.batch.update_status(BatchStatus.PROCESSING)
        self.batch.add_log("Batch resumed by user")
        self._resume_event.set()

    def request_cancel(self) -> bool:
        """
        Ask the processing loop to stop at its next chunk boundary.

        Returns:
            True if this call registered the cancellation, False if the batch
            was already terminal or already cancelling
        """
        if self.batch.is_terminal or self.batch.cancel_requested:
            return False

        self.batch.cancel_requested = True
        self.batch.add_log("Cancellation requested by user", "warning")
        self._resume_event.set()
        return True

    # =========================================
    # Processing loop
    # =========================================

    async def run(self) -> Batch:
        """Process the batch to a terminal state. Never raises for unit failures."""
        batch = self.batch
        if batch.status not in (BatchStatus.PROCESSING, BatchStatus.PAUSED):
            raise InvalidStateError(
                f"Batch {batch.id} is not processing (status: {batch.status.value})",
                status=batch.status.value,
            )

        start_time = time.time()
        batch.add_log(
            f"Started batch processing: {len(batch.inputs)} units, "
            f"tracks: {', '.join(f'{t.name}={t.stages}' for t in batch.tracks.values())}"
        )

        try:
            await self._open_processors()

            outcomes = await asyncio.gather(
                *(self._run_track(track) for track in batch.tracks.values()),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome

            if batch.status == BatchStatus.PAUSED:
                # Paused during the last chunk: hold until resumed or cancelled
                await self._checkpoint()

        except asyncio.CancelledError:
            await self._finalize(BatchStatus.CANCELLED, "Batch processing task cancelled")
            raise

        except FatalBatchError as e:
            await self._finalize(BatchStatus.FAILED, f"Batch processing failed: {e}", error=str(e))

        except Exception as e:
            logger.exception(f"[Batch:{batch.id}] Unhandled error in processing loop")
            await self._finalize(BatchStatus.FAILED, f"Batch processing failed: {e}", error=str(e))

        else:
            if batch.cancel_requested:
                await self._finalize(BatchStatus.CANCELLED, "Batch processing cancelled")
            else:
                batch.refresh_metrics()
                await self._finalize(
                    BatchStatus.COMPLETED,
                    f"Batch completed in {format_duration(time.time() - start_time)}. "
                    f"Success: {batch.metrics.completed}, Errors: {batch.metrics.failed}",
                    level="success",
                )

        return batch

    async def _open_processors(self):
        used = []
        for track in self.batch.tracks.values():
            for stage in track.stages:
                processor = self.processors[stage]
                if processor not in used:
                    used.append(processor)

        for processor in used:
            try:
                await self.leases.acquire(processor)
            except FatalBatchError:
                raise
            except Exception as e:
                raise FatalBatchError(f"Could not open stage '{processor.name}': {e}") from e
            self._opened.append(processor)

    async def _close_processors(self):
        for processor in self._opened:
            try:
                await self.leases.release(processor)
            except Exception as e:
                logger.warning(f"[Batch:{self.batch.id}] Closing stage '{processor.name}' failed: {e}")
        self._opened = []

    async def _checkpoint(self) -> bool:
        """Chunk boundary: wait while paused; False means stop dispatching."""
        while True:
            if self.batch.is_terminal or self.batch.cancel_requested or self._fatal_error:
                return False
            if self.batch.status == BatchStatus.PAUSED:
                await self._resume_event.wait()
                continue
            return True

    async def _run_track(self, track: Track):
        chunks = list(chunked(track.units, self.config.chunk_size))
        total = len(track.units)
        label = f"[{track.name}] " if len(self.batch.tracks) > 1 else ""

        for index, chunk in enumerate(chunks, 1):
            if not await self._checkpoint():
                logger.info(
                    f"[Batch:{self.batch.id}] {label}Dispatch stopped before chunk {index}/{len(chunks)}"
                )
                return

            await self.process_chunk(track, chunk)

            done = sum(1 for u in track.units if u.is_terminal)
            self.batch.add_log(
                f"{label}Batch progress: {done}/{total} ({round(done / total * 100)}%)"
            )
            if self.progress:
                self.progress.publish(self.batch)

    async def process_chunk(self, track: Track, units: List[Unit]) -> List[Unit]:
        """
        Run one attempt per pending unit in ``units`` concurrently and wait
        for all of them. A no-op once the batch is terminal.

        Raises:
            FatalBatchError: if any attempt hit a batch-level failure
        """
        if self.batch.is_terminal:
            logger.debug(f"[Batch:{self.batch.id}] Ignoring chunk: batch is {self.batch.status.value}")
            return []

        dispatched = [u for u in units if u.status == UnitStatus.PENDING]
        outcomes = await asyncio.gather(
            *(self._process_unit(track, unit) for unit in dispatched),
            return_exceptions=True,
        )
        self.batch.refresh_metrics()

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (FatalBatchError, asyncio.CancelledError)):
                    outcome = FatalBatchError(f"Unexpected error: {outcome}")
                self._fatal_error = outcome
                raise outcome

        return dispatched

    async def _process_unit(self, track: Track, unit: Unit):
        """Run ``unit`` through the track's stages; failures stay on the unit."""
        batch = self.batch
        start_time = time.time()
        batch.add_log(
            f"Processing {unit.name} ({unit.input.size_bytes} bytes)...",
            unit_id=unit.id,
            track=track.name,
        )

        try:
            for stage in track.stages:
                if batch.is_terminal:
                    return

                processor = self.processors[stage]
                request = StageRequest(
                    batch_id=batch.id,
                    track=track.name,
                    stage=stage,
                    unit_id=unit.id,
                    input=unit.input,
                    previous_results=dict(unit.stage_results),
                )

                try:
                    async with self.limiters.get(stage).slot():
                        unit.begin_stage(stage)
                        result = await processor.process(request)

                    if batch.is_terminal:
                        return

                    try:
                        await self.result_sink.write_result(
                            batch.id, unit.id, stage, result.payload, track=track.name
                        )
                    except OSError as e:
                        raise UnitFailure(f"Could not persist {stage} result: {e}", stage=stage) from e

                except FatalBatchError as e:
                    if not batch.is_terminal and not unit.is_terminal:
                        unit.fail(stage, str(e))
                    raise

                except UnitFailure as e:
                    self._record_failure(track, unit, stage, str(e), e.attempts, start_time)
                    return

                except Exception as e:
                    logger.exception(f"[Batch:{batch.id}] Stage '{stage}' raised for {unit.name}")
                    self._record_failure(
                        track, unit, stage, f"{type(e).__name__}: {e}", 1, start_time
                    )
                    return

                unit.succeed_stage(stage, result.payload, attempts=result.attempts)
                batch.refresh_metrics()

            batch.add_log(
                f"Successfully processed {unit.name} in {format_duration(time.time() - start_time)}",
                "success",
                unit_id=unit.id,
                track=track.name,
                processing_time=time.time() - start_time,
                retry_count=unit.retry_count,
            )

        finally:
            await self._unit_finished(unit.id)

    def _record_failure(
        self,
        track: Track,
        unit: Unit,
        stage: str,
        error: str,
        attempts: int,
        start_time: float,
    ):
        if self.batch.is_terminal:
            return
        unit.fail(stage, error, attempts=attempts)
        self.batch.refresh_metrics()
        self.batch.add_log(
            f"Failed to process {unit.name} at {stage} after {unit.retry_count} attempts: {error}",
            "error",
            unit_id=unit.id,
            track=track.name,
            processing_time=time.time() - start_time,
            retry_count=unit.retry_count,
        )

    async def _unit_finished(self, unit_id: str):
        """Clean up a unit's input once every track is done with it."""
        if unit_id in self._cleaned:
            return
        records = self._records.get(unit_id, [])
        if not records or not all(r.is_terminal for r in records):
            return

        self._cleaned.add(unit_id)
        unit_input = records[0].input
        try:
            await self.cleanup.cleanup(unit_input)
        except Exception as e:
            self.batch.add_log(
                f"Warning: could not clean up {unit_input.name}: {e}",
                "warning",
                unit_id=unit_id,
            )

    # =========================================
    # Termination
    # =========================================

    async def _finalize(
        self,
        status: BatchStatus,
        message: str,
        level: Optional[str] = None,
        error: Optional[str] = None,
    ):
        batch = self.batch
        if batch.is_terminal:
            return

        if status == BatchStatus.CANCELLED:
            for unit in batch.units:
                if not unit.is_terminal:
                    unit.cancel()

        batch.refresh_metrics()
        batch.add_log(message, level or ("error" if status == BatchStatus.FAILED else "warning"))
        batch.update_status(status, error=error)
        batch.refresh_metrics()

        await self._close_processors()

        for unit_id in list(self._records):
            await self._unit_finished(unit_id)

        try:
            await self.result_sink.write_summary(batch.id, batch.report())
        except Exception as e:
            logger.error(f"[Batch:{batch.id}] Could not save processing report: {e}")

        logger.info(
            f"[Batch:{batch.id}] {status.value}: "
            f"{batch.metrics.completed} succeeded, {batch.metrics.failed} failed, "
            f"{batch.metrics.cancelled} cancelled ({batch.elapsed_seconds:.1f}s)"
        )

