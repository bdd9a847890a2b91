"""
Batch Service - the caller-facing API.

Validates requests synchronously, owns the registry and the per-batch
coordinator tasks, and answers progress queries.
"""

import asyncio
from typing import Optional, Dict, List, Any, Union, Callable, Sequence

from config.constants import BATCH_MAX_FILES, BATCH_LOG_HISTORY, DEFAULT_TRACK_NAME
from config.logging_config import get_logger
from batchflow.errors import ValidationError, InvalidStateError
from batchflow.stages.base import StageProcessor
from batchflow.sinks.result_writer import ResultSink, InMemoryResultSink, JsonFileResultSink
from batchflow.sinks.cleanup import InputCleanup, NoopCleanup

from .batch_job import Batch, BatchStatus
from .unit_state import UnitInput
from .coordinator import BatchCoordinator, CoordinatorConfig, ProcessorLeases
from .job_registry import JobRegistry, InMemoryJobRegistry
from .limiter import LimiterPool
from .progress_tracker import ProgressReporter, ProgressSnapshot
from .retention import RetentionPolicy

logger = get_logger(__name__)


ProcessorMap = Dict[str, StageProcessor]
ProcessorSource = Union[ProcessorMap, Callable[[], ProcessorMap]]


class BatchService:
    """
    Batch orchestration entry point.

    ``processors`` is either a stage-name -> StageProcessor map shared by all
    batches, or a factory returning a fresh map per batch (use a factory
    when processors hold per-batch sessions and batches may overlap).

    Usage:
        service = BatchService({"extract": extractor, "score": scorer})
        batch_id = service.create_batch([UnitInput(name="a.pdf", path=path)])
        await service.start_batch(batch_id)
        snapshot = service.get_progress(batch_id)
    """

    def __init__(
        self,
        processors: ProcessorSource,
        registry: Optional[JobRegistry] = None,
        config: Optional[CoordinatorConfig] = None,
        result_sink: Optional[ResultSink] = None,
        cleanup: Optional[InputCleanup] = None,
        progress: Optional[ProgressReporter] = None,
        retention: Optional[RetentionPolicy] = None,
        default_stages: Optional[List[str]] = None,
        max_files: int = BATCH_MAX_FILES,
        log_history: int = BATCH_LOG_HISTORY,
        reject_delete_while_active: bool = False,
    ):
        """
        Initialize Batch Service

        Args:
            processors: Stage processors, or a factory producing them per batch
            registry: Batch storage (in-memory by default)
            config: Coordinator chunk size and concurrency
            result_sink: Stage result / report persistence
            cleanup: Per-unit input cleanup
            progress: Snapshot builder and callback fan-out
            retention: Expiry policy applied by sweep_expired()
            default_stages: Stages of the ``main`` track when create_batch gets no tracks
            max_files: Upper bound on inputs per batch
            log_history: Activity log entries kept per batch
            reject_delete_while_active: Refuse delete_batch on a running batch
                instead of cancelling it first
        """
        self._processor_source = processors
        self.registry = registry or InMemoryJobRegistry()
        self.config = config or CoordinatorConfig()
        self.result_sink = result_sink or InMemoryResultSink()
        self.cleanup = cleanup or NoopCleanup()
        self.progress = progress or ProgressReporter()
        self.retention = retention or RetentionPolicy(result_sink=self.result_sink)
        self.max_files = max_files
        self.log_history = log_history
        self.reject_delete_while_active = reject_delete_while_active

        self.default_stages = list(default_stages or self._processors().keys())
        if not self.default_stages:
            raise ValueError("At least one stage processor is required")

        # Shared across batches: the bound is per stage, not per batch
        self.limiters = LimiterPool(
            default_concurrency=self.config.stage_concurrency,
            overrides=self.config.stage_concurrency_overrides,
        )
        # Shared processors are opened once and closed by their last batch
        self.leases = ProcessorLeases()

        self._coordinators: Dict[str, BatchCoordinator] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        logger.info(
            f"BatchService initialized: stages={self.default_stages}, "
            f"chunk_size={self.config.chunk_size}, concurrency={self.config.stage_concurrency}"
        )

    @classmethod
    def from_settings(
        cls,
        processors: ProcessorSource,
        settings=None,
        **kwargs,
    ) -> "BatchService":
        """Build a service from ``config.settings.Settings``."""
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()

        logger.info(f"Loading batch service settings: {settings.summary()}")
        result_sink = kwargs.pop("result_sink", None) or JsonFileResultSink(settings.output_dir)
        return cls(
            processors,
            config=CoordinatorConfig.from_settings(settings),
            result_sink=result_sink,
            retention=RetentionPolicy(settings.retention_max_age_seconds, result_sink=result_sink),
            max_files=settings.max_files_per_batch,
            log_history=settings.log_history,
            progress=ProgressReporter(recent_logs=settings.recent_logs),
            reject_delete_while_active=settings.reject_delete_while_active,
            **kwargs,
        )

    def _processors(self) -> ProcessorMap:
        if callable(self._processor_source):
            return self._processor_source()
        return self._processor_source

    # =========================================
    # Operations
    # =========================================

    def create_batch(
        self,
        inputs: Sequence[Union[UnitInput, str]],
        tracks: Optional[Dict[str, List[str]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Register a new batch with every unit Pending.

        Args:
            inputs: Unit inputs (plain strings are taken as names)
            tracks: Track name -> ordered stage names; one ``main`` track by default
            metadata: Extra caller metadata stored on the batch

        Returns:
            New batch id

        Raises:
            ValidationError: empty batch, too many inputs, duplicate ids,
                or a stage without a processor
        """
        if not inputs:
            raise ValidationError("No inputs provided")
        if len(inputs) > self.max_files:
            raise ValidationError(f"Too many inputs: {len(inputs)} (max {self.max_files})")

        unit_inputs = [UnitInput(name=i) if isinstance(i, str) else i for i in inputs]

        ids = [u.id for u in unit_inputs if u.id is not None]
        if len(ids) != len(set(ids)):
            raise ValidationError("Duplicate input ids in batch")

        tracks = tracks or {DEFAULT_TRACK_NAME: list(self.default_stages)}
        known = set(self._processors())
        for name, stages in tracks.items():
            if not stages:
                raise ValidationError(f"Track '{name}' has no stages")
            unknown = [s for s in stages if s not in known]
            if unknown:
                raise ValidationError(f"Track '{name}' uses unknown stages: {', '.join(unknown)}")

        batch = Batch.create(unit_inputs, tracks, log_history=self.log_history)
        if metadata:
            batch.metadata.update(metadata)
        self.registry.add(batch)

        batch.add_log(f"Batch created with {len(unit_inputs)} units, tracks: {', '.join(tracks)}")
        return batch.id

    async def start_batch(self, batch_id: str) -> Batch:
        """
        Start processing a Created batch in a background task.

        Raises:
            NotFoundError: unknown id
            InvalidStateError: batch is not Created
            ValidationError: the processors cannot run the batch's stages
        """
        batch = self.registry.get(batch_id)
        if batch.status != BatchStatus.CREATED:
            raise InvalidStateError(
                f"Batch {batch_id} is not pending (status: {batch.status.value})",
                status=batch.status.value,
            )

        try:
            coordinator = BatchCoordinator(
                batch,
                self._processors(),
                config=self.config,
                result_sink=self.result_sink,
                cleanup=self.cleanup,
                limiters=self.limiters,
                progress=self.progress,
                leases=self.leases,
            )
        except ValueError as e:
            raise ValidationError(f"Batch {batch_id} cannot start: {e}") from e

        self.registry.claim_for_start(batch_id)
        self._coordinators[batch_id] = coordinator
        self._tasks[batch_id] = asyncio.create_task(self._drive(coordinator))

        logger.info(f"[Batch:{batch_id}] Started processing")
        return batch

    async def _drive(self, coordinator: BatchCoordinator):
        try:
            await coordinator.run()
        except asyncio.CancelledError:
            logger.info(f"[Batch:{coordinator.batch.id}] Processing task cancelled")
            raise
        except Exception as e:
            logger.error(f"[Batch:{coordinator.batch.id}] Processing task failed: {e}")

    def get_batch(self, batch_id: str) -> Batch:
        return self.registry.get(batch_id)

    def get_progress(self, batch_id: str) -> ProgressSnapshot:
        """Raises NotFoundError for unknown ids."""
        return self.progress.snapshot(self.registry.get(batch_id))

    def pause_batch(self, batch_id: str):
        batch = self.registry.get(batch_id)
        coordinator = self._coordinators.get(batch_id)
        if batch.status != BatchStatus.PROCESSING or coordinator is None:
            raise InvalidStateError(
                f"Batch {batch_id} cannot be paused (status: {batch.status.value})",
                status=batch.status.value,
            )
        coordinator.request_pause()

    def resume_batch(self, batch_id: str):
        batch = self.registry.get(batch_id)
        coordinator = self._coordinators.get(batch_id)
        if batch.status != BatchStatus.PAUSED or coordinator is None:
            raise InvalidStateError(
                f"Batch {batch_id} is not paused (status: {batch.status.value})",
                status=batch.status.value,
            )
        coordinator.request_resume()

    async def cancel_batch(self, batch_id: str) -> Batch:
        """
        Cancel a batch. Idempotent: a terminal batch is left unchanged.

        A running batch stops at its next chunk boundary; use wait_for()
        to observe the Cancelled status.
        """
        batch = self.registry.get(batch_id)
        if batch.is_terminal:
            return batch

        coordinator = self._coordinators.get(batch_id)
        if coordinator is not None:
            coordinator.request_cancel()
            return batch

        # Never started
        for unit in batch.units:
            unit.cancel()
        batch.cancel_requested = True
        batch.refresh_metrics()
        batch.add_log("Batch cancelled before start", "warning")
        batch.update_status(BatchStatus.CANCELLED)
        try:
            await self.result_sink.write_summary(batch.id, batch.report())
        except Exception as e:
            logger.error(f"[Batch:{batch_id}] Could not save processing report: {e}")
        return batch

    async def delete_batch(self, batch_id: str, discard_outputs: bool = False) -> Batch:
        """
        Remove a batch from the registry.

        A Processing or Paused batch is cancelled and drained first, unless
        ``reject_delete_while_active`` is set, in which case it is refused.
        """
        batch = self.registry.get(batch_id)

        if not batch.is_terminal and batch.status != BatchStatus.CREATED:
            if self.reject_delete_while_active:
                raise InvalidStateError(
                    f"Batch {batch_id} is {batch.status.value}; cancel it before deleting",
                    status=batch.status.value,
                )
            await self.cancel_batch(batch_id)
            await self.wait_for(batch_id)

        self.registry.remove(batch_id)
        self._coordinators.pop(batch_id, None)
        self._tasks.pop(batch_id, None)

        if discard_outputs:
            await self.result_sink.discard(batch_id)

        logger.info(f"[Batch:{batch_id}] Deleted")
        return batch

    def list_batches(self) -> List[Dict[str, Any]]:
        """Summaries of all batches, oldest first."""
        batches = sorted(self.registry.list(), key=lambda b: b.created_at)
        return [b.summary() for b in batches]

    async def wait_for(self, batch_id: str, timeout: Optional[float] = None) -> Batch:
        """Wait until the batch's processing task has finished."""
        batch = self.registry.get(batch_id)
        task = self._tasks.get(batch_id)
        if task is not None and not task.done():
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return batch

    async def sweep_expired(self) -> List[str]:
        """Apply the retention policy; returns removed batch ids."""
        removed = await self.retention.sweep(self.registry)
        for batch_id in removed:
            self._coordinators.pop(batch_id, None)
            self._tasks.pop(batch_id, None)
        return removed

    async def shutdown(self):
        """Cancel every running processing task and wait for them."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"BatchService shut down ({len(tasks)} running batch(es) cancelled)")
