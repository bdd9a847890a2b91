"""
Tests for batchflow.batch.service module.

Covers the caller-facing operations, their error contract and the
end-to-end batch scenarios.
"""

import asyncio
import pytest
from unittest.mock import Mock

from batchflow.batch import (
    BatchService,
    BatchStatus,
    CoordinatorConfig,
    UnitInput,
    UnitStatus,
)
from batchflow.errors import ValidationError, NotFoundError, InvalidStateError, UnitFailure
from batchflow.stages import CallableStage, RetryingStage, StageProcessor

from conftest import RecordingStage, make_inputs, no_sleep


class TestCreateBatch:
    """Tests for create_batch validation."""

    def test_create_returns_id(self, service):
        batch_id = service.create_batch(make_inputs(3))
        batch = service.get_batch(batch_id)
        assert batch.status == BatchStatus.CREATED
        assert list(batch.tracks) == ["main"]
        assert batch.tracks["main"].stages == ["extract", "score"]
        assert len(batch.units) == 3

    def test_string_inputs(self, service):
        """Plain strings are accepted as input names."""
        batch_id = service.create_batch(["a.pdf", "b.pdf"])
        assert [u.name for u in service.get_batch(batch_id).units] == ["a.pdf", "b.pdf"]

    def test_empty_batch_rejected(self, service):
        """An empty batch issues no id and leaves the listing unchanged."""
        service.create_batch(make_inputs(1))
        before = service.list_batches()

        with pytest.raises(ValidationError):
            service.create_batch([])

        assert service.list_batches() == before
        assert len(service.registry) == 1

    def test_too_many_inputs(self, extract_stage):
        service = BatchService({"extract": extract_stage}, max_files=2)
        with pytest.raises(ValidationError, match="Too many"):
            service.create_batch(make_inputs(3))

    def test_duplicate_ids(self, service):
        with pytest.raises(ValidationError, match="Duplicate"):
            service.create_batch([UnitInput(name="a", id="x"), UnitInput(name="b", id="x")])

    def test_unknown_stage(self, service):
        with pytest.raises(ValidationError, match="unknown stages"):
            service.create_batch(make_inputs(1), tracks={"main": ["extract", "translate"]})

    def test_empty_track(self, service):
        with pytest.raises(ValidationError):
            service.create_batch(make_inputs(1), tracks={"main": []})

    def test_custom_tracks_and_metadata(self, service):
        batch_id = service.create_batch(
            make_inputs(2),
            tracks={"gpt": ["extract", "score"], "claude": ["extract", "score"]},
            metadata={"folder": "inbox"},
        )
        batch = service.get_batch(batch_id)
        assert set(batch.tracks) == {"gpt", "claude"}
        assert len(batch.units) == 4
        assert batch.metadata["folder"] == "inbox"


class TestOperationErrors:
    """Unknown ids and illegal states."""

    @pytest.mark.asyncio
    async def test_unknown_batch(self, service):
        with pytest.raises(NotFoundError):
            await service.start_batch("missing")
        with pytest.raises(NotFoundError):
            service.get_progress("missing")
        with pytest.raises(NotFoundError):
            service.pause_batch("missing")
        with pytest.raises(NotFoundError):
            service.resume_batch("missing")
        with pytest.raises(NotFoundError):
            await service.cancel_batch("missing")
        with pytest.raises(NotFoundError):
            await service.delete_batch("missing")

    @pytest.mark.asyncio
    async def test_start_twice(self, service):
        batch_id = service.create_batch(make_inputs(2))
        await service.start_batch(batch_id)
        with pytest.raises(InvalidStateError):
            await service.start_batch(batch_id)
        await service.wait_for(batch_id, timeout=2)

    @pytest.mark.asyncio
    async def test_start_without_processor_keeps_batch_created(self):
        """A processor map missing a stage rejects the start and leaves the batch startable."""
        stages = {"extract": RecordingStage("extract")}
        calls = []

        def factory():
            calls.append(1)
            return {} if len(calls) == 3 else stages

        service = BatchService(factory)
        batch_id = service.create_batch(make_inputs(2))

        with pytest.raises(ValidationError):
            await service.start_batch(batch_id)
        assert service.get_batch(batch_id).status == BatchStatus.CREATED

        await service.start_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)
        assert batch.status == BatchStatus.COMPLETED

    def test_pause_resume_require_state(self, service):
        batch_id = service.create_batch(make_inputs(1))
        with pytest.raises(InvalidStateError):
            service.pause_batch(batch_id)
        with pytest.raises(InvalidStateError):
            service.resume_batch(batch_id)

    @pytest.mark.asyncio
    async def test_start_after_completion(self, service):
        batch_id = service.create_batch(make_inputs(1))
        await service.start_batch(batch_id)
        await service.wait_for(batch_id, timeout=2)
        with pytest.raises(InvalidStateError):
            await service.start_batch(batch_id)
        with pytest.raises(InvalidStateError):
            service.resume_batch(batch_id)


class TestEndToEnd:
    """End-to-end batch scenarios."""

    @pytest.mark.asyncio
    async def test_all_succeed(self, echo_stage):
        """Three units, always-succeeding stage: Completed with 3 successes."""
        service = BatchService({"echo": echo_stage})
        batch_id = service.create_batch([UnitInput(name=n, id=n) for n in ("u1", "u2", "u3")])

        await service.start_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)

        assert batch.status == BatchStatus.COMPLETED
        assert batch.metrics.completed == 3
        assert batch.metrics.failed == 0

    @pytest.mark.asyncio
    async def test_one_unit_exhausts_retries(self):
        """A unit failing every retry does not fail the batch."""
        calls = {"u2": 0}

        async def flaky(request):
            if request.unit_id == "u2":
                calls["u2"] += 1
                raise UnitFailure("provider returned 503")
            return {"ok": True}

        stage = RetryingStage(CallableStage("score", flaky), max_attempts=3, delay=2.0, sleep=no_sleep)
        service = BatchService({"score": stage})
        batch_id = service.create_batch([UnitInput(name=n, id=n) for n in ("u1", "u2", "u3")])

        await service.start_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)

        assert batch.status == BatchStatus.COMPLETED
        assert batch.metrics.completed == 2
        assert batch.metrics.failed == 1
        u2 = batch.get_unit("u2")
        assert u2.error
        assert u2.retry_count == 3
        assert calls["u2"] == 3

    @pytest.mark.asyncio
    async def test_cancel_during_second_chunk(self):
        """Cancelling during chunk 2 of 3 finishes chunk 2 and cancels the rest."""
        holder = {}

        async def extract(request):
            if request.unit_id == "u5":
                await holder["service"].cancel_batch(holder["batch_id"])
            await asyncio.sleep(0.001)
            return {"ok": True}

        service = BatchService(
            {"extract": CallableStage("extract", extract)},
            config=CoordinatorConfig(chunk_size=5),
        )
        batch_id = service.create_batch(make_inputs(12))
        holder.update(service=service, batch_id=batch_id)

        await service.start_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)

        units = batch.tracks["main"].units
        assert batch.status == BatchStatus.CANCELLED
        assert all(u.status == UnitStatus.SUCCEEDED for u in units[:10])
        assert [u.status for u in units[10:]] == [UnitStatus.CANCELLED] * 2

    @pytest.mark.asyncio
    async def test_three_tracks_complete_in_order(self):
        """Overall completion is reported only once the slowest track finishes."""
        service = BatchService({
            "a": RecordingStage("a", delay=0.01),
            "b": RecordingStage("b", delay=0.05),
            "c": RecordingStage("c", delay=0.1),
        })
        batch_id = service.create_batch(make_inputs(2), tracks={"A": ["a"], "B": ["b"], "C": ["c"]})
        await service.start_batch(batch_id)

        seen = []
        while True:
            snap = service.get_progress(batch_id)
            flags = tuple(snap.tracks[t].complete for t in ("A", "B", "C"))
            seen.append((flags, snap.all_tracks_complete))
            if snap.status == BatchStatus.COMPLETED:
                break
            await asyncio.sleep(0.002)

        for flags, overall in seen:
            assert overall == all(flags)
        assert ((True, False, False), False) in seen
        assert ((True, True, False), False) in seen
        assert seen[-1] == ((True, True, True), True)


class TestControl:
    """Pause, resume, cancel and delete through the service."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        holder = {}

        async def extract(request):
            if request.unit_id == "u0":
                holder["service"].pause_batch(holder["batch_id"])
            return {"ok": True}

        service = BatchService({"extract": CallableStage("extract", extract)})
        batch_id = service.create_batch(make_inputs(10))
        holder.update(service=service, batch_id=batch_id)
        await service.start_batch(batch_id)

        while service.get_progress(batch_id).completed < 5:
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)
        snap = service.get_progress(batch_id)
        assert snap.status == BatchStatus.PAUSED
        assert snap.pending == 5

        service.resume_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)
        assert batch.status == BatchStatus.COMPLETED
        assert any(e.message == "Batch resumed by user" for e in batch.logs)

    @pytest.mark.asyncio
    async def test_pause_in_last_chunk_holds_until_resume(self):
        """A pause arriving during the final chunk is honoured before completion."""
        holder = {}

        async def extract(request):
            if request.unit_id == "u0":
                holder["service"].pause_batch(holder["batch_id"])
            return {"ok": True}

        service = BatchService({"extract": CallableStage("extract", extract)})
        batch_id = service.create_batch(make_inputs(3))
        holder.update(service=service, batch_id=batch_id)
        await service.start_batch(batch_id)

        while service.get_progress(batch_id).completed < 3:
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)
        assert service.get_batch(batch_id).status == BatchStatus.PAUSED

        service.resume_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.metrics.completed == 3

    @pytest.mark.asyncio
    async def test_cancel_while_paused_after_last_chunk(self):
        holder = {}

        async def extract(request):
            if request.unit_id == "u0":
                holder["service"].pause_batch(holder["batch_id"])
            return {"ok": True}

        service = BatchService({"extract": CallableStage("extract", extract)})
        batch_id = service.create_batch(make_inputs(3))
        holder.update(service=service, batch_id=batch_id)
        await service.start_batch(batch_id)
        while service.get_progress(batch_id).completed < 3:
            await asyncio.sleep(0.001)

        await service.cancel_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)

        assert batch.status == BatchStatus.CANCELLED
        assert batch.metrics.completed == 3

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, service, result_sink):
        batch_id = service.create_batch(make_inputs(3))

        batch = await service.cancel_batch(batch_id)

        assert batch.status == BatchStatus.CANCELLED
        assert all(u.status == UnitStatus.CANCELLED for u in batch.units)
        assert result_sink.reports[batch_id]["status"] == "cancelled"
        with pytest.raises(InvalidStateError):
            await service.start_batch(batch_id)

    @pytest.mark.asyncio
    async def test_cancel_twice_is_ok(self, service):
        """Cancelling twice succeeds and logs one cancellation."""
        batch_id = service.create_batch(make_inputs(3))
        await service.cancel_batch(batch_id)
        await service.cancel_batch(batch_id)

        batch = service.get_batch(batch_id)
        cancelled = [e for e in batch.logs if "cancel" in e.message.lower()]
        assert len(cancelled) == 1

    @pytest.mark.asyncio
    async def test_cancel_running_twice(self):
        stage = RecordingStage("extract", delay=0.01)
        service = BatchService({"extract": stage})
        batch_id = service.create_batch(make_inputs(12))
        await service.start_batch(batch_id)

        await service.cancel_batch(batch_id)
        await service.cancel_batch(batch_id)
        batch = await service.wait_for(batch_id, timeout=2)
        await service.cancel_batch(batch_id)

        assert batch.status == BatchStatus.CANCELLED
        requested = [e for e in batch.logs if "Cancellation requested" in e.message]
        assert len(requested) == 1

    @pytest.mark.asyncio
    async def test_snapshot_after_termination(self, service):
        """Progress stays queryable after the batch is cancelled."""
        batch_id = service.create_batch(make_inputs(2))
        await service.cancel_batch(batch_id)

        snap = service.get_progress(batch_id)

        assert snap.status == BatchStatus.CANCELLED
        assert snap.cancelled == 2

    @pytest.mark.asyncio
    async def test_delete_running_cancels_first(self):
        stage = RecordingStage("extract", delay=0.01)
        service = BatchService({"extract": stage})
        batch_id = service.create_batch(make_inputs(12))
        await service.start_batch(batch_id)

        batch = await service.delete_batch(batch_id)

        assert batch.status == BatchStatus.CANCELLED
        assert service.list_batches() == []
        with pytest.raises(NotFoundError):
            service.get_progress(batch_id)

    @pytest.mark.asyncio
    async def test_delete_running_rejected_when_configured(self):
        stage = RecordingStage("extract", delay=0.01)
        service = BatchService({"extract": stage}, reject_delete_while_active=True)
        batch_id = service.create_batch(make_inputs(6))
        await service.start_batch(batch_id)

        with pytest.raises(InvalidStateError):
            await service.delete_batch(batch_id)

        await service.cancel_batch(batch_id)
        await service.wait_for(batch_id, timeout=2)
        await service.delete_batch(batch_id)
        assert len(service.registry) == 0

    @pytest.mark.asyncio
    async def test_list_batches(self, service):
        first = service.create_batch(make_inputs(1))
        second = service.create_batch(make_inputs(2))
        summaries = service.list_batches()
        assert [s["id"] for s in summaries] == [first, second]
        assert summaries[1]["total_units"] == 2
        assert summaries[0]["status"] == "created"


class TestServiceWiring:
    """Shared limiters, processor factories and shutdown."""

    @pytest.mark.asyncio
    async def test_limit_shared_across_batches(self):
        """The per-stage limit holds across concurrently running batches."""
        stage = RecordingStage("extract", delay=0.005)
        service = BatchService({"extract": stage}, config=CoordinatorConfig(stage_concurrency=2))
        ids = [service.create_batch(make_inputs(5, prefix=f"b{i}")) for i in range(3)]

        for batch_id in ids:
            await service.start_batch(batch_id)
        for batch_id in ids:
            await service.wait_for(batch_id, timeout=5)

        assert stage.peak_active <= 2
        assert service.limiters.get("extract").admitted == 15

    @pytest.mark.asyncio
    async def test_shared_processor_closed_by_last_batch(self):
        """A batch finishing early does not close a session another batch still uses."""

        class SessionStage(StageProcessor):
            name = "extract"

            def __init__(self):
                self.session = None
                self.opened = 0
                self.closed = 0

            async def open(self):
                self.opened += 1
                self.session = object()

            async def close(self):
                self.closed += 1
                self.session = None

            async def run(self, request):
                await asyncio.sleep(0.005)
                if self.session is None:
                    raise RuntimeError("session closed")
                return {"ok": True}

        stage = SessionStage()
        service = BatchService({"extract": stage})
        short_id = service.create_batch(make_inputs(1, prefix="a"))
        long_id = service.create_batch(make_inputs(10, prefix="b"))

        await service.start_batch(short_id)
        await service.start_batch(long_id)
        short = await service.wait_for(short_id, timeout=2)
        assert short.status == BatchStatus.COMPLETED

        long = await service.wait_for(long_id, timeout=2)
        assert long.status == BatchStatus.COMPLETED
        assert long.metrics.failed == 0
        assert stage.opened == stage.closed == 1
        assert service.leases.users(stage) == 0

    @pytest.mark.asyncio
    async def test_processor_factory(self):
        """A factory yields fresh processors for each batch."""
        created = []

        def factory():
            stage = RecordingStage("extract")
            created.append(stage)
            return {"extract": stage}

        service = BatchService(factory)
        batch_id = service.create_batch(make_inputs(2))
        await service.start_batch(batch_id)
        await service.wait_for(batch_id, timeout=2)

        started = [s for s in created if s.requests]
        assert len(started) == 1
        assert started[0].opened == started[0].closed == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running(self):
        stage = RecordingStage("extract", delay=10)
        service = BatchService({"extract": stage})
        batch_id = service.create_batch(make_inputs(3))
        await service.start_batch(batch_id)
        while len(stage.requests) < 3:
            await asyncio.sleep(0.001)

        await service.shutdown()

        assert service.get_batch(batch_id).status == BatchStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_sweep_expired(self, service):
        service.retention.max_age_seconds = 0
        batch_id = service.create_batch(make_inputs(1))
        await service.start_batch(batch_id)
        await service.wait_for(batch_id, timeout=2)
        await asyncio.sleep(0.001)

        assert await service.sweep_expired() == [batch_id]
        assert service.list_batches() == []

    def test_from_settings(self, temp_dir, extract_stage):
        settings = Mock(
            chunk_size=3,
            stage_concurrency=2,
            output_dir=temp_dir,
            retention_max_age_seconds=None,
            max_files_per_batch=10,
            log_history=50,
            recent_logs=5,
            reject_delete_while_active=True,
        )
        service = BatchService.from_settings({"extract": extract_stage}, settings)
        assert service.config.chunk_size == 3
        assert service.max_files == 10
        assert service.reject_delete_while_active is True
        assert service.result_sink.location("x") == str(temp_dir / "x")
