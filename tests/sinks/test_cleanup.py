"""
Unit tests for batchflow.sinks.cleanup module.
"""

import pytest

from batchflow.batch.unit_state import UnitInput
from batchflow.sinks import NoopCleanup, TempFileCleanup


class TestCleanup:
    """Tests for input cleanup sinks."""

    @pytest.mark.asyncio
    async def test_temp_file_removed(self, temp_dir):
        path = temp_dir / "upload.pdf"
        path.write_bytes(b"data")

        await TempFileCleanup().cleanup(UnitInput(name="upload.pdf", path=path))

        assert not path.exists()

    @pytest.mark.asyncio
    async def test_missing_or_no_path(self, temp_dir):
        cleanup = TempFileCleanup()
        await cleanup.cleanup(UnitInput(name="x", path=temp_dir / "gone.pdf"))
        await cleanup.cleanup(UnitInput(name="y"))

    @pytest.mark.asyncio
    async def test_noop_leaves_file(self, temp_dir):
        path = temp_dir / "keep.pdf"
        path.write_bytes(b"data")
        await NoopCleanup().cleanup(UnitInput(name="keep.pdf", path=path))
        assert path.exists()
