"""
Result persistence.

Stage results are written per (batch, unit, stage); the processing report
is written once when a batch reaches a terminal state.
"""

import asyncio
import json
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, Union

from config.constants import OUTPUT_DIR, RESULTS_SUBDIR, REPORT_FILENAME
from config.logging_config import get_logger

logger = get_logger(__name__)


class ResultSink(ABC):
    """Where stage outputs and batch reports go"""

    @abstractmethod
    async def write_result(
        self,
        batch_id: str,
        unit_id: str,
        stage: str,
        result: Dict[str, Any],
        track: Optional[str] = None,
    ) -> None:
        """Persist one stage result. Raises OSError on failure."""
        pass

    @abstractmethod
    async def write_summary(self, batch_id: str, report: Dict[str, Any]) -> None:
        """Persist the batch processing report."""
        pass

    @abstractmethod
    def location(self, batch_id: str) -> Optional[str]:
        """Opaque handle for the batch's outputs."""
        pass

    @abstractmethod
    async def discard(self, batch_id: str) -> None:
        """Remove everything stored for the batch."""
        pass


class InMemoryResultSink(ResultSink):
    """Keeps results in process memory."""

    def __init__(self):
        self.results: Dict[Tuple[str, Optional[str], str, str], Dict[str, Any]] = {}
        self.reports: Dict[str, Dict[str, Any]] = {}

    async def write_result(self, batch_id, unit_id, stage, result, track=None) -> None:
        self.results[(batch_id, track, stage, unit_id)] = result

    async def write_summary(self, batch_id, report) -> None:
        self.reports[batch_id] = report

    def location(self, batch_id: str) -> Optional[str]:
        return f"memory://{batch_id}"

    async def discard(self, batch_id: str) -> None:
        for key in [k for k in self.results if k[0] == batch_id]:
            del self.results[key]
        self.reports.pop(batch_id, None)


class JsonFileResultSink(ResultSink):
    """
    Writes JSON files under ``<output_dir>/<batch_id>/``:

        json_results/<track>/<stage>/<unit_id>.json
        processing_report.json
    """

    def __init__(self, output_dir: Union[str, Path] = OUTPUT_DIR):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def batch_dir(self, batch_id: str) -> Path:
        return self.output_dir / batch_id

    def result_path(self, batch_id: str, unit_id: str, stage: str, track: Optional[str] = None) -> Path:
        base = self.batch_dir(batch_id) / RESULTS_SUBDIR
        if track:
            base = base / track
        return base / stage / f"{unit_id}.json"

    def report_path(self, batch_id: str) -> Path:
        return self.batch_dir(batch_id) / REPORT_FILENAME

    def location(self, batch_id: str) -> Optional[str]:
        return str(self.batch_dir(batch_id))

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        tmp.replace(path)

    async def write_result(self, batch_id, unit_id, stage, result, track=None) -> None:
        path = self.result_path(batch_id, unit_id, stage, track)
        await asyncio.to_thread(self._write_json, path, result)
        logger.debug(f"[Batch:{batch_id}] Saved {stage} result: {path}")

    async def write_summary(self, batch_id, report) -> None:
        path = self.report_path(batch_id)
        await asyncio.to_thread(self._write_json, path, report)
        logger.info(f"[Batch:{batch_id}] Saved report: {path}")

    async def discard(self, batch_id: str) -> None:
        batch_dir = self.batch_dir(batch_id)
        if batch_dir.exists():
            await asyncio.to_thread(shutil.rmtree, batch_dir)
            logger.info(f"[Batch:{batch_id}] Removed outputs: {batch_dir}")
