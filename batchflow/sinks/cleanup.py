"""
Input cleanup, run once per unit after all of its stage attempts finish.
Callers log cleanup failures; they never fail a unit or a batch.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from config.logging_config import get_logger

if TYPE_CHECKING:
    from batchflow.batch.unit_state import UnitInput

logger = get_logger(__name__)


class InputCleanup(ABC):
    """Removes temporary payloads for a finished unit"""

    @abstractmethod
    async def cleanup(self, unit_input: "UnitInput") -> None:
        pass


class NoopCleanup(InputCleanup):
    """Leaves inputs in place."""

    async def cleanup(self, unit_input: "UnitInput") -> None:
        return None


class TempFileCleanup(InputCleanup):
    """Deletes the uploaded file behind ``unit_input.path``."""

    async def cleanup(self, unit_input: "UnitInput") -> None:
        if unit_input.path is None:
            return
        path = Path(unit_input.path)
        if path.exists():
            await asyncio.to_thread(path.unlink)
            logger.debug(f"Removed input file: {path}")
