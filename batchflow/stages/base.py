"""
Base Stage Processor - Abstract Interface

Every pipeline stage (extract, score, validate) implements the same contract:
take one unit's request, return a validated StageResult or raise UnitFailure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Type, Callable, Awaitable, TYPE_CHECKING

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from batchflow.errors import MalformedResultError

if TYPE_CHECKING:
    from batchflow.batch.unit_state import UnitInput


@dataclass
class StageRequest:
    """One unit of work handed to a stage"""
    batch_id: str
    track: str
    stage: str
    unit_id: str
    input: "UnitInput"
    previous_results: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageResult:
    """Validated stage output"""
    stage: str
    payload: Dict[str, Any]
    attempts: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)


class StageProcessor(ABC):
    """
    Abstract base class for stage processors.

    Subclasses implement ``run`` and may set ``result_model`` to a pydantic
    model; ``process`` validates every payload against it before the result
    is accepted.
    """

    name: str = "stage"
    result_model: Optional[Type[BaseModel]] = None

    async def open(self) -> None:
        """Establish any session shared by the whole batch."""
        pass

    async def close(self) -> None:
        """Release the shared session."""
        pass

    @abstractmethod
    async def run(self, request: StageRequest) -> Any:
        """
        Perform the stage for one unit.

        Returns:
            Raw payload (dict or pydantic model)

        Raises:
            UnitFailure: on provider error, timeout or rejected input
            FatalBatchError: when the whole batch cannot continue
        """
        pass

    async def process(self, request: StageRequest) -> StageResult:
        payload = await self.run(request)
        return StageResult(stage=self.name, payload=self.validate(payload))

    def validate(self, payload: Any) -> Dict[str, Any]:
        """Check ``payload`` against ``result_model``; malformed output is a failure."""
        if payload is None:
            raise MalformedResultError(f"{self.name}: empty response", stage=self.name)

        if isinstance(payload, BaseModel):
            payload = payload.model_dump()

        if self.result_model is None:
            if not isinstance(payload, dict):
                raise MalformedResultError(
                    f"{self.name}: expected an object, got {type(payload).__name__}",
                    stage=self.name,
                )
            return payload

        try:
            return self.result_model.model_validate(payload).model_dump()
        except SchemaValidationError as e:
            raise MalformedResultError(
                f"{self.name}: invalid result ({e.error_count()} errors): {e.errors()[0]['msg']}",
                stage=self.name,
            ) from e


StageFunc = Callable[[StageRequest], Awaitable[Any]]


class CallableStage(StageProcessor):
    """Adapts a plain async function into a StageProcessor."""

    def __init__(
        self,
        name: str,
        func: StageFunc,
        result_model: Optional[Type[BaseModel]] = None,
    ):
        self.name = name
        self.func = func
        self.result_model = result_model

    async def run(self, request: StageRequest) -> Any:
        return await self.func(request)
