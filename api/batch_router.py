"""
Batch Processing API Router

FastAPI endpoints over BatchService. All batch semantics live in the
service; this module only translates JSON and errors.
"""

import logging
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field

from batchflow.batch import BatchService, UnitInput
from batchflow.errors import BatchError, ValidationError, NotFoundError, InvalidStateError

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class UnitInputRequest(BaseModel):
    """Single input in a create request"""
    name: str
    id: Optional[str] = None
    path: Optional[str] = None
    size_bytes: int = 0
    payload: Optional[Any] = None


class CreateBatchRequest(BaseModel):
    """Batch creation request"""
    inputs: List[UnitInputRequest]
    tracks: Optional[Dict[str, List[str]]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchCreatedResponse(BaseModel):
    batch_id: str
    status: str


class BatchStatusResponse(BaseModel):
    """Result of a control operation"""
    batch_id: str
    status: str
    cancel_requested: bool = False


class BatchSummaryResponse(BaseModel):
    id: str
    status: str
    total_units: int
    tracks: List[str]
    succeeded: int
    failed: int
    cancelled: int
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class BatchListResponse(BaseModel):
    """List of batches response"""
    batches: List[BatchSummaryResponse]
    total: int


# ==================== HELPERS ====================

def _http_error(error: BatchError) -> HTTPException:
    """Map service errors to HTTP status codes."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidStateError):
        return HTTPException(status_code=409, detail=str(error))
    logger.error(f"Unexpected batch error: {error}")
    return HTTPException(status_code=500, detail=str(error))


def _status(service: BatchService, batch_id: str) -> BatchStatusResponse:
    batch = service.get_batch(batch_id)
    return BatchStatusResponse(
        batch_id=batch.id,
        status=batch.status.value,
        cancel_requested=batch.cancel_requested,
    )


# ==================== ENDPOINTS ====================

def create_batch_router(service: BatchService, prefix: str = "/api/batches") -> APIRouter:
    """Build the batch router bound to ``service``."""
    router = APIRouter(prefix=prefix, tags=["Batch Processing"])

    @router.post("", response_model=BatchCreatedResponse, status_code=201, summary="Create a batch")
    async def create_batch(request: CreateBatchRequest):
        inputs = [UnitInput(**item.model_dump()) for item in request.inputs]
        try:
            batch_id = service.create_batch(inputs, tracks=request.tracks, metadata=request.metadata)
        except BatchError as e:
            raise _http_error(e)
        return BatchCreatedResponse(batch_id=batch_id, status=service.get_batch(batch_id).status.value)

    @router.get("", response_model=BatchListResponse, summary="List all batches")
    async def list_batches():
        batches = service.list_batches()
        return BatchListResponse(
            batches=[BatchSummaryResponse(**b) for b in batches],
            total=len(batches),
        )

    @router.post("/{batch_id}/start", response_model=BatchStatusResponse, summary="Start a batch")
    async def start_batch(batch_id: str):
        """
        Start processing a Created batch.

        Processing happens in the background; poll /{batch_id}/progress.
        """
        try:
            await service.start_batch(batch_id)
            return _status(service, batch_id)
        except BatchError as e:
            raise _http_error(e)

    @router.get("/{batch_id}/progress", summary="Get batch progress")
    async def get_progress(batch_id: str) -> Dict[str, Any]:
        try:
            return service.get_progress(batch_id).to_dict()
        except BatchError as e:
            raise _http_error(e)

    @router.post("/{batch_id}/pause", response_model=BatchStatusResponse, summary="Pause a batch")
    async def pause_batch(batch_id: str):
        try:
            service.pause_batch(batch_id)
            return _status(service, batch_id)
        except BatchError as e:
            raise _http_error(e)

    @router.post("/{batch_id}/resume", response_model=BatchStatusResponse, summary="Resume a batch")
    async def resume_batch(batch_id: str):
        try:
            service.resume_batch(batch_id)
            return _status(service, batch_id)
        except BatchError as e:
            raise _http_error(e)

    @router.post("/{batch_id}/cancel", response_model=BatchStatusResponse, summary="Cancel a batch")
    async def cancel_batch(batch_id: str):
        """
        Cancel a batch. Idempotent.

        Units already finished keep their results; the batch stops at its
        next chunk boundary.
        """
        try:
            await service.cancel_batch(batch_id)
            return _status(service, batch_id)
        except BatchError as e:
            raise _http_error(e)

    @router.delete("/{batch_id}", summary="Delete a batch")
    async def delete_batch(batch_id: str):
        try:
            await service.delete_batch(batch_id)
        except BatchError as e:
            raise _http_error(e)
        logger.info(f"[Batch:{batch_id}] Deleted via API")
        return {"message": f"Batch {batch_id} deleted"}

    return router


def create_app(service: BatchService) -> FastAPI:
    """Minimal application exposing the batch router."""
    app = FastAPI(title="batchflow", description="Batch job orchestration API")
    app.include_router(create_batch_router(service))

    @app.on_event("shutdown")
    async def _shutdown():
        await service.shutdown()

    return app
