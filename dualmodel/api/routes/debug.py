"""Read-only diagnostics over the execution log store."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from dualmodel.dependencies import get_log_store
from dualmodel.execution_log import ExecutionLogEntry, ExecutionLogStore
from dualmodel.models.contracts import ErrorResponse

router = APIRouter(prefix="/debug", tags=["debug"])


def _error(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=False).model_dump(exclude_none=True),
    )


@router.get("/pipeline/{request_id}", response_model=ExecutionLogEntry)
async def get_execution_log(
    request_id: str,
    store: ExecutionLogStore = Depends(get_log_store),
):
    entry = store.get(request_id)
    if entry is None:
        return _error(404, "execution_log_not_found", f"No execution log for request {request_id}")
    return entry


@router.get("/pipeline")
async def list_execution_logs(store: ExecutionLogStore = Depends(get_log_store)) -> dict:
    """Retained entries, newest first."""
    entries = list(reversed(store.list()))
    return {
        "count": len(entries),
        "logs": [e.model_dump(mode="json") for e in entries],
    }


@router.get("/stats")
async def execution_stats(store: ExecutionLogStore = Depends(get_log_store)) -> dict:
    return store.stats()
