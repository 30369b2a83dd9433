"""Server-Sent Events stream of pipeline progress for one request id.

Each event is written as ``event: <stage>`` / ``data: <PipelineEvent JSON>``.
The stream ends after the terminal event, when the run closes its channel,
or after the publisher's idle timeout.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from dualmodel.dependencies import get_publisher
from dualmodel.events import EventPublisher
from dualmodel.models.contracts import PipelineEvent

logger = structlog.get_logger()

router = APIRouter(tags=["stream"])


def format_sse(event: PipelineEvent) -> str:
    return f"event: {event.stage.value}\ndata: {event.model_dump_json()}\n\n"


@router.get("/stream/{request_id}")
async def stream_pipeline(
    request_id: str,
    publisher: EventPublisher = Depends(get_publisher),
) -> StreamingResponse:
    async def body() -> AsyncIterator[str]:
        async for event in publisher.subscribe(request_id):
            yield format_sse(event)

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
