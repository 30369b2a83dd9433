"""Per-request progress streaming.

One broadcast channel per request id. The pipeline is the single producer;
any number of subscribers may attach. A channel is created by the first
publish or the first subscribe and torn down by the terminal event (or by
``close`` when a pipeline run ends without one), so its lifetime is bounded
by the pipeline, not by subscriber behaviour.

Events published while nobody is subscribed are buffered and handed to the
first subscriber. Later subscribers only see events published after they
attach; the stream is not replayable from the start.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import structlog

from dualmodel.models.contracts import PipelineEvent

logger = structlog.get_logger()

# Queue sentinel: channel closed without a terminal event
_CLOSED = None


@dataclass
class _Channel:
    buffer: list[PipelineEvent] = field(default_factory=list)
    subscribers: list[asyncio.Queue[PipelineEvent | None]] = field(default_factory=list)


class EventPublisher:
    def __init__(self, *, idle_timeout: float | None = 60.0) -> None:
        self._channels: dict[str, _Channel] = {}
        self._lock = threading.Lock()
        self.idle_timeout = idle_timeout

    def _get_or_create(self, request_id: str) -> _Channel:
        channel = self._channels.get(request_id)
        if channel is None:
            channel = _Channel()
            self._channels[request_id] = channel
        return channel

    def publish(self, event: PipelineEvent) -> None:
        """Deliver ``event`` to current subscribers (or buffer it)."""
        with self._lock:
            channel = self._get_or_create(event.request_id)
            if channel.subscribers:
                for queue in channel.subscribers:
                    queue.put_nowait(event)
            else:
                channel.buffer.append(event)
            if event.is_terminal:
                self._channels.pop(event.request_id, None)

        logger.debug(
            "pipeline_event_published",
            request_id=event.request_id,
            stage=event.stage.value,
            terminal=event.is_terminal,
        )

    def close(self, request_id: str) -> None:
        """Tear down a channel; subscribers still attached see end-of-stream."""
        with self._lock:
            channel = self._channels.pop(request_id, None)
            if channel is None:
                return
            for queue in channel.subscribers:
                queue.put_nowait(_CLOSED)

    async def subscribe(
        self,
        request_id: str,
        *,
        idle_timeout: float | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Yield events for ``request_id`` until the terminal event.

        Gives up after ``idle_timeout`` seconds without an event. Defaults to
        the publisher's setting; a publisher built with ``idle_timeout=None``
        waits indefinitely.
        """
        timeout = self.idle_timeout if idle_timeout is None else idle_timeout
        queue: asyncio.Queue[PipelineEvent | None] = asyncio.Queue()
        with self._lock:
            channel = self._get_or_create(request_id)
            for event in channel.buffer:
                queue.put_nowait(event)
            channel.buffer.clear()
            channel.subscribers.append(queue)

        logger.info("pipeline_stream_subscribed", request_id=request_id)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=timeout)
                except TimeoutError:
                    logger.info("pipeline_stream_idle_timeout", request_id=request_id)
                    return
                if event is _CLOSED:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            with self._lock:
                if queue in channel.subscribers:
                    channel.subscribers.remove(queue)
                if not channel.subscribers and self._channels.get(request_id) is channel:
                    self._channels.pop(request_id, None)
            logger.info("pipeline_stream_closed", request_id=request_id)

    def active_request_ids(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def has_subscribers(self, request_id: str) -> bool:
        with self._lock:
            channel = self._channels.get(request_id)
            return bool(channel and channel.subscribers)
