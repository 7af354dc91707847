from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from provenance.app.events.emitter import PipelineEventEmitter
from provenance.app.events.models import PipelineEvent, PipelineEventType

logger = logging.getLogger("provenance.events")


class MemoryQueueEventEmitter(PipelineEventEmitter):
    """
    In-memory async event emitter.

    Properties:
    - single-consumer
    - deterministic ordering
    - terminates on the VALIDATED or FAILED transition
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[PipelineEvent]] = asyncio.Queue()
        self._closed = False

    async def emit(self, event: PipelineEvent) -> None:
        if self._closed:
            return

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "pipeline_event_dropped",
                extra={"event_type": event.event_type.value},
            )
            return

        if event.event_type in {
            PipelineEventType.VALIDATED,
            PipelineEventType.FAILED,
        }:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[PipelineEvent]:
        """
        Async generator yielding emitted events in order.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event
