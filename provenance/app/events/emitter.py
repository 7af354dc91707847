from __future__ import annotations

from typing import Protocol

from provenance.app.events.models import PipelineEvent


class PipelineEventEmitter(Protocol):
    """
    Interface for broadcasting pipeline state transitions.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not fail the asset)
    - observational only
    """

    async def emit(self, event: PipelineEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used by the CLI, the blob worker and tests that do not care about
    events.
    """

    async def emit(self, event: PipelineEvent) -> None:
        return
