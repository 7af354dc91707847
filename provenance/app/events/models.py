from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------------------------------------------------
# Event Types
# ----------------------------------------------------------------------
class PipelineEventType(str, Enum):
    """
    One event per pipeline state transition.

    Values mirror PipelineState so consumers can follow a run without
    importing the pipeline schemas.
    """

    LOADED = "loaded"
    MANIFEST_BUILT = "manifest_built"
    SIGNING_SUBMITTED = "signing_submitted"
    SIGNING_COMPLETED = "signing_completed"
    EMBEDDED = "embedded"

    # Terminal
    VALIDATED = "validated"
    FAILED = "failed"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class PipelineEvent(BaseModel):
    """
    An immutable observation of a state transition for one asset.

    Events are strictly observational and never drive the pipeline.
    """

    event_id: UUID = Field(default_factory=uuid4)
    asset_id: str = Field(..., description="Identifier of the asset being signed")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: PipelineEventType

    # Optional context (job_id, failure reason, digest, ...)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
