from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from provenance.app.core.errors import FailureReason
from provenance.app.schemas.manifest import SignedManifest


class PipelineState(str, Enum):
    """
    Per-asset state machine.

    LOADED -> MANIFEST_BUILT -> SIGNING_SUBMITTED -> SIGNING_COMPLETED
    -> EMBEDDED -> VALIDATED, with FAILED reachable from any state.
    """

    LOADED = "loaded"
    MANIFEST_BUILT = "manifest_built"
    SIGNING_SUBMITTED = "signing_submitted"
    SIGNING_COMPLETED = "signing_completed"
    EMBEDDED = "embedded"
    VALIDATED = "validated"
    FAILED = "failed"


class PipelineResult(BaseModel):
    """
    Terminal outcome of one pipeline run.

    output is only populated in the VALIDATED state. A failed run never
    carries partial output.
    """

    asset_id: str
    state: PipelineState
    history: List[PipelineState] = Field(default_factory=list)

    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None

    tbs_digest: Optional[str] = None
    job_id: Optional[str] = None
    manifest: Optional[SignedManifest] = None
    output: Optional[bytes] = Field(None, repr=False)

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.VALIDATED
