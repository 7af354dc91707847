from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.PENDING


class SigningJob(BaseModel):
    """
    One outstanding request to the signing authority.

    Owned by the signing client for its lifetime and retired once a
    terminal status has been consumed.
    """

    job_id: str
    digest: bytes
    submitted_at: datetime
    status: JobStatus = JobStatus.PENDING

    signature: Optional[bytes] = None
    certificate_chain: List[bytes] = Field(default_factory=list)
    authority_timestamp: Optional[datetime] = None
    error: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes="base64",
    )
