"""
VerificationReport schema.

Defines the report produced when an asset's embedded provenance record
is independently verified. The report is derived solely from the asset
bytes; no pipeline state is consulted.

Finding identifiers are stable and MUST NOT be renumbered:

    PV-FMT-001  container cannot carry / is not a supported container
    PV-FMT-002  container is corrupt or carries multiple records
    PV-REC-001  no provenance record present
    PV-REC-002  record or claim cannot be decoded
    PV-CLM-001  claim bytes are not in canonical form
    PV-HASH-001 recomputed content hash does not match the record
    PV-HASH-002 record location does not match the claimed exclusion
    PV-TBS-001  TBS digest differs from the expected digest
    PV-SIG-001  signature does not verify against the leaf certificate
    PV-CHN-001  certificate chain does not link
    PV-CHN-002  leaf certificate not valid at signing time
    PV-ING-001  parent ingredient is flagged as failed validation
    PV-TSA-001  timestamp token is missing, invalid or disagrees with the
                recorded signing time
    PV-TRU-001  certificate chain does not lead to a configured trust anchor
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from provenance.app.schemas.manifest import Claim, TimestampSource


class Severity(str, Enum):
    """
    Severity level of a finding.

    Ordering is intentional and MUST remain stable.
    """

    CRITICAL = "critical"
    MAJOR = "major"
    INFO = "info"


class Finding(BaseModel):
    finding_id: str = Field(
        ...,
        description="Stable identifier for the finding (e.g., 'PV-SIG-001').",
    )
    severity: Severity
    description: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class VerificationReport(BaseModel):
    """
    Result of verifying one asset.

    passed is True only when no CRITICAL finding was produced.
    """

    passed: bool
    record_present: bool = False
    hash_ok: bool = False
    signature_ok: bool = False
    chain_ok: bool = False
    trusted: Optional[bool] = Field(
        None,
        description="Chain leads to a trust anchor; None when none were given",
    )

    algorithm: Optional[str] = None
    content_hash: Optional[str] = Field(
        None,
        description="Recomputed content hash (hex)",
    )
    tbs_digest: Optional[str] = Field(
        None,
        description="Recomputed TBS digest (hex)",
    )
    signed_at: Optional[datetime] = None
    timestamp_source: Optional[TimestampSource] = None
    ancestry_depth: int = 0

    claim: Optional[Claim] = None
    findings: List[Finding] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    def has_finding(self, finding_id: str) -> bool:
        return any(f.finding_id == finding_id for f in self.findings)
