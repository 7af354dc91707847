"""
Manifest schema.

Defines the provenance claim and its parts, the to-be-signed payload,
and the signed manifest that is embedded into the output asset.

These models are:
- immutable once constructed
- order-preserving (assertions are re-hashed by verifiers in the
  order stored)
- serializable to JSON for reporting (bytes are base64 encoded)

The byte-exact wire form lives in provenance.app.manifest.canonical and
provenance.app.manifest.record; these models are never hashed directly.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

CLAIM_FORMAT_ID = "provenance.claim.v1"

# Bound on the ancestry carried inside an ingredient. Ancestors beyond
# this depth are referenced by hash only.
MAX_INGREDIENT_DEPTH = 8

_MODEL_CONFIG = ConfigDict(
    frozen=True,
    extra="forbid",
    ser_json_bytes="base64",
    val_json_bytes="base64",
)


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------

class AssertionKind(str, Enum):
    THUMBNAIL = "thumbnail"
    CUSTOM = "custom"
    ACTIONS = "actions"


class IngredientRelationship(str, Enum):
    PARENT_OF = "parentOf"


class IngredientValidation(str, Enum):
    VALID = "valid"
    FAILED = "failed"


class TimestampSource(str, Enum):
    """
    Origin of the signing time recorded in the manifest.

    An RFC 3161 token outranks the authority-supplied time, which in turn
    outranks the local clock, because the recorded time participates in
    certificate-validity checks.
    """

    TSA = "tsa"
    AUTHORITY = "authority"
    LOCAL = "local"


# ---------------------------------------------------------------------------
# Claim components
# ---------------------------------------------------------------------------

class Assertion(BaseModel):
    """A typed, named claim about the asset."""

    label: str = Field(..., min_length=1)
    kind: AssertionKind
    content_type: str
    data: bytes

    model_config = _MODEL_CONFIG


class Ingredient(BaseModel):
    """
    Reference to the prior state of the asset.

    When the input already carried a credential, the prior record is kept
    verbatim in manifest_blob so verifiers can walk further ancestry.
    """

    title: str
    format: str
    relationship: IngredientRelationship = IngredientRelationship.PARENT_OF
    hash_algorithm: str
    content_hash: str
    validation_status: IngredientValidation
    validation_errors: List[str] = Field(default_factory=list)
    chain_depth: int = Field(1, ge=1)
    manifest_blob: Optional[bytes] = None

    model_config = _MODEL_CONFIG


class ContentBinding(BaseModel):
    """
    Declares which byte ranges of the output asset are hashed.

    The hashed ranges are everything except the provenance record, which
    starts at exclusion_offset.
    """

    algorithm: str = "sha256"
    exclusion_offset: int = Field(..., ge=0)

    model_config = _MODEL_CONFIG


class Claim(BaseModel):
    """The unsigned provenance claim."""

    format_id: str = CLAIM_FORMAT_ID
    claim_generator: str
    title: str
    mime_type: str
    assertions: List[Assertion] = Field(default_factory=list)
    ingredient: Optional[Ingredient] = None
    content_binding: ContentBinding
    created_at: Optional[datetime] = None

    model_config = _MODEL_CONFIG


class ToBeSigned(BaseModel):
    """
    Deterministic signing input.

    payload binds the canonical claim bytes to the content hash; digest is
    what is submitted to the signing authority.
    """

    claim_bytes: bytes
    content_hash: bytes
    algorithm: str
    payload: bytes
    digest: bytes

    model_config = _MODEL_CONFIG


class SignedManifest(BaseModel):
    """Claim + signature + certificate chain + signing time."""

    claim: Claim
    claim_bytes: bytes
    content_hash: bytes
    algorithm: str
    signature: bytes
    certificate_chain: List[bytes] = Field(..., min_length=1)
    signed_at: datetime
    timestamp_source: TimestampSource
    timestamp_token: Optional[bytes] = Field(
        None,
        description="DER RFC 3161 token over the signature, when timestamped",
    )

    model_config = _MODEL_CONFIG


# ---------------------------------------------------------------------------
# Configuration-facing definitions
# ---------------------------------------------------------------------------

class AssertionDefinition(BaseModel):
    """
    One configured assertion.

    kind is validated by the builder rather than here, so that an unknown
    kind surfaces as UnsupportedAssertionError.
    """

    kind: str = AssertionKind.CUSTOM.value
    label: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ManifestDefinition(BaseModel):
    """Which assertions to include and who is generating the claim."""

    claim_generator: str = "provenance-signer/1.0"
    title: Optional[str] = None
    thumbnail: bool = True
    assertions: List[AssertionDefinition] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")
