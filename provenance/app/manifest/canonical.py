"""
Canonical claim serialization.

Produces the exact bytes that are bound into the to-be-signed payload.
Re-serializing the same Claim must always yield byte-identical output,
so the encoding uses:

- a magic + version header
- a fixed field order
- explicit u32 length prefixes for every variable-length value
- no padding, no maps with implementation-defined ordering

Custom assertion payloads are JSON, canonicalized (sorted keys, fixed
separators) before they enter the claim.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from provenance.app.core.errors import RecordFormatError
from provenance.app.schemas.manifest import (
    Assertion,
    AssertionKind,
    Claim,
    ContentBinding,
    Ingredient,
    IngredientRelationship,
    IngredientValidation,
    ToBeSigned,
)
from provenance.app.utils.binary import BinaryReader, BinaryWriter
from provenance.app.utils.hashing import compute_digest, digest_algorithm_for

CLAIM_MAGIC = b"PVCL"
CLAIM_VERSION = 1

TBS_MAGIC = b"TBS1"


def canonical_json(data: Any) -> bytes:
    """
    Deterministic JSON canonicalization.

    Stable key ordering and separators. NaN/Infinity are rejected.
    """
    return json.dumps(
        data,
        ensure_ascii=False,
        allow_nan=False,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def _write_ingredient(writer: BinaryWriter, ingredient: Ingredient) -> None:
    writer.text(ingredient.title)
    writer.text(ingredient.format)
    writer.text(ingredient.relationship.value)
    writer.text(ingredient.hash_algorithm)
    writer.text(ingredient.content_hash)
    writer.text(ingredient.validation_status.value)
    writer.u32(len(ingredient.validation_errors))
    for error in ingredient.validation_errors:
        writer.text(error)
    writer.u16(ingredient.chain_depth)
    writer.optional_blob(ingredient.manifest_blob)


def encode_claim(claim: Claim) -> bytes:
    writer = BinaryWriter()
    writer.raw(CLAIM_MAGIC).u16(CLAIM_VERSION)

    writer.text(claim.format_id)
    writer.text(claim.claim_generator)
    writer.text(claim.title)
    writer.text(claim.mime_type)
    writer.optional_text(
        claim.created_at.isoformat() if claim.created_at else None
    )

    writer.text(claim.content_binding.algorithm)
    writer.u64(claim.content_binding.exclusion_offset)

    writer.u32(len(claim.assertions))
    for assertion in claim.assertions:
        writer.text(assertion.label)
        writer.text(assertion.kind.value)
        writer.text(assertion.content_type)
        writer.blob(assertion.data)

    if claim.ingredient is None:
        writer.u8(0)
    else:
        writer.u8(1)
        _write_ingredient(writer, claim.ingredient)

    return writer.getvalue()


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def _read_ingredient(reader: BinaryReader) -> Ingredient:
    title = reader.text()
    fmt = reader.text()
    relationship = IngredientRelationship(reader.text())
    hash_algorithm = reader.text()
    content_hash = reader.text()
    validation_status = IngredientValidation(reader.text())
    errors = [reader.text() for _ in range(reader.u32())]
    chain_depth = reader.u16()
    blob = reader.optional_blob()
    return Ingredient(
        title=title,
        format=fmt,
        relationship=relationship,
        hash_algorithm=hash_algorithm,
        content_hash=content_hash,
        validation_status=validation_status,
        validation_errors=errors,
        chain_depth=chain_depth,
        manifest_blob=blob,
    )


def decode_claim(data: bytes) -> Claim:
    """
    Parse canonical claim bytes.

    Raises RecordFormatError for an unknown header, truncation, trailing
    bytes, or values outside the known enumerations.
    """
    reader = BinaryReader(data)
    if reader.raw(len(CLAIM_MAGIC)) != CLAIM_MAGIC:
        raise RecordFormatError("Not a canonical claim")
    version = reader.u16()
    if version != CLAIM_VERSION:
        raise RecordFormatError(f"Unsupported claim version {version}")

    try:
        format_id = reader.text()
        claim_generator = reader.text()
        title = reader.text()
        mime_type = reader.text()
        created_raw = reader.optional_text()

        binding = ContentBinding(
            algorithm=reader.text(),
            exclusion_offset=reader.u64(),
        )

        assertions = []
        for _ in range(reader.u32()):
            assertions.append(
                Assertion(
                    label=reader.text(),
                    kind=AssertionKind(reader.text()),
                    content_type=reader.text(),
                    data=reader.blob(),
                )
            )

        ingredient = _read_ingredient(reader) if reader.presence() else None
        reader.expect_end()

        return Claim(
            format_id=format_id,
            claim_generator=claim_generator,
            title=title,
            mime_type=mime_type,
            assertions=assertions,
            ingredient=ingredient,
            content_binding=binding,
            created_at=(
                datetime.fromisoformat(created_raw) if created_raw else None
            ),
        )
    except ValueError as exc:
        # Enum and pydantic validation failures
        raise RecordFormatError(f"Invalid claim field: {exc}") from exc


# ----------------------------------------------------------------------
# To-be-signed binding
# ----------------------------------------------------------------------

def build_tbs(
    claim_bytes: bytes,
    content_hash: bytes,
    signing_algorithm: str,
) -> ToBeSigned:
    """
    Bind canonical claim bytes to the content hash.

    The digest uses the message digest of the signing algorithm, so it can
    be handed to the signing authority as-is.
    """
    payload = (
        BinaryWriter()
        .raw(TBS_MAGIC)
        .blob(claim_bytes)
        .text(signing_algorithm)
        .blob(content_hash)
        .getvalue()
    )
    digest = compute_digest(payload, digest_algorithm_for(signing_algorithm))
    return ToBeSigned(
        claim_bytes=claim_bytes,
        content_hash=content_hash,
        algorithm=signing_algorithm,
        payload=payload,
        digest=digest,
    )
