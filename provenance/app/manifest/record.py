"""
Provenance record wire format.

The record is the self-describing, versioned binary structure embedded in
the asset container. Layout (version 1):

    magic    b"PVRC"
    version  u16
    fields   repeated (tag u8, length u32, value bytes)

Tags:
    0x01 claim bytes (canonical claim, exactly as signed)
    0x02 signature algorithm (UTF-8)
    0x03 content hash bound into the TBS payload
    0x04 signature
    0x05 certificate (DER), repeated, leaf first
    0x06 signing time (ISO 8601, UTF-8)
    0x07 timestamp source (UTF-8)
    0x08 RFC 3161 timestamp token (DER), optional

Unknown tags are skipped so newer writers stay readable; a missing
required tag or a different version is a RecordFormatError.
"""

from __future__ import annotations

from datetime import datetime

from provenance.app.core.errors import RecordFormatError
from provenance.app.manifest.canonical import decode_claim
from provenance.app.schemas.manifest import SignedManifest, TimestampSource
from provenance.app.utils.binary import BinaryReader, BinaryWriter

RECORD_MAGIC = b"PVRC"
RECORD_VERSION = 1

TAG_CLAIM = 0x01
TAG_ALGORITHM = 0x02
TAG_CONTENT_HASH = 0x03
TAG_SIGNATURE = 0x04
TAG_CERTIFICATE = 0x05
TAG_SIGNED_AT = 0x06
TAG_TIMESTAMP_SOURCE = 0x07
TAG_TIMESTAMP_TOKEN = 0x08

_REQUIRED_TAGS = (
    TAG_CLAIM,
    TAG_ALGORITHM,
    TAG_CONTENT_HASH,
    TAG_SIGNATURE,
    TAG_SIGNED_AT,
    TAG_TIMESTAMP_SOURCE,
)


def encode_record(signed: SignedManifest) -> bytes:
    writer = BinaryWriter()
    writer.raw(RECORD_MAGIC).u16(RECORD_VERSION)
    writer.field(TAG_CLAIM, signed.claim_bytes)
    writer.field(TAG_ALGORITHM, signed.algorithm.encode("utf-8"))
    writer.field(TAG_CONTENT_HASH, signed.content_hash)
    writer.field(TAG_SIGNATURE, signed.signature)
    for cert in signed.certificate_chain:
        writer.field(TAG_CERTIFICATE, cert)
    writer.field(TAG_SIGNED_AT, signed.signed_at.isoformat().encode("utf-8"))
    writer.field(
        TAG_TIMESTAMP_SOURCE,
        signed.timestamp_source.value.encode("utf-8"),
    )
    if signed.timestamp_token is not None:
        writer.field(TAG_TIMESTAMP_TOKEN, signed.timestamp_token)
    return writer.getvalue()


def decode_record(data: bytes) -> SignedManifest:
    reader = BinaryReader(data)
    if reader.raw(len(RECORD_MAGIC)) != RECORD_MAGIC:
        raise RecordFormatError("Not a provenance record")
    version = reader.u16()
    if version != RECORD_VERSION:
        raise RecordFormatError(f"Unsupported record version {version}")

    fields: dict[int, bytes] = {}
    certificates: list[bytes] = []
    while not reader.at_end:
        tag = reader.u8()
        value = reader.blob()
        if tag == TAG_CERTIFICATE:
            certificates.append(value)
        elif tag in fields:
            raise RecordFormatError(f"Duplicate record field 0x{tag:02x}")
        else:
            fields[tag] = value

    missing = [t for t in _REQUIRED_TAGS if t not in fields]
    if missing:
        raise RecordFormatError(
            "Record is missing fields: "
            + ", ".join(f"0x{t:02x}" for t in missing)
        )
    if not certificates:
        raise RecordFormatError("Record carries no certificate chain")

    claim_bytes = fields[TAG_CLAIM]
    try:
        return SignedManifest(
            claim=decode_claim(claim_bytes),
            claim_bytes=claim_bytes,
            content_hash=fields[TAG_CONTENT_HASH],
            algorithm=fields[TAG_ALGORITHM].decode("utf-8"),
            signature=fields[TAG_SIGNATURE],
            certificate_chain=certificates,
            signed_at=datetime.fromisoformat(
                fields[TAG_SIGNED_AT].decode("utf-8")
            ),
            timestamp_source=TimestampSource(
                fields[TAG_TIMESTAMP_SOURCE].decode("utf-8")
            ),
            timestamp_token=fields.get(TAG_TIMESTAMP_TOKEN),
        )
    except ValueError as exc:
        # UnicodeDecodeError, bad timestamps, enum and model validation
        raise RecordFormatError(f"Invalid record field: {exc}") from exc
