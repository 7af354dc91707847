"""
Asset accessor.

Reads media containers, designates the hashable byte ranges, and writes
a new buffer with exactly one provenance record inserted (or replaced).
The input buffer is never modified.

Hashing model:
    The content hash covers every byte of the output except the record
    segment itself. Before embedding, that is the base bytes (input with
    any prior record removed) split at the insertion offset; after
    embedding, it is the output with the record segment excluded. Both
    views hash the same bytes, so the hash is stable across embedding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from provenance.app.assets.containers import (
    ByteRange,
    ContainerHandler,
    ContainerKind,
    RecordLocation,
    handler_for,
    sniff_handler,
)
from provenance.app.core.errors import (
    CorruptContainerError,
    MalformedIngredientError,
    UnsupportedFormatError,
)
from provenance.app.utils.hashing import compute_digest


@dataclass(frozen=True)
class MediaAsset:
    """
    Raw input bytes plus what was discovered about the container.

    base is the input with any existing provenance record removed.
    """

    data: bytes = field(repr=False)
    kind: ContainerKind
    mime_type: str
    base: bytes = field(repr=False)
    existing_record: Optional[bytes] = field(default=None, repr=False)
    existing_range: Optional[ByteRange] = None

    @property
    def handler(self) -> ContainerHandler:
        return handler_for(self.kind)


@dataclass(frozen=True)
class InsertionSpec:
    """Where the record goes, as an offset into MediaAsset.base."""

    offset: int
    replaces: Optional[ByteRange] = None


@dataclass(frozen=True)
class OutputAsset:
    data: bytes = field(repr=False)
    kind: ContainerKind
    record_range: ByteRange


def open_asset(data: bytes) -> MediaAsset:
    """
    Sniff the container and discover any embedded provenance record.

    Raises:
        UnsupportedFormatError: the bytes are not a container that can
            carry a provenance record.
        CorruptContainerError: the container is structurally invalid.
        MalformedIngredientError: more than one record is present, so the
            parent state is ambiguous.
    """
    handler = sniff_handler(data)
    if handler is None:
        raise UnsupportedFormatError(
            "Asset is not a supported container (PNG or JPEG)"
        )

    records = handler.find_records(data)
    if len(records) > 1:
        raise MalformedIngredientError(
            f"Asset carries {len(records)} provenance records; "
            "parent state is ambiguous"
        )

    if not records:
        return MediaAsset(
            data=data,
            kind=handler.kind,
            mime_type=handler.mime_type,
            base=data,
        )

    record = records[0]
    segment = record.segment
    return MediaAsset(
        data=data,
        kind=handler.kind,
        mime_type=handler.mime_type,
        base=data[:segment.start] + data[segment.end:],
        existing_record=record.payload,
        existing_range=segment,
    )


def locate_insertion_point(asset: MediaAsset) -> InsertionSpec:
    """
    A prior record is replaced in place; otherwise the format default is used.
    """
    if asset.existing_range is not None:
        return InsertionSpec(
            offset=asset.existing_range.start,
            replaces=asset.existing_range,
        )
    return InsertionSpec(offset=asset.handler.default_insertion_offset(asset.base))


def hashable_ranges(
    total_length: int,
    exclusion: ByteRange,
) -> List[ByteRange]:
    """Every byte except the excluded record segment, in order."""
    if exclusion.start < 0 or exclusion.end > total_length:
        raise CorruptContainerError("Exclusion range outside of asset bounds")

    ranges = []
    if exclusion.start > 0:
        ranges.append(ByteRange(0, exclusion.start))
    if exclusion.end < total_length:
        ranges.append(ByteRange(exclusion.end, total_length - exclusion.end))
    return ranges


def hash_ranges(
    data: bytes,
    ranges: Sequence[ByteRange],
    algorithm: str = "sha256",
) -> bytes:
    view = memoryview(data)
    for r in ranges:
        if r.start < 0 or r.end > len(data):
            raise CorruptContainerError("Hash range outside of asset bounds")
    return compute_digest((view[r.start:r.end] for r in ranges), algorithm)


def content_hash(asset: MediaAsset, spec: InsertionSpec, algorithm: str) -> bytes:
    """
    Content hash as it will be recomputed after embedding.

    The record does not exist yet, so the exclusion is empty at spec.offset.
    """
    return hash_ranges(
        asset.base,
        hashable_ranges(len(asset.base), ByteRange(spec.offset, 0)),
        algorithm,
    )


def write_with_record(
    asset: MediaAsset,
    spec: InsertionSpec,
    record: bytes,
) -> OutputAsset:
    """
    Produce a new buffer with the record segment inserted at spec.offset.

    Raises EncodingError if the record exceeds the container capacity.
    """
    segment = asset.handler.build_segment(record)
    base = asset.base
    data = base[:spec.offset] + segment + base[spec.offset:]
    return OutputAsset(
        data=data,
        kind=asset.kind,
        record_range=ByteRange(spec.offset, len(segment)),
    )


def extract_record(data: bytes) -> Optional[RecordLocation]:
    """
    Locate the single provenance record of an asset, if any.

    Raises UnsupportedFormatError / CorruptContainerError like open_asset;
    multiple records are reported as CorruptContainerError.
    """
    handler = sniff_handler(data)
    if handler is None:
        raise UnsupportedFormatError(
            "Asset is not a supported container (PNG or JPEG)"
        )

    records = handler.find_records(data)
    if len(records) > 1:
        raise CorruptContainerError(
            f"Asset carries {len(records)} provenance records"
        )
    return records[0] if records else None
