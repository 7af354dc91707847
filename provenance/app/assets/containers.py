"""
Container handlers.

One handler per supported container kind, selected by sniffing the
leading bytes. Each handler knows only the record-insertion mechanics of
its format:

- where a provenance record lives (find_records)
- where a new record goes when none exists (default_insertion_offset)
- how a record payload is wrapped into a container segment
  (build_segment) and how large it may be (max_payload_size)

Pixel data is never decoded here.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from provenance.app.core.errors import CorruptContainerError, EncodingError


class ContainerKind(str, Enum):
    PNG = "png"
    JPEG = "jpeg"


@dataclass(frozen=True)
class ByteRange:
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length


@dataclass(frozen=True)
class RecordLocation:
    """A provenance record found in a container."""

    segment: ByteRange
    payload: bytes


class ContainerHandler(Protocol):
    kind: ContainerKind
    mime_type: str
    supports_rendition: bool
    max_payload_size: int

    def sniff(self, data: bytes) -> bool:
        ...

    def find_records(self, data: bytes) -> List[RecordLocation]:
        ...

    def default_insertion_offset(self, data: bytes) -> int:
        ...

    def build_segment(self, payload: bytes) -> bytes:
        ...


# ----------------------------------------------------------------------
# PNG
# ----------------------------------------------------------------------

class PngHandler:
    """
    PNG: the record is a dedicated ancillary chunk placed right after IHDR.
    """

    kind = ContainerKind.PNG
    mime_type = "image/png"
    supports_rendition = True
    max_payload_size = 2**31 - 1

    SIGNATURE = b"\x89PNG\r\n\x1a\n"
    RECORD_CHUNK = b"caBX"

    def sniff(self, data: bytes) -> bool:
        return data.startswith(self.SIGNATURE)

    def _chunks(self, data: bytes):
        """Yield (offset, type, data_start, data_length) for every chunk."""
        pos = len(self.SIGNATURE)
        seen_end = False
        while pos < len(data) and not seen_end:
            if pos + 8 > len(data):
                raise CorruptContainerError("Truncated PNG chunk header")
            length, chunk_type = struct.unpack(">I4s", data[pos:pos + 8])
            end = pos + 12 + length
            if end > len(data):
                raise CorruptContainerError(
                    f"Truncated PNG chunk {chunk_type!r} at offset {pos}"
                )
            yield pos, chunk_type, pos + 8, length
            seen_end = chunk_type == b"IEND"
            pos = end

        if not seen_end:
            raise CorruptContainerError("PNG has no IEND chunk")

    def find_records(self, data: bytes) -> List[RecordLocation]:
        """
        Locate record chunks. Only the record chunk CRC is checked; every
        other byte is covered by the content hash.
        """
        records = []
        for offset, chunk_type, data_start, length in self._chunks(data):
            if chunk_type == self.RECORD_CHUNK:
                crc_start = data_start + length
                (stored,) = struct.unpack(">I", data[crc_start:crc_start + 4])
                if zlib.crc32(data[offset + 4:crc_start]) & 0xFFFFFFFF != stored:
                    raise CorruptContainerError(
                        f"Provenance chunk at offset {offset} fails its CRC"
                    )
                records.append(
                    RecordLocation(
                        segment=ByteRange(offset, length + 12),
                        payload=data[data_start:data_start + length],
                    )
                )
        return records

    def default_insertion_offset(self, data: bytes) -> int:
        for offset, chunk_type, _, length in self._chunks(data):
            if chunk_type != b"IHDR":
                raise CorruptContainerError("PNG does not start with IHDR")
            return offset + length + 12
        raise CorruptContainerError("PNG has no chunks")

    def build_segment(self, payload: bytes) -> bytes:
        if len(payload) > self.max_payload_size:
            raise EncodingError(
                f"Record of {len(payload)} bytes exceeds PNG chunk capacity"
            )
        body = self.RECORD_CHUNK + payload
        return (
            struct.pack(">I", len(payload))
            + body
            + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)
        )


# ----------------------------------------------------------------------
# JPEG
# ----------------------------------------------------------------------

class JpegHandler:
    """
    JPEG: the record is a single APP11 segment tagged with an identifier,
    placed after the leading APP0/APP1 segments.
    """

    kind = ContainerKind.JPEG
    mime_type = "image/jpeg"
    supports_rendition = True

    SOI = b"\xff\xd8"
    APP11 = 0xEB
    SOS = 0xDA
    IDENTIFIER = b"provenance\x00"

    # Segment length is a u16 that includes its own two bytes.
    max_payload_size = 0xFFFF - 2 - len(IDENTIFIER)

    _STANDALONE = {0x01, *range(0xD0, 0xD8)}

    def sniff(self, data: bytes) -> bool:
        return data.startswith(self.SOI + b"\xff")

    def _segments(self, data: bytes):
        """Yield (offset, marker, payload_start, payload_length) up to SOS."""
        pos = len(self.SOI)
        while True:
            if pos + 2 > len(data):
                raise CorruptContainerError("JPEG ended before start of scan")
            if data[pos] != 0xFF:
                raise CorruptContainerError(
                    f"Expected JPEG marker at offset {pos}"
                )
            marker = data[pos + 1]
            if marker == 0xFF:
                # fill byte
                pos += 1
                continue
            if marker in self._STANDALONE:
                pos += 2
                continue
            if pos + 4 > len(data):
                raise CorruptContainerError("Truncated JPEG segment header")
            (length,) = struct.unpack(">H", data[pos + 2:pos + 4])
            if length < 2 or pos + 2 + length > len(data):
                raise CorruptContainerError(
                    f"Invalid JPEG segment length at offset {pos}"
                )
            yield pos, marker, pos + 4, length - 2
            if marker == self.SOS:
                return
            pos += 2 + length

    def find_records(self, data: bytes) -> List[RecordLocation]:
        records = []
        for offset, marker, start, length in self._segments(data):
            payload = data[start:start + length]
            if marker == self.APP11 and payload.startswith(self.IDENTIFIER):
                records.append(
                    RecordLocation(
                        segment=ByteRange(offset, length + 4),
                        payload=payload[len(self.IDENTIFIER):],
                    )
                )
        return records

    def default_insertion_offset(self, data: bytes) -> int:
        offset = len(self.SOI)
        for segment_offset, marker, _, length in self._segments(data):
            if marker not in (0xE0, 0xE1):
                break
            offset = segment_offset + length + 4
        return offset

    def build_segment(self, payload: bytes) -> bytes:
        if len(payload) > self.max_payload_size:
            raise EncodingError(
                f"Record of {len(payload)} bytes exceeds the JPEG APP11 "
                f"segment capacity ({self.max_payload_size} bytes)"
            )
        body = self.IDENTIFIER + payload
        return (
            bytes([0xFF, self.APP11])
            + struct.pack(">H", len(body) + 2)
            + body
        )


HANDLERS: tuple[ContainerHandler, ...] = (PngHandler(), JpegHandler())


def sniff_handler(data: bytes) -> Optional[ContainerHandler]:
    for handler in HANDLERS:
        if handler.sniff(data):
            return handler
    return None


def handler_for(kind: ContainerKind) -> ContainerHandler:
    for handler in HANDLERS:
        if handler.kind is kind:
            return handler
    raise KeyError(kind)
