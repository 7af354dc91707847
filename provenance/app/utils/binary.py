"""
Length-prefixed big-endian binary primitives.

Shared by the canonical claim encoding and the provenance record wire
format. All integers are unsigned big-endian; variable-length values are
prefixed with a u32 length. No padding is ever emitted.
"""

from __future__ import annotations

import struct
from typing import Optional

from provenance.app.core.errors import RecordFormatError


class BinaryWriter:
    def __init__(self) -> None:
        self._buffer = bytearray()

    def raw(self, data: bytes) -> "BinaryWriter":
        self._buffer += data
        return self

    def u8(self, value: int) -> "BinaryWriter":
        self._buffer += struct.pack(">B", value)
        return self

    def u16(self, value: int) -> "BinaryWriter":
        self._buffer += struct.pack(">H", value)
        return self

    def u32(self, value: int) -> "BinaryWriter":
        self._buffer += struct.pack(">I", value)
        return self

    def u64(self, value: int) -> "BinaryWriter":
        self._buffer += struct.pack(">Q", value)
        return self

    def blob(self, data: bytes) -> "BinaryWriter":
        self.u32(len(data))
        self._buffer += data
        return self

    def text(self, value: str) -> "BinaryWriter":
        return self.blob(value.encode("utf-8"))

    def optional_blob(self, data: Optional[bytes]) -> "BinaryWriter":
        if data is None:
            return self.u8(0)
        return self.u8(1).blob(data)

    def optional_text(self, value: Optional[str]) -> "BinaryWriter":
        if value is None:
            return self.u8(0)
        return self.u8(1).text(value)

    def field(self, tag: int, data: bytes) -> "BinaryWriter":
        return self.u8(tag).blob(data)

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


class BinaryReader:
    """
    Strict reader. Any truncation raises RecordFormatError.
    """

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise RecordFormatError(
                f"Truncated record: need {size} bytes at offset {self._pos}"
            )
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def raw(self, size: int) -> bytes:
        return self._take(size)

    def u8(self) -> int:
        return struct.unpack(">B", self._take(1))[0]

    def u16(self) -> int:
        return struct.unpack(">H", self._take(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def blob(self) -> bytes:
        return self._take(self.u32())

    def text(self) -> str:
        try:
            return self.blob().decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RecordFormatError("Invalid UTF-8 text field") from exc

    def presence(self) -> bool:
        flag = self.u8()
        if flag not in (0, 1):
            raise RecordFormatError(f"Invalid presence flag: {flag}")
        return flag == 1

    def optional_blob(self) -> Optional[bytes]:
        return self.blob() if self.presence() else None

    def optional_text(self) -> Optional[str]:
        return self.text() if self.presence() else None

    def expect_end(self) -> None:
        if not self.at_end:
            raise RecordFormatError(
                f"{len(self._data) - self._pos} trailing bytes after record"
            )
