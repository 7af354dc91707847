import struct

import pytest

from provenance.app.assets.accessor import (
    content_hash,
    extract_record,
    hash_ranges,
    hashable_ranges,
    locate_insertion_point,
    open_asset,
    write_with_record,
)
from provenance.app.assets.containers import (
    ByteRange,
    ContainerKind,
    JpegHandler,
    PngHandler,
)
from provenance.app.core.errors import (
    CorruptContainerError,
    EncodingError,
    MalformedIngredientError,
    UnsupportedFormatError,
)
from provenance.tests.fixtures.assets import make_jpeg, make_png


# ------------------------------------------------------------------
# Sniffing
# ------------------------------------------------------------------

def test_png_and_jpeg_are_recognized():
    png = open_asset(make_png())
    jpeg = open_asset(make_jpeg())

    assert png.kind is ContainerKind.PNG
    assert png.mime_type == "image/png"
    assert png.existing_record is None

    assert jpeg.kind is ContainerKind.JPEG
    assert jpeg.mime_type == "image/jpeg"


@pytest.mark.parametrize(
    "data",
    [b"", b"GIF89a....", b"%PDF-1.7\n", b"RIFF\x00\x00\x00\x00WEBPVP8 "],
)
def test_unsupported_containers_are_rejected(data):
    with pytest.raises(UnsupportedFormatError):
        open_asset(data)


def test_truncated_png_is_corrupt():
    data = make_png()
    with pytest.raises(CorruptContainerError):
        open_asset(data[: len(data) // 2])


def test_png_without_iend_is_corrupt():
    data = make_png()
    # Drop the 12-byte IEND chunk
    with pytest.raises(CorruptContainerError):
        open_asset(data[:-12])


def test_truncated_jpeg_header_is_corrupt():
    with pytest.raises(CorruptContainerError):
        open_asset(b"\xff\xd8\xff\xe0\x00\x10JFIF")


# ------------------------------------------------------------------
# Insertion and extraction
# ------------------------------------------------------------------

def test_png_record_is_inserted_after_ihdr():
    asset = open_asset(make_png())
    spec = locate_insertion_point(asset)

    # 8-byte signature + 25-byte IHDR chunk
    assert spec.offset == 33
    assert spec.replaces is None

    output = write_with_record(asset, spec, b"record-bytes")
    chunk_type = output.data[spec.offset + 4:spec.offset + 8]
    assert chunk_type == PngHandler.RECORD_CHUNK

    location = extract_record(output.data)
    assert location.payload == b"record-bytes"
    assert location.segment == output.record_range


def _flip_byte(data: bytes, index: int) -> bytes:
    return data[:index] + bytes([data[index] ^ 0xFF]) + data[index + 1:]


def test_png_record_chunk_with_bad_crc_is_corrupt():
    asset = open_asset(make_png())
    output = write_with_record(asset, locate_insertion_point(asset), b"record-bytes")
    corrupted = _flip_byte(output.data, output.record_range.end - 1)

    with pytest.raises(CorruptContainerError, match="CRC"):
        extract_record(corrupted)
    with pytest.raises(CorruptContainerError):
        open_asset(corrupted)


def test_jpeg_record_is_inserted_after_app0():
    data = make_jpeg()
    asset = open_asset(data)
    spec = locate_insertion_point(asset)

    (app0_length,) = struct.unpack(">H", data[4:6])
    assert data[2:4] == b"\xff\xe0"
    assert spec.offset == 4 + app0_length

    output = write_with_record(asset, spec, b"record-bytes")
    assert output.data[spec.offset:spec.offset + 2] == b"\xff\xeb"
    assert extract_record(output.data).payload == b"record-bytes"


@pytest.mark.parametrize("make", [make_png, make_jpeg])
def test_bytes_outside_record_equal_input(make):
    data = make()
    asset = open_asset(data)
    output = write_with_record(asset, locate_insertion_point(asset), b"x" * 100)

    r = output.record_range
    assert output.data[:r.start] + output.data[r.end:] == data


@pytest.mark.parametrize("make", [make_png, make_jpeg])
def test_existing_record_is_replaced_in_place(make):
    first_asset = open_asset(make())
    first = write_with_record(
        first_asset, locate_insertion_point(first_asset), b"old-record"
    )

    second_asset = open_asset(first.data)
    assert second_asset.existing_record == b"old-record"
    assert second_asset.existing_range == first.record_range

    spec = locate_insertion_point(second_asset)
    assert spec.offset == first.record_range.start
    assert spec.replaces == first.record_range

    second = write_with_record(second_asset, spec, b"new-record-payload")
    assert len(second_asset.handler.find_records(second.data)) == 1
    assert extract_record(second.data).payload == b"new-record-payload"


def test_input_buffer_is_never_modified():
    data = bytearray(make_png())
    snapshot = bytes(data)
    asset = open_asset(bytes(data))
    write_with_record(asset, locate_insertion_point(asset), b"payload")

    assert bytes(data) == snapshot
    assert asset.data == snapshot


def test_multiple_records_make_parent_ambiguous():
    asset = open_asset(make_png())
    spec = locate_insertion_point(asset)
    once = write_with_record(asset, spec, b"one")

    segment = PngHandler().build_segment(b"two")
    twice = once.data[:spec.offset] + segment + once.data[spec.offset:]

    with pytest.raises(MalformedIngredientError):
        open_asset(twice)
    with pytest.raises(CorruptContainerError):
        extract_record(twice)


def test_jpeg_record_over_segment_capacity_is_refused():
    asset = open_asset(make_jpeg())
    oversized = b"\x00" * (JpegHandler.max_payload_size + 1)

    with pytest.raises(EncodingError):
        write_with_record(asset, locate_insertion_point(asset), oversized)


# ------------------------------------------------------------------
# Hashable ranges
# ------------------------------------------------------------------

def test_hashable_ranges_exclude_only_the_record():
    assert hashable_ranges(100, ByteRange(10, 20)) == [
        ByteRange(0, 10),
        ByteRange(30, 70),
    ]
    assert hashable_ranges(100, ByteRange(0, 0)) == [ByteRange(0, 100)]
    assert hashable_ranges(30, ByteRange(10, 20)) == [ByteRange(0, 10)]

    with pytest.raises(CorruptContainerError):
        hashable_ranges(10, ByteRange(5, 20))


@pytest.mark.parametrize("make", [make_png, make_jpeg])
def test_content_hash_is_stable_across_embedding(make):
    asset = open_asset(make())
    spec = locate_insertion_point(asset)
    before = content_hash(asset, spec, "sha256")

    output = write_with_record(asset, spec, b"r" * 64)
    after = hash_ranges(
        output.data,
        hashable_ranges(len(output.data), output.record_range),
        "sha256",
    )
    assert before == after
