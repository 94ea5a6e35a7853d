"""EVTX container layout: file header, chunk header, and record framing."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass

from ..errors import BadSignature, ChecksumMismatch, SourceError, TruncatedChunk
from ..models import ChunkHeader

FILE_SIGNATURE = b"ElfFile\x00"
CHUNK_SIGNATURE = b"ElfChnk\x00"
RECORD_SIGNATURE = b"\x2a\x2a\x00\x00"

FILE_HEADER_BLOCK_SIZE = 4096
FILE_HEADER_CHECKSUMMED = 120
CHUNK_SIZE = 65536
CHUNK_HEADER_SIZE = 512
CHUNK_HEADER_CHECKSUMMED = 120
STRING_TABLE_OFFSET = 128
STRING_TABLE_ENTRIES = 64
TEMPLATE_TABLE_OFFSET = 384
TEMPLATE_TABLE_ENTRIES = 32

# signature, size, record id, written time (FILETIME)
RECORD_HEADER = struct.Struct("<4sIQQ")
RECORD_TRAILER_SIZE = 4
MIN_RECORD_SIZE = RECORD_HEADER.size + RECORD_TRAILER_SIZE

_FILE_HEADER = struct.Struct("<8sQQQIHHHH")
_CHUNK_HEADER = struct.Struct("<8sQQQQIIII")

FLAG_DIRTY = 0x1
FLAG_FULL = 0x2


@dataclass(frozen=True, slots=True)
class FileHeader:
    """First 128 bytes of an EVTX file (padded to a 4096-byte block)."""

    first_chunk_number: int
    last_chunk_number: int
    next_record_id: int
    header_size: int
    minor_version: int
    major_version: int
    header_block_size: int
    chunk_count: int
    flags: int
    checksum: int
    checksum_ok: bool

    @property
    def dirty(self) -> bool:
        return bool(self.flags & FLAG_DIRTY)


def crc32(*parts: bytes) -> int:
    """CRC32 over the concatenation of ``parts``."""
    value = 0
    for part in parts:
        value = zlib.crc32(part, value)
    return value & 0xFFFFFFFF


def parse_file_header(block: bytes) -> FileHeader:
    """Parse the file header block. A wrong signature means this is not an EVTX file."""
    if len(block) < 128:
        raise SourceError("file is too short to hold an EVTX header")
    (
        signature,
        first_chunk,
        last_chunk,
        next_record_id,
        header_size,
        minor,
        major,
        block_size,
        chunk_count,
    ) = _FILE_HEADER.unpack_from(block, 0)
    if signature != FILE_SIGNATURE:
        raise SourceError("not an EVTX file (bad file signature)")
    (flags, checksum) = struct.unpack_from("<II", block, 120)
    computed = crc32(block[:FILE_HEADER_CHECKSUMMED])
    return FileHeader(
        first_chunk_number=first_chunk,
        last_chunk_number=last_chunk,
        next_record_id=next_record_id,
        header_size=header_size,
        minor_version=minor,
        major_version=major,
        header_block_size=block_size,
        chunk_count=chunk_count,
        flags=flags,
        checksum=checksum,
        checksum_ok=(computed == checksum),
    )


def parse_chunk_header(data: bytes, index: int) -> ChunkHeader:
    """Parse the 512-byte chunk header. Checksums are checked separately."""
    if len(data) < CHUNK_HEADER_SIZE:
        raise TruncatedChunk(f"chunk header needs {CHUNK_HEADER_SIZE} bytes, got {len(data)}", chunk=index)
    (
        signature,
        first_number,
        last_number,
        first_id,
        last_id,
        header_size,
        last_record_offset,
        free_space_offset,
        data_checksum,
    ) = _CHUNK_HEADER.unpack_from(data, 0)
    if signature != CHUNK_SIGNATURE:
        raise BadSignature("bad chunk signature", chunk=index, offset=0)
    (header_checksum,) = struct.unpack_from("<I", data, 124)
    strings = struct.unpack_from(f"<{STRING_TABLE_ENTRIES}I", data, STRING_TABLE_OFFSET)
    templates = struct.unpack_from(f"<{TEMPLATE_TABLE_ENTRIES}I", data, TEMPLATE_TABLE_OFFSET)
    return ChunkHeader(
        index=index,
        first_record_number=first_number,
        last_record_number=last_number,
        first_record_id=first_id,
        last_record_id=last_id,
        header_size=header_size,
        last_record_offset=last_record_offset,
        free_space_offset=free_space_offset,
        data_checksum=data_checksum,
        header_checksum=header_checksum,
        string_offsets=strings,
        template_offsets=templates,
    )


def verify_chunk_checksums(header: ChunkHeader, data: bytes) -> None:
    """Raise ChecksumMismatch unless both chunk CRC32 values validate."""
    computed = crc32(data[:CHUNK_HEADER_CHECKSUMMED], data[STRING_TABLE_OFFSET:CHUNK_HEADER_SIZE])
    if computed != header.header_checksum:
        raise ChecksumMismatch(
            f"chunk header checksum 0x{header.header_checksum:08x} != 0x{computed:08x}",
            chunk=header.index,
        )

    end = header.free_space_offset
    if not CHUNK_HEADER_SIZE <= end <= len(data):
        raise ChecksumMismatch(f"free space offset 0x{end:x} out of range", chunk=header.index)
    computed = crc32(data[CHUNK_HEADER_SIZE:end])
    if computed != header.data_checksum:
        raise ChecksumMismatch(
            f"records checksum 0x{header.data_checksum:08x} != 0x{computed:08x}",
            chunk=header.index,
        )


def is_unused_chunk(data: bytes) -> bool:
    """Unallocated chunks at the end of a file are all zero."""
    return not any(data[:CHUNK_HEADER_SIZE])
