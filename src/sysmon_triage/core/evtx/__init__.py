"""EVTX decoding: chunked container, BinXML templates, and record extraction."""

from __future__ import annotations

from .binxml import BinXmlParser
from .decoder import ChunkSource, DecodeStats, RecordDecoder, iter_record_spans
from .layout import (
    CHUNK_HEADER_SIZE,
    CHUNK_SIZE,
    FILE_HEADER_BLOCK_SIZE,
    FileHeader,
    crc32,
    parse_chunk_header,
    parse_file_header,
)
from .records import parse_system_time, record_from_element, record_from_xml
from .templates import Element, TemplateCache, TemplateDefinition
from .values import datetime_to_filetime, decode_value, filetime_to_datetime

__all__ = [
    "BinXmlParser",
    "CHUNK_HEADER_SIZE",
    "CHUNK_SIZE",
    "ChunkSource",
    "DecodeStats",
    "Element",
    "FILE_HEADER_BLOCK_SIZE",
    "FileHeader",
    "RecordDecoder",
    "TemplateCache",
    "TemplateDefinition",
    "crc32",
    "datetime_to_filetime",
    "decode_value",
    "filetime_to_datetime",
    "iter_record_spans",
    "parse_chunk_header",
    "parse_file_header",
    "parse_system_time",
    "record_from_element",
    "record_from_xml",
]
