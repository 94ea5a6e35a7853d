"""Error taxonomy for the decode/normalize/analyze pipeline.

Decode and normalize errors are recoverable: the pipeline skips the offending
unit, counts it, and keeps going. Source and config errors stop the run.
"""

from __future__ import annotations


class SysmonTriageError(Exception):
    """Base class for all errors raised by this package."""


class DecodeError(SysmonTriageError):
    """A chunk or record could not be decoded (recoverable)."""

    def __init__(self, message: str, *, chunk: int | None = None, offset: int | None = None):
        super().__init__(message)
        self.chunk = chunk
        self.offset = offset

    def __str__(self) -> str:
        where = []
        if self.chunk is not None:
            where.append(f"chunk={self.chunk}")
        if self.offset is not None:
            where.append(f"offset=0x{self.offset:x}")
        base = super().__str__()
        return f"{base} ({', '.join(where)})" if where else base


class BadSignature(DecodeError):
    """Chunk or record magic bytes do not match."""


class ChecksumMismatch(DecodeError):
    """Stored CRC32 does not match the computed one."""


class TruncatedChunk(DecodeError):
    """The source ended in the middle of a chunk."""


class MalformedChunk(DecodeError):
    """Chunk header is not self-consistent with its records."""


class MalformedRecord(DecodeError):
    """A record boundary or its BinXML payload is invalid."""


class UnresolvedTemplate(DecodeError):
    """A record references a template definition that was never seen."""

    def __init__(self, template_id: int, *, chunk: int | None = None, offset: int | None = None):
        super().__init__(f"unresolved template 0x{template_id:08x}", chunk=chunk, offset=offset)
        self.template_id = template_id


class NormalizeError(SysmonTriageError):
    """A raw record cannot be turned into a normalized event (recoverable)."""


class MissingRequiredField(NormalizeError):
    """A field required for uniform downstream handling is absent."""

    def __init__(self, field: str, *, record_id: int | None = None):
        msg = f"missing required field '{field}'"
        if record_id is not None:
            msg += f" in record {record_id}"
        super().__init__(msg)
        self.field = field
        self.record_id = record_id


class SourceError(SysmonTriageError, OSError):
    """The event source is unreadable or the live subscription was lost."""


class ConfigError(SysmonTriageError, ValueError):
    """Invalid filter or detector configuration (raised before processing)."""
