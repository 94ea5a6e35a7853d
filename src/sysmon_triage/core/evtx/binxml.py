"""BinXML token stream parser.

Turns the payload of one EVTX record into an :class:`Element` tree. Names and
template definitions may be defined inline or referenced by their
chunk-relative offset, so the parser works on the whole chunk buffer.
"""

from __future__ import annotations

import struct
from typing import Any

from ..errors import MalformedRecord, UnresolvedTemplate
from .templates import Element, Fragment, Substitution, TemplateCache, TemplateDefinition
from .values import TYPE_BINXML, TYPE_WSTRING, decode_value

TOKEN_EOF = 0x00
TOKEN_OPEN_START = 0x01
TOKEN_CLOSE_START = 0x02
TOKEN_CLOSE_EMPTY = 0x03
TOKEN_END_ELEMENT = 0x04
TOKEN_VALUE = 0x05
TOKEN_ATTRIBUTE = 0x06
TOKEN_CDATA = 0x07
TOKEN_CHARREF = 0x08
TOKEN_ENTITYREF = 0x09
TOKEN_PI_TARGET = 0x0A
TOKEN_PI_DATA = 0x0B
TOKEN_TEMPLATE_INSTANCE = 0x0C
TOKEN_NORMAL_SUBST = 0x0D
TOKEN_OPTIONAL_SUBST = 0x0E
TOKEN_FRAGMENT_HEADER = 0x0F
FLAG_MORE = 0x40

# next definition offset, GUID, data size
TEMPLATE_HEADER_SIZE = 24

_ENTITIES = {"amp": "&", "lt": "<", "gt": ">", "quot": '"', "apos": "'"}
_VALUE_TOKENS = frozenset(
    {TOKEN_VALUE, TOKEN_NORMAL_SUBST, TOKEN_OPTIONAL_SUBST, TOKEN_CHARREF, TOKEN_ENTITYREF, TOKEN_CDATA}
)

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")


class BinXmlParser:
    """Parse records of a single chunk.

    One parser instance per chunk: it caches names by offset, and resolves
    template definitions through the session-wide :class:`TemplateCache`.
    """

    def __init__(self, data: bytes, *, chunk_index: int, templates: TemplateCache):
        self._buf = data
        self._chunk = chunk_index
        self._templates = templates
        self._names: dict[int, str] = {}
        self._pos = 0
        self._record_start = 0

    # -- public -----------------------------------------------------------------

    def parse_record(self, start: int, end: int) -> Element:
        """Parse the BinXML payload in ``[start, end)`` and return the root element."""
        self._pos = start
        self._record_start = start
        try:
            nodes = self._parse_content(end)
        except (struct.error, IndexError, UnicodeDecodeError) as exc:
            raise MalformedRecord(f"truncated BinXML: {exc}", chunk=self._chunk, offset=self._pos) from exc
        roots = [n for n in nodes if isinstance(n, Element)]
        if not roots:
            raise MalformedRecord("record has no root element", chunk=self._chunk, offset=start)
        return roots[0]

    # -- primitives -------------------------------------------------------------

    def _u8(self) -> int:
        (v,) = _U8.unpack_from(self._buf, self._pos)
        self._pos += 1
        return v

    def _u16(self) -> int:
        (v,) = _U16.unpack_from(self._buf, self._pos)
        self._pos += 2
        return v

    def _u32(self) -> int:
        (v,) = _U32.unpack_from(self._buf, self._pos)
        self._pos += 4
        return v

    def _wchars(self, count: int) -> str:
        raw = self._buf[self._pos : self._pos + count * 2]
        if len(raw) != count * 2:
            raise MalformedRecord("string runs past end of chunk", chunk=self._chunk, offset=self._pos)
        self._pos += count * 2
        return raw.decode("utf-16-le")

    def _fail(self, message: str) -> MalformedRecord:
        return MalformedRecord(message, chunk=self._chunk, offset=self._pos)

    # -- names ------------------------------------------------------------------

    def _name_at(self, offset: int) -> tuple[str, int]:
        """Return (name, encoded length) of the name structure at ``offset``."""
        # next-string offset (u32), hash (u16), char count (u16), chars, NUL
        (count,) = _U16.unpack_from(self._buf, offset + 6)
        start = offset + 8
        raw = self._buf[start : start + count * 2]
        if len(raw) != count * 2:
            raise MalformedRecord("name runs past end of chunk", chunk=self._chunk, offset=offset)
        name = raw.decode("utf-16-le")
        self._names[offset] = name
        return name, 8 + count * 2 + 2

    def _read_name(self) -> str:
        offset = self._u32()
        if offset == self._pos:
            name, length = self._name_at(offset)
            self._pos += length
            return name
        cached = self._names.get(offset)
        if cached is not None:
            return cached
        if not 0 < offset < len(self._buf):
            raise self._fail(f"name offset 0x{offset:x} outside chunk")
        return self._name_at(offset)[0]

    # -- content ----------------------------------------------------------------

    def _parse_content(self, end: int) -> list[Any]:
        """Parse tokens until EOF, an end-element token, or ``end``."""
        out: list[Any] = []
        while self._pos < end:
            token = self._buf[self._pos]
            base = token & ~FLAG_MORE & 0xFF

            if base == TOKEN_EOF:
                self._pos += 1
                break
            if base == TOKEN_END_ELEMENT:
                self._pos += 1
                break
            if base == TOKEN_FRAGMENT_HEADER:
                self._pos += 4
            elif base == TOKEN_OPEN_START:
                out.append(self._parse_element(end))
            elif base == TOKEN_TEMPLATE_INSTANCE:
                out.extend(self._parse_template_instance())
            elif base in _VALUE_TOKENS:
                part = self._parse_value_part()
                if part is not None:
                    out.append(part)
            elif base == TOKEN_PI_TARGET:
                self._pos += 1
                self._read_name()
            elif base == TOKEN_PI_DATA:
                self._pos += 1
                self._wchars(self._u16())
            else:
                raise self._fail(f"unexpected token 0x{token:02x}")
        return out

    def _parse_element(self, end: int) -> Element:
        token = self._u8()
        self._u16()  # dependency identifier
        self._u32()  # element data size
        element = Element(self._read_name())

        if token & FLAG_MORE:
            self._u32()  # attribute list size
            while True:
                attr_token = self._buf[self._pos]
                if attr_token & ~FLAG_MORE & 0xFF != TOKEN_ATTRIBUTE:
                    break
                self._pos += 1
                name = self._read_name()
                parts: list[Any] = []
                while self._buf[self._pos] & ~FLAG_MORE & 0xFF in _VALUE_TOKENS:
                    part = self._parse_value_part()
                    if part is not None:
                        parts.append(part)
                element.attributes[name] = parts
                if not attr_token & FLAG_MORE:
                    break

        close = self._u8()
        if close == TOKEN_CLOSE_EMPTY:
            return element
        if close != TOKEN_CLOSE_START:
            raise self._fail(f"expected close-start token, got 0x{close:02x}")
        element.children = self._parse_content(end)
        return element

    def _parse_value_part(self) -> Any:
        token = self._u8() & ~FLAG_MORE & 0xFF
        if token == TOKEN_VALUE:
            value_type = self._u8()
            if value_type != TYPE_WSTRING:
                raise self._fail(f"unsupported value text type 0x{value_type:02x}")
            return self._wchars(self._u16())
        if token in (TOKEN_NORMAL_SUBST, TOKEN_OPTIONAL_SUBST):
            index = self._u16()
            value_type = self._u8()
            return Substitution(index, value_type, optional=(token == TOKEN_OPTIONAL_SUBST))
        if token == TOKEN_CHARREF:
            return chr(self._u16())
        if token == TOKEN_ENTITYREF:
            name = self._read_name()
            return _ENTITIES.get(name, f"&{name};")
        if token == TOKEN_CDATA:
            return self._wchars(self._u16())
        raise self._fail(f"unexpected value token 0x{token:02x}")

    # -- templates --------------------------------------------------------------

    def _parse_template_instance(self) -> list[Any]:
        self._pos += 2  # token, unknown byte
        template_id = self._u32()
        def_offset = self._u32()

        if def_offset == self._pos:
            definition = self._parse_definition(def_offset)
            self._templates.put(self._chunk, definition)
            self._pos = def_offset + TEMPLATE_HEADER_SIZE + self._definition_size(def_offset)
        else:
            definition = self._resolve_definition(template_id, def_offset)

        if definition.template_id != template_id:
            raise UnresolvedTemplate(template_id, chunk=self._chunk, offset=def_offset)

        values = self._parse_substitution_values()
        return definition.instantiate(values)

    def _definition_size(self, offset: int) -> int:
        (size,) = _U32.unpack_from(self._buf, offset + 20)
        return size

    def _parse_definition(self, offset: int) -> TemplateDefinition:
        guid_raw = self._buf[offset + 4 : offset + 20]
        if len(guid_raw) != 16:
            raise self._fail("template definition runs past end of chunk")
        (template_id,) = _U32.unpack_from(guid_raw, 0)
        size = self._definition_size(offset)
        body_start = offset + TEMPLATE_HEADER_SIZE
        body_end = body_start + size
        if body_end > len(self._buf):
            raise self._fail("template body runs past end of chunk")

        saved = self._pos
        self._pos = body_start
        nodes = self._parse_content(body_end)
        self._pos = saved
        return TemplateDefinition(
            template_id=template_id,
            guid=guid_raw.hex(),
            offset=offset,
            nodes=tuple(nodes),
        )

    def _resolve_definition(self, template_id: int, offset: int) -> TemplateDefinition:
        cached = self._templates.get(self._chunk, offset)
        if cached is not None:
            return cached
        # Lazy resolution: a definition written by an earlier record of this
        # chunk that this session has not parsed yet (e.g. a skipped record).
        if not (0 < offset and offset + TEMPLATE_HEADER_SIZE <= self._record_start):
            raise UnresolvedTemplate(template_id, chunk=self._chunk, offset=offset)
        try:
            definition = self._parse_definition(offset)
        except (MalformedRecord, struct.error, IndexError, UnicodeDecodeError) as exc:
            raise UnresolvedTemplate(template_id, chunk=self._chunk, offset=offset) from exc
        self._templates.put(self._chunk, definition)
        return definition

    def _parse_substitution_values(self) -> list[Any]:
        count = self._u32()
        descriptors = []
        for _ in range(count):
            size = self._u16()
            value_type = self._u8()
            self._pos += 1  # padding
            descriptors.append((size, value_type))

        values: list[Any] = []
        for size, value_type in descriptors:
            start = self._pos
            if start + size > len(self._buf):
                raise self._fail("substitution value runs past end of chunk")
            if value_type == TYPE_BINXML:
                nested = self._parse_content(start + size)
                values.append(Fragment(nested))
            else:
                values.append(decode_value(value_type, self._buf[start : start + size]))
            self._pos = start + size
        return values
