"""BinXML element tree, template definitions, and the template cache."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..models import RawValue


@dataclass(frozen=True, slots=True)
class Substitution:
    """Placeholder inside a template body, filled from the instance values."""

    index: int
    value_type: int
    optional: bool


@dataclass(slots=True)
class Fragment:
    """An embedded BinXML substitution value (already parsed)."""

    nodes: list[Any]


@dataclass(slots=True)
class Element:
    """XML element decoded from BinXML or from rendered event XML.

    ``attributes`` and ``children`` hold parts: typed values, nested elements,
    or (inside template bodies only) :class:`Substitution` placeholders.
    """

    name: str
    attributes: dict[str, list[Any]] = field(default_factory=dict)
    children: list[Any] = field(default_factory=list)

    def find(self, name: str) -> Element | None:
        for child in self.children:
            if isinstance(child, Element) and child.name == name:
                return child
        return None

    def iter_elements(self, name: str | None = None) -> Iterator[Element]:
        for child in self.children:
            if isinstance(child, Element) and (name is None or child.name == name):
                yield child

    def attr(self, name: str) -> RawValue:
        return _collapse(self.attributes.get(name, ()))

    def text(self) -> RawValue:
        return _collapse([c for c in self.children if not isinstance(c, Element)])


def _collapse(parts: Sequence[Any]) -> RawValue:
    """Single part keeps its type; several parts are joined as text."""
    values = [p for p in parts if p is not None]
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return "".join(str(v) for v in values)


@dataclass(frozen=True, slots=True)
class TemplateDefinition:
    """Parsed template body keyed by its chunk-relative definition offset."""

    template_id: int
    guid: str
    offset: int
    nodes: tuple[Any, ...]

    def instantiate(self, values: Sequence[Any]) -> list[Any]:
        return _fill(self.nodes, values)


def _substitute(sub: Substitution, values: Sequence[Any]) -> list[Any]:
    value = values[sub.index] if sub.index < len(values) else None
    if value is None or (sub.optional and value == ""):
        return []
    if isinstance(value, Fragment):
        return list(value.nodes)
    return [value]


def _fill(parts: Sequence[Any], values: Sequence[Any]) -> list[Any]:
    out: list[Any] = []
    for part in parts:
        if isinstance(part, Substitution):
            out.extend(_substitute(part, values))
        elif isinstance(part, Element):
            attrs: dict[str, list[Any]] = {}
            for name, attr_parts in part.attributes.items():
                filled = _fill(attr_parts, values)
                if filled:
                    attrs[name] = filled
            out.append(Element(part.name, attrs, _fill(part.children, values)))
        else:
            out.append(part)
    return out


class TemplateCache:
    """Template definitions seen during one decode session.

    Definition offsets are chunk-relative, so entries are keyed by
    ``(chunk index, offset)``. The cache is cleared when the session ends.
    """

    def __init__(self) -> None:
        self._by_location: dict[tuple[int, int], TemplateDefinition] = {}

    def get(self, chunk: int, offset: int) -> TemplateDefinition | None:
        return self._by_location.get((chunk, offset))

    def put(self, chunk: int, definition: TemplateDefinition) -> None:
        self._by_location[(chunk, definition.offset)] = definition

    def clear(self) -> None:
        self._by_location.clear()

    def __len__(self) -> int:
        return len(self._by_location)

    def __contains__(self, key: object) -> bool:
        return key in self._by_location
