"""Event filtering over finite or unbounded streams.

``FilterCriteria`` precomputes its checks once, so unconstrained dimensions
cost nothing per event and constrained ones short-circuit on the first miss.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .errors import ConfigError
from .models import (
    FileCreate,
    ImageLoad,
    NetworkConnect,
    NormalizedEvent,
    OtherEvent,
    ProcessCreate,
    RegistryEvent,
)
from .time_window import resolve_time_window

# Textual fields searched per variant; ``computer`` is searched for every variant.
SEARCH_FIELDS: dict[type, tuple[str, ...]] = {
    ProcessCreate: ("image", "command_line", "user", "parent_image", "parent_command_line"),
    NetworkConnect: ("image", "user", "destination_ip", "destination_hostname"),
    FileCreate: ("image", "target_filename"),
    RegistryEvent: ("image", "target_object", "details"),
    ImageLoad: ("image", "image_loaded"),
}

Check = Callable[[NormalizedEvent], bool]


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def searchable_text(event: NormalizedEvent) -> Iterator[str]:
    """Yield the strings a search term is matched against."""
    if event.computer:
        yield event.computer
    if isinstance(event, OtherEvent):
        for value in event.fields.values():
            if isinstance(value, str):
                yield value
        return
    for name in SEARCH_FIELDS.get(type(event), ()):
        value = getattr(event, name, None)
        if value:
            yield value


@dataclass(frozen=True, slots=True)
class FilterCriteria:
    """Immutable filter; ``None`` on a dimension means unconstrained.

    An empty ``event_ids`` set is a constraint that accepts nothing.
    """

    event_ids: frozenset[int] | None = None
    since: datetime | None = None
    until: datetime | None = None
    search: str | None = None
    _checks: tuple[Check, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        since = _utc(self.since) if self.since is not None else None
        until = _utc(self.until) if self.until is not None else None
        if since is not None and until is not None and until < since:
            raise ConfigError("until must be >= since")

        event_ids = self.event_ids
        if event_ids is not None and not isinstance(event_ids, frozenset):
            event_ids = frozenset(event_ids)
        search = self.search or None

        object.__setattr__(self, "since", since)
        object.__setattr__(self, "until", until)
        object.__setattr__(self, "event_ids", event_ids)
        object.__setattr__(self, "search", search)

        checks: list[Check] = []
        if event_ids is not None:
            checks.append(lambda e: e.event_id in event_ids)
        if since is not None:
            checks.append(lambda e: e.timestamp >= since)
        if until is not None:
            checks.append(lambda e: e.timestamp <= until)
        if search is not None:
            needle = search.casefold()
            checks.append(lambda e: any(needle in s.casefold() for s in searchable_text(e)))
        object.__setattr__(self, "_checks", tuple(checks))

    @property
    def unconstrained(self) -> bool:
        return not self._checks

    def matches(self, event: NormalizedEvent) -> bool:
        for check in self._checks:
            if not check(event):
                return False
        return True


def filter_events(events: Iterable[NormalizedEvent], criteria: FilterCriteria) -> Iterator[NormalizedEvent]:
    """Lazily yield the events accepted by ``criteria``."""
    if criteria.unconstrained:
        yield from events
        return
    for event in events:
        if criteria.matches(event):
            yield event


async def afilter_events(
    events: AsyncIterable[NormalizedEvent],
    criteria: FilterCriteria,
) -> AsyncIterator[NormalizedEvent]:
    """Async counterpart of :func:`filter_events` for live or async-read streams."""
    async for event in events:
        if criteria.matches(event):
            yield event


def parse_event_ids(value: str | Iterable[int | str] | None) -> frozenset[int] | None:
    """Parse ``"1,3,11"`` (or an iterable of IDs) into a frozenset."""
    if value is None:
        return None
    parts: Sequence[int | str]
    if isinstance(value, str):
        parts = [p for p in (s.strip() for s in value.split(",")) if p]
        if not parts:
            return None
    else:
        parts = list(value)

    ids: set[int] = set()
    for part in parts:
        try:
            ids.add(int(part))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid event id: {part!r}") from exc
    return frozenset(ids)


def build_criteria(
    *,
    event_ids: str | Iterable[int | str] | None = None,
    since: str | datetime | None = None,
    until: str | datetime | None = None,
    date: str | None = None,
    hour: str | None = None,
    search: str | None = None,
) -> FilterCriteria:
    """Build FilterCriteria from CLI/tool options.

    Date/hour selectors take precedence over explicit bounds. Bad input raises
    ConfigError before any event is read.
    """
    try:
        lo, hi = resolve_time_window(
            since=since if isinstance(since, str) else None,
            until=until if isinstance(until, str) else None,
            date_=date,
            hour=hour,
        )
    except ValueError as exc:
        raise ConfigError(f"invalid time window: {exc}") from exc

    if not (date or hour):
        if isinstance(since, datetime):
            lo = since
        if isinstance(until, datetime):
            hi = until

    return FilterCriteria(
        event_ids=parse_event_ids(event_ids),
        since=lo,
        until=hi,
        search=search,
    )
