"""Sysmon channel subscription through the Windows Event Log API (pywin32)."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ..errors import SourceError

logger = logging.getLogger(__name__)

SYSMON_CHANNEL = "Microsoft-Windows-Sysmon/Operational"
ERROR_NO_MORE_ITEMS = 259


def build_xpath_query(event_ids: Iterable[int] | None = None) -> str:
    """XPath pre-filter for the subscription.

    ``None`` or an empty set subscribes to everything; the in-process filter
    still applies afterwards.
    """
    ids = sorted(set(event_ids or ()))
    if not ids:
        return "*"
    condition = " or ".join(f"EventID={i}" for i in ids)
    return f"*[System[({condition})]]"


def _import_win32() -> tuple[Any, Any, Any]:
    try:
        import pywintypes
        import win32event
        import win32evtlog
    except ImportError as exc:
        raise SourceError(
            "pywin32 is required for live monitoring (Windows only). Install with: pip install '.[live]'"
        ) from exc
    return win32evtlog, win32event, pywintypes


class SysmonChannelFeed:
    """EventFeed backed by ``EvtSubscribe`` on the Sysmon operational channel."""

    def __init__(
        self,
        *,
        query: str = "*",
        channel: str = SYSMON_CHANNEL,
        batch_size: int = 16,
    ):
        self.query = query
        self.channel = channel
        self.batch_size = batch_size
        self._signal = None
        self._subscription = None

    def open(self) -> None:
        win32evtlog, win32event, pywintypes = _import_win32()
        try:
            win32evtlog.EvtOpenChannelConfig(self.channel)
        except pywintypes.error as exc:
            raise SourceError(
                f"Sysmon channel {self.channel!r} not found or inaccessible ({exc}). "
                "Check that Sysmon is installed and running, and run as administrator."
            ) from exc

        logger.debug("XPath query: %s", self.query)
        try:
            self._signal = win32event.CreateEvent(None, True, False, None)
            self._subscription = win32evtlog.EvtSubscribe(
                self.channel,
                win32evtlog.EvtSubscribeToFutureEvents,
                SignalEvent=self._signal,
                Query=self.query,
            )
        except pywintypes.error as exc:
            self.close()
            raise SourceError(f"EvtSubscribe failed: {exc}") from exc

    def poll(self, timeout: float) -> list[str | None]:
        subscription, signal = self._subscription, self._signal
        if subscription is None or signal is None:
            raise SourceError("subscription is not open")
        win32evtlog, win32event, pywintypes = _import_win32()

        rc = win32event.WaitForSingleObject(signal, int(timeout * 1000))
        if rc == win32event.WAIT_TIMEOUT:
            return []
        if rc != win32event.WAIT_OBJECT_0:
            raise SourceError(f"waiting on subscription signal failed (rc={rc})")
        win32event.ResetEvent(signal)

        out: list[str | None] = []
        while True:
            try:
                handles = win32evtlog.EvtNext(subscription, self.batch_size, 0, 0)
            except pywintypes.error as exc:
                if exc.winerror == ERROR_NO_MORE_ITEMS:
                    break
                raise SourceError(f"EvtNext failed: {exc}") from exc
            if not handles:
                break
            for handle in handles:
                try:
                    out.append(win32evtlog.EvtRender(handle, win32evtlog.EvtRenderEventXml))
                except pywintypes.error as exc:
                    logger.warning("EvtRender failed: %s", exc)
                    out.append(None)
        return out

    def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.Close()
        signal, self._signal = self._signal, None
        if signal is not None:
            signal.Close()
