"""Request log and pending-wait registry for the update server.

All state here is confined to the event loop that runs the HTTP server: the
request handlers and the test driver's waits interleave only at `await`
points, so checking the log and registering a waiter happen atomically with
respect to new requests.

Delivery rules:
  * every recorded request first resolves all satisfied waiters, then is
    appended to the log (arrival order is log order);
  * a wait only considers requests at or after its `since` cursor (default:
    the log position when the wait is issued), and never one that an earlier
    wait of the same kind already returned;
  * a wait that times out removes itself from the registry before raising, so
    a later request cannot resolve it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Literal, Mapping, Optional

from updates_harness.errors import ServerStoppedError, WaitTimeoutError

logger = logging.getLogger(__name__)

EventKind = Literal["update", "static", "report", "other"]
EVENT_KINDS: tuple[EventKind, ...] = ("update", "static", "report", "other")

Predicate = Callable[["RecordedRequest"], bool]

_WAIT_DESCRIPTIONS: Dict[str, str] = {
    "update": "update request",
    "static": "static file request",
    "report": "response",
    "other": "request",
}


@dataclass(frozen=True)
class RecordedRequest:
    seq: int
    kind: EventKind
    method: str
    path: str
    headers: Mapping[str, str]
    body: bytes = b""
    timestamp: float = field(default_factory=time.time)
    report: Optional[str] = None
    static_file: Optional[str] = None

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class _Waiter:
    kind: EventKind
    since: int
    predicate: Optional[Predicate]
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    def matches(self, event: RecordedRequest) -> bool:
        if event.kind != self.kind or event.seq < self.since:
            return False
        return self.predicate is None or bool(self.predicate(event))


class EventLog:
    def __init__(self) -> None:
        self._events: List[RecordedRequest] = []
        self._static_fetches: List[str] = []
        self._waiters: List[_Waiter] = []
        self._consumed: Dict[str, int] = {k: 0 for k in EVENT_KINDS}

    # ------------------------------- recording -------------------------------

    def cursor(self) -> int:
        """Log position; pass it as `since` to make later waits see earlier events."""

        return len(self._events)

    @property
    def events(self) -> tuple[RecordedRequest, ...]:
        return tuple(self._events)

    @property
    def pending_waits(self) -> int:
        return len(self._waiters)

    def record(
        self,
        *,
        kind: EventKind,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes = b"",
        report: Optional[str] = None,
        static_file: Optional[str] = None,
    ) -> RecordedRequest:
        event = RecordedRequest(
            seq=len(self._events),
            kind=kind,
            method=method.upper(),
            path=path,
            headers=MappingProxyType({str(k).lower(): str(v) for k, v in headers.items()}),
            body=bytes(body),
            report=report,
            static_file=static_file,
        )
        self._deliver(event)
        self._events.append(event)
        if static_file is not None:
            self._static_fetches.append(static_file)
        logger.debug("recorded #%d %s %s (%s)", event.seq, event.method, event.path, kind)
        return event

    def consume_static_files(self) -> list[str]:
        fetched = self._static_fetches
        self._static_fetches = []
        return fetched

    def _deliver(self, event: RecordedRequest) -> None:
        for waiter in list(self._waiters):
            if waiter.future.done():
                self._unregister(waiter)
                continue
            if waiter.matches(event):
                self._unregister(waiter)
                self._mark_consumed(event)
                waiter.future.set_result(event)

    def _mark_consumed(self, event: RecordedRequest) -> None:
        self._consumed[event.kind] = max(self._consumed[event.kind], event.seq + 1)

    def _unregister(self, waiter: _Waiter) -> None:
        if waiter.timer is not None:
            waiter.timer.cancel()
            waiter.timer = None
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    # --------------------------------- waits ---------------------------------

    async def wait_for(
        self,
        kind: EventKind,
        timeout_ms: float,
        *,
        since: Optional[int] = None,
        predicate: Optional[Predicate] = None,
    ) -> RecordedRequest:
        start = self.cursor() if since is None else max(0, int(since))
        start = max(start, self._consumed[kind])

        for event in self._events[start:]:
            if event.kind == kind and (predicate is None or predicate(event)):
                self._mark_consumed(event)
                return event

        loop = asyncio.get_running_loop()
        waiter = _Waiter(kind=kind, since=start, predicate=predicate, future=loop.create_future())
        description = _WAIT_DESCRIPTIONS[kind]
        waiter.timer = loop.call_later(
            max(0.0, float(timeout_ms)) / 1000.0,
            self._expire,
            waiter,
            description,
            timeout_ms,
        )
        self._waiters.append(waiter)
        try:
            return await waiter.future
        finally:
            self._unregister(waiter)

    def _expire(self, waiter: _Waiter, description: str, timeout_ms: float) -> None:
        self._unregister(waiter)
        if not waiter.future.done():
            waiter.future.set_exception(
                WaitTimeoutError(
                    f"Timed out waiting for {description} after {timeout_ms:g}ms",
                    waited_for=description,
                    timeout_ms=timeout_ms,
                )
            )

    # -------------------------------- teardown -------------------------------

    def close(self, reason: str = "server stopped") -> int:
        """Reject every pending wait and clear all logs; returns the number rejected."""

        rejected = 0
        for waiter in list(self._waiters):
            self._unregister(waiter)
            if not waiter.future.done():
                waiter.future.set_exception(
                    ServerStoppedError(
                        f"{reason} while waiting for {_WAIT_DESCRIPTIONS[waiter.kind]}"
                    )
                )
                rejected += 1
        self._events = []
        self._static_fetches = []
        self._consumed = {k: 0 for k in EVENT_KINDS}
        return rejected
