from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import IO, Any, Protocol

from pydantic import ValidationError

from .canonical import state_hash
from .models import Event, Observer, State

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Durable destination for recorded events."""

    async def write(self, event: Event) -> None: ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...


class NullSink:
    async def write(self, event: Event) -> None:
        return None

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        return None


class MemorySink:
    """Keeps every written event in memory."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self.flushes = 0

    async def write(self, event: Event) -> None:
        self.events.append(event)

    async def flush(self) -> None:
        self.flushes += 1

    async def close(self) -> None:
        return None


class JsonlFileSink:
    """Append-only JSON Lines writer, one event per line, UTF-8.

    Writes are serialized through an asyncio lock and run off the event loop;
    each caller waits for its own line to reach the file, so a slow disk
    applies backpressure to the workflow instead of growing a buffer.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()
        self._handle: IO[str] | None = None

    def _open(self) -> IO[str]:
        if self._handle is None or self._handle.closed:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("a", encoding="utf-8")
        return self._handle

    def _append(self, line: str) -> None:
        handle = self._open()
        handle.write(line + "\n")
        handle.flush()

    def _sync(self) -> None:
        if self._handle is not None and not self._handle.closed:
            self._handle.flush()
            os.fsync(self._handle.fileno())

    def _close(self) -> None:
        if self._handle is not None and not self._handle.closed:
            self._handle.close()
        self._handle = None

    async def write(self, event: Event) -> None:
        line = event.model_dump_json()
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    async def flush(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._sync)

    async def close(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._close)


class Ledger:
    """Append-only record of the events emitted during one workflow run.

    The ledger is threaded explicitly through every step. It forwards each
    recorded event to its sink and then to the optional observer.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        observer: Observer | None = None,
        *,
        dev_mode: bool = False,
    ) -> None:
        self.sink: EventSink = sink if sink is not None else NullSink()
        self.observer = observer
        self.dev_mode = dev_mode
        self._events: list[Event] = []

    @property
    def events(self) -> tuple[Event, ...]:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(tuple(self._events))

    async def record(self, event: Event, state: State) -> Event:
        """Append ``event``, persist it, then notify the observer.

        A sink failure propagates to the caller; ledger writes are never retried.
        """
        self._events.append(event)
        await self.sink.write(event)
        if self.observer is not None:
            self.observer(event, state)
        return event

    async def emit(
        self,
        name: str,
        before: State,
        after: State,
        *,
        args: Sequence[Any] = (),
        meta: dict[str, Any] | None = None,
    ) -> Event:
        event = Event(
            name=name,
            args=tuple(args),
            before_hash=state_hash(before),
            after_hash=state_hash(after),
            meta=meta,
        )
        return await self.record(event, after)

    def by_name(self, name: str) -> list[Event]:
        return [event for event in self._events if event.name == name]

    def recent(self, limit: int = 100) -> list[Event]:
        if limit <= 0:
            return []
        return self._events[-limit:]

    def stats(self) -> dict[str, int]:
        return dict(Counter(event.name for event in self._events))


def read_events(path: Path) -> list[Event]:
    """Load a JSON Lines ledger written by ``JsonlFileSink``.

    Raises:
        FileNotFoundError: If the ledger file does not exist.
        ValueError: If a line is not a valid event.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Ledger file not found: {path}")
    events: list[Event] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                events.append(Event.model_validate_json(line))
            except ValidationError as exc:
                raise ValueError(f"Invalid event on line {line_no} of {path}") from exc
    logger.debug("Loaded %d events from %s", len(events), path)
    return events
