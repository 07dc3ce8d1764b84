"""Append-only, per-aggregate event store with optimistic concurrency.

Design invariants
-----------------
1.  ``append(event, expected_version)`` succeeds only when
    ``expected_version`` equals the aggregate's head version and
    ``event.version == expected_version + 1``.  Anything else raises
    ``ConcurrencyConflict`` and leaves the log untouched.
2.  Appends to the same ``aggregate_id`` are serialized by a per-aggregate
    ``asyncio.Lock``.  This is the only lock boundary in the system; appends
    to different aggregates never wait on each other.
3.  ``load()`` yields events lazily in ascending version order.  Every call
    returns a fresh iterator (restartable), and the iterator stops at the
    head observed when it started (finite).
4.  The store is **append-only**: events can never be deleted or
    modified.  ``clear()`` exists only for testing.

This module provides:

*  ``IEventStore``: the protocol.
*  ``InMemoryEventStore``: dict-backed implementation for tests and local
   development.
*  ``JsonFileEventStore``: one JSON-lines file per aggregate, fsynced on
   every append.
*  ``create_event_store``: factory driven by ``EventStoreConfig``.

The SQLAlchemy implementation lives in ``booking_lifecycle.storage``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import aclosing
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

from booking_lifecycle.core.config import EventStoreConfig
from booking_lifecycle.core.enums import StoreBackend
from booking_lifecycle.core.errors import ConcurrencyConflict, ValidationError
from booking_lifecycle.core.ids import check_aggregate_id
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.observability import metrics

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

class AggregateLocks:
    """Lazily created ``asyncio.Lock`` per aggregate id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, aggregate_id: str) -> asyncio.Lock:
        lock = self._locks.get(aggregate_id)
        if lock is None:
            lock = self._locks[aggregate_id] = asyncio.Lock()
        return lock


def check_append(event: DomainEvent, expected_version: int, head: int) -> None:
    """Raise ``ConcurrencyConflict`` unless *event* extends the stream at *head*."""
    if expected_version != head or event.version != expected_version + 1:
        metrics.record_concurrency_conflict(event.aggregate_type.value)
        logger.warning(
            "Stale append on %s: expected_version=%d event.version=%d head=%d",
            event.aggregate_id, expected_version, event.version, head,
        )
        raise ConcurrencyConflict(event.aggregate_id, expected_version, head)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventStore(Protocol):
    """Durable, append-only per-aggregate event log."""

    async def append(self, event: DomainEvent, expected_version: int) -> None:
        """Persist *event* if the head is still *expected_version*."""
        ...

    def load(
        self, aggregate_id: str, from_version: int = 1,
    ) -> AsyncIterator[DomainEvent]:
        """Yield the aggregate's events in ascending version order."""
        ...

    async def head(self, aggregate_id: str) -> int:
        """Current head version (0 when the aggregate has no events)."""
        ...

    async def contains(self, event: DomainEvent) -> bool:
        """Whether exactly this event is stored at its version."""
        ...

    def replay_all(self) -> AsyncIterator[DomainEvent]:
        """Yield every stored event, each stream in version order."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventStore:
    """Dict-backed event store.  No persistence across restarts.

    Good for: unit tests, local development.
    """

    def __init__(self) -> None:
        self._streams: dict[str, list[DomainEvent]] = {}
        self._log: list[DomainEvent] = []
        self._locks = AggregateLocks()

    async def append(self, event: DomainEvent, expected_version: int) -> None:
        async with self._locks(event.aggregate_id):
            stream = self._streams.setdefault(event.aggregate_id, [])
            check_append(event, expected_version, len(stream))
            stream.append(event)
            self._log.append(event)
        metrics.record_append(event)
        logger.debug(
            "Appended %s v%d to %s",
            event.event_type.value, event.version, event.aggregate_id,
        )

    async def load(
        self, aggregate_id: str, from_version: int = 1,
    ) -> AsyncIterator[DomainEvent]:
        stream = self._streams.get(aggregate_id, [])
        end = len(stream)
        for index in range(max(from_version, 1) - 1, end):
            yield stream[index]

    async def head(self, aggregate_id: str) -> int:
        return len(self._streams.get(aggregate_id, ()))

    async def contains(self, event: DomainEvent) -> bool:
        stream = self._streams.get(event.aggregate_id, [])
        if event.version > len(stream):
            return False
        return stream[event.version - 1].event_id == event.event_id

    async def replay_all(self) -> AsyncIterator[DomainEvent]:
        end = len(self._log)
        for index in range(end):
            yield self._log[index]

    # -- Testing helpers ---------------------------------------------------

    def clear(self) -> None:
        """Remove all events.  Testing only."""
        self._streams.clear()
        self._log.clear()

    def __len__(self) -> int:
        return len(self._log)


# ---------------------------------------------------------------------------
# JSON-Lines file implementation
# ---------------------------------------------------------------------------

class JsonFileEventStore:
    """One append-only JSONL file per aggregate.  Durable across restarts.

    Good for: single-process deployments, CI, local persistence.

    Each line is ``DomainEvent.to_dict()``.  A line is written, flushed and
    fsynced before the cached head advances, so a crash can lose at most an
    append that was never acknowledged.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._heads: dict[str, int] = {}
        self._locks = AggregateLocks()

    def _path(self, aggregate_id: str) -> Path:
        check_aggregate_id(aggregate_id)
        return self._dir / f"{quote(aggregate_id, safe='')}.jsonl"

    @staticmethod
    def _parse(line: str, path: Path) -> DomainEvent:
        try:
            return DomainEvent.from_dict(json.loads(line))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Corrupt event line in {path}: {exc}") from exc

    def _count_lines(self, path: Path) -> int:
        if not path.exists():
            return 0
        with path.open() as f:
            return sum(1 for line in f if line.strip())

    async def head(self, aggregate_id: str) -> int:
        cached = self._heads.get(aggregate_id)
        if cached is None:
            cached = self._count_lines(self._path(aggregate_id))
            self._heads[aggregate_id] = cached
        return cached

    @staticmethod
    def _write_line(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def append(self, event: DomainEvent, expected_version: int) -> None:
        path = self._path(event.aggregate_id)
        async with self._locks(event.aggregate_id):
            head = await self.head(event.aggregate_id)
            check_append(event, expected_version, head)
            line = json.dumps(event.to_dict(), sort_keys=True)
            await asyncio.to_thread(self._write_line, path, line)
            self._heads[event.aggregate_id] = event.version
        metrics.record_append(event)
        logger.debug(
            "Appended %s v%d to %s",
            event.event_type.value, event.version, path,
        )

    async def load(
        self, aggregate_id: str, from_version: int = 1,
    ) -> AsyncIterator[DomainEvent]:
        path = self._path(aggregate_id)
        end = await self.head(aggregate_id)
        if end == 0:
            return
        with path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                event = self._parse(line, path)
                if event.version > end:
                    break
                if event.version >= from_version:
                    yield event

    async def contains(self, event: DomainEvent) -> bool:
        async with aclosing(
            self.load(event.aggregate_id, from_version=event.version)
        ) as events:
            async for stored in events:
                return stored.event_id == event.event_id
        return False

    async def replay_all(self) -> AsyncIterator[DomainEvent]:
        if not self._dir.exists():
            return
        for path in sorted(self._dir.glob("*.jsonl")):
            with path.open() as f:
                for line in f:
                    line = line.strip()
                    if line:
                        yield self._parse(line, path)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_event_store(config: EventStoreConfig) -> IEventStore:
    """Build the store selected by ``config.backend``."""
    if config.backend == StoreBackend.MEMORY:
        return InMemoryEventStore()
    if config.backend == StoreBackend.JSONL:
        return JsonFileEventStore(config.path)
    from booking_lifecycle.storage.sql_event_store import SqlEventStore

    return SqlEventStore.from_url(config.url, page_size=config.page_size)
