"""SQLAlchemy-backed ``IEventStore``.

Works with any async dialect (``postgresql+asyncpg``, ``sqlite+aiosqlite``).
In-process appends to one aggregate are serialized by a per-aggregate lock;
across processes the unique ``(aggregate_id, version)`` key turns a lost
race into ``ConcurrencyConflict``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from booking_lifecycle.core.errors import ConcurrencyConflict
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_store import AggregateLocks, check_append
from booking_lifecycle.observability import metrics

from .models import Base, EventRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _event_to_record(event: DomainEvent) -> EventRecord:
    data = event.to_dict()
    return EventRecord(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        aggregate_type=event.aggregate_type.value,
        version=event.version,
        payload=data["payload"],
        metadata_json=data["metadata"],
        recorded_at=event.metadata.timestamp,
    )


def _record_to_event(record: EventRecord) -> DomainEvent:
    return DomainEvent.from_dict({
        "event_id": record.event_id,
        "event_type": record.event_type,
        "aggregate_id": record.aggregate_id,
        "aggregate_type": record.aggregate_type,
        "version": record.version,
        "payload": record.payload,
        "metadata": record.metadata_json,
    })


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqlEventStore:
    """Event store on a relational table.

    Args:
        engine: Async engine to use.  The caller owns its lifecycle unless
            the store was built with :meth:`from_url`.
        page_size: Rows fetched per query while iterating ``load``.
    """

    def __init__(self, engine: AsyncEngine, *, page_size: int = 500) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False,
        )
        self._page_size = page_size
        self._locks = AggregateLocks()
        self._schema_ready = False

    @classmethod
    def from_url(cls, url: str, *, page_size: int = 500, echo: bool = False) -> SqlEventStore:
        engine = create_async_engine(url, echo=echo)
        logger.info("Created async engine for %s", url.split("@")[-1])
        return cls(engine, page_size=page_size)

    async def init_schema(self) -> None:
        """Create the ``domain_events`` table if it does not exist."""
        if self._schema_ready:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._schema_ready = True
        logger.info("Event table created / verified.")

    async def dispose(self) -> None:
        """Release all pooled connections."""
        await self._engine.dispose()
        logger.info("Engine disposed.")

    # -- IEventStore -------------------------------------------------------

    async def head(self, aggregate_id: str) -> int:
        await self.init_schema()
        async with self._sessions() as session:
            result = await session.execute(
                select(func.max(EventRecord.version)).where(
                    EventRecord.aggregate_id == aggregate_id
                )
            )
            return result.scalar() or 0

    async def append(self, event: DomainEvent, expected_version: int) -> None:
        await self.init_schema()
        async with self._locks(event.aggregate_id):
            head = await self.head(event.aggregate_id)
            check_append(event, expected_version, head)
            async with self._sessions() as session:
                session.add(_event_to_record(event))
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    actual = await self.head(event.aggregate_id)
                    metrics.record_concurrency_conflict(event.aggregate_type.value)
                    logger.warning(
                        "Lost append race on %s v%d (head now %d)",
                        event.aggregate_id, event.version, actual,
                    )
                    raise ConcurrencyConflict(
                        event.aggregate_id, expected_version, actual,
                    ) from exc
        metrics.record_append(event)
        logger.debug(
            "Appended %s v%d to %s",
            event.event_type.value, event.version, event.aggregate_id,
        )

    async def load(
        self, aggregate_id: str, from_version: int = 1,
    ) -> AsyncIterator[DomainEvent]:
        end = await self.head(aggregate_id)
        cursor = max(from_version, 1)
        while cursor <= end:
            async with self._sessions() as session:
                result = await session.execute(
                    select(EventRecord)
                    .where(
                        EventRecord.aggregate_id == aggregate_id,
                        EventRecord.version >= cursor,
                        EventRecord.version <= end,
                    )
                    .order_by(EventRecord.version)
                    .limit(self._page_size)
                )
                page = list(result.scalars())
            if not page:
                return
            for record in page:
                yield _record_to_event(record)
            cursor = page[-1].version + 1

    async def contains(self, event: DomainEvent) -> bool:
        await self.init_schema()
        async with self._sessions() as session:
            result = await session.execute(
                select(EventRecord.event_id).where(
                    EventRecord.aggregate_id == event.aggregate_id,
                    EventRecord.version == event.version,
                )
            )
            return result.scalar() == event.event_id

    async def replay_all(self) -> AsyncIterator[DomainEvent]:
        await self.init_schema()
        cursor = 0
        while True:
            async with self._sessions() as session:
                result = await session.execute(
                    select(EventRecord)
                    .where(EventRecord.seq > cursor)
                    .order_by(EventRecord.seq)
                    .limit(self._page_size)
                )
                page = list(result.scalars())
            if not page:
                return
            for record in page:
                yield _record_to_event(record)
            cursor = page[-1].seq
