"""SQLAlchemy ORM model for the event log.

One row per event.  The unique ``(aggregate_id, version)`` key is the
cross-process backstop for optimistic concurrency: two writers racing on the
same head can never both commit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# EventRecord
# ---------------------------------------------------------------------------

class EventRecord(Base):
    """Persisted ``DomainEvent``.  Rows are inserted, never updated."""

    __tablename__ = "domain_events"

    # Global append order, used by replay_all.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("aggregate_id", "version", name="uq_domain_events_stream"),
        Index("ix_domain_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventRecord {self.event_type} {self.aggregate_id} v{self.version}>"
        )
