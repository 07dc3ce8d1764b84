"""Canonical domain events for the booking engine.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``); the payload is frozen
    recursively (mappings become read-only, lists become tuples).
2.  ``event_type`` is drawn from the closed ``EventType`` enum.  Anything
    else is rejected at construction time.
3.  ``version`` is strictly increasing per ``aggregate_id`` with no gaps
    (1, 2, 3, ...).  It is the sole concurrency token.
4.  ``metadata.correlation_id`` links every event caused by the same
    command; ``metadata.causation_id`` points at the event or command that
    directly caused this one.
5.  Payload values are JSON-safe.  Datetimes travel as ISO-8601 strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from booking_lifecycle.core.enums import AggregateType, EventType
from booking_lifecycle.core.errors import ValidationError
from booking_lifecycle.core.ids import from_iso, new_id, to_iso
from booking_lifecycle.core.ids import utc_now as _now

# Which stream each variant belongs to.
AGGREGATE_OF: dict[EventType, AggregateType] = {
    EventType.BOOKING_CREATED: AggregateType.BOOKING,
    EventType.BOOKING_RESCHEDULED: AggregateType.BOOKING,
    EventType.RESCHEDULE_CONFIRMED: AggregateType.BOOKING,
    EventType.BOOKING_CANCELLED: AggregateType.BOOKING,
    EventType.PAYMENT_CONFIRMED: AggregateType.BOOKING,
    EventType.PAYMENT_FAILED: AggregateType.BOOKING,
    EventType.PAYMENT_RETRIED: AggregateType.BOOKING,
    EventType.BOOKING_COMPLETED: AggregateType.BOOKING,
    EventType.WORKFLOW_FAILED: AggregateType.WORKFLOW,
}

BOOKING_EVENT_TYPES: frozenset[EventType] = frozenset(
    t for t, agg in AGGREGATE_OF.items() if agg is AggregateType.BOOKING
)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventMetadata:
    """Who caused an event, for which tenant, and in which causal chain."""

    actor_id: str = ""
    organization_id: str = ""
    timestamp: datetime = field(default_factory=_now)
    correlation_id: str = ""
    causation_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "timestamp": to_iso(self.timestamp),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> EventMetadata:
        return cls(
            actor_id=d.get("actor_id", ""),
            organization_id=d.get("organization_id", ""),
            timestamp=from_iso(d["timestamp"]),
            correlation_id=d.get("correlation_id", ""),
            causation_id=d.get("causation_id", ""),
        )


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """Immutable record of one state change on one aggregate.

    Fields
    ~~~~~~
    event_type      Variant from ``EventType``.
    aggregate_id    Stream the event belongs to.
    version         Position in that stream, starting at 1.
    payload         Variant-specific data (read-only).
    metadata        Actor, tenant, time and causality.
    aggregate_type  Derived from ``event_type`` when omitted.
    event_id        Unique identity (UUID4).
    """

    event_type: EventType
    aggregate_id: str
    version: int
    payload: Mapping[str, Any] = field(default_factory=dict)
    metadata: EventMetadata = field(default_factory=EventMetadata)
    aggregate_type: AggregateType | None = None
    event_id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        try:
            event_type = EventType(self.event_type)
        except ValueError:
            raise ValidationError(
                f"Unknown event type: {self.event_type!r}"
            ) from None
        if not isinstance(self.version, int) or self.version < 1:
            raise ValidationError(
                f"Event version must be a positive integer, got {self.version!r}"
            )
        expected_agg = AGGREGATE_OF[event_type]
        agg = self.aggregate_type
        if agg is None:
            agg = expected_agg
        else:
            agg = AggregateType(agg)
            if agg is not expected_agg:
                raise ValidationError(
                    f"{event_type.value} belongs to {expected_agg.value} "
                    f"streams, not {agg.value}"
                )
        object.__setattr__(self, "event_type", event_type)
        object.__setattr__(self, "aggregate_type", agg)
        object.__setattr__(self, "payload", _freeze(self.payload))

    # -- Serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form used by the file and SQL stores."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type.value,
            "version": self.version,
            "payload": _thaw(self.payload),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> DomainEvent:
        try:
            return cls(
                event_id=d["event_id"],
                event_type=d["event_type"],
                aggregate_id=d["aggregate_id"],
                aggregate_type=d.get("aggregate_type"),
                version=d["version"],
                payload=d.get("payload") or {},
                metadata=EventMetadata.from_dict(d["metadata"]),
            )
        except KeyError as exc:
            raise ValidationError(f"Stored event missing field {exc}") from exc
